from __future__ import annotations

from typing import Optional, Protocol

import httpx

from tenantauth.logging import get_logger
from tenantauth.service.otp import mask_phone

logger = get_logger(__name__)

_PURPOSE_TEXT = {
    "login": "sign in",
    "register": "complete registration",
    "reset_password": "reset your password",
    "verify_phone": "verify your phone number",
}


class OtpNotifier(Protocol):
    async def deliver_otp(self, phone: str, code: str, purpose: str) -> bool: ...


def render_otp_message(code: str, purpose: str, expiry_minutes: int) -> str:
    action = _PURPOSE_TEXT.get(purpose, "continue")
    return (
        f"{code} is your verification code to {action}. "
        f"It expires in {expiry_minutes} minutes. Do not share it with anyone."
    )


class LogOtpNotifier:
    """Development notifier: writes deliveries to the log instead of sending them."""

    def __init__(self, *, log_codes: bool = False) -> None:
        self.log_codes = log_codes

    async def deliver_otp(self, phone: str, code: str, purpose: str) -> bool:
        # dev_code is not a redacted key so the opt-in value survives the processor
        extra = {"dev_code": code} if self.log_codes else {}
        logger.info("otp_dev_delivery", to=mask_phone(phone), purpose=purpose, **extra)
        return True


class WebhookOtpNotifier:
    """Posts OTP messages to an SMS gateway over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        expiry_minutes: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.expiry_minutes = expiry_minutes
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def deliver_otp(self, phone: str, code: str, purpose: str) -> bool:
        payload = {
            "to": phone,
            "purpose": purpose,
            "message": render_otp_message(code, purpose, self.expiry_minutes),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(self.url, json=payload, headers=self._headers())
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "otp_gateway_rejected",
                to=mask_phone(phone),
                purpose=purpose,
                status_code=exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "otp_gateway_unreachable",
                to=mask_phone(phone),
                purpose=purpose,
                error=type(exc).__name__,
            )
            return False
        logger.info("otp_sent", to=mask_phone(phone), purpose=purpose)
        return True


__all__ = [
    "LogOtpNotifier",
    "OtpNotifier",
    "WebhookOtpNotifier",
    "render_otp_message",
]
