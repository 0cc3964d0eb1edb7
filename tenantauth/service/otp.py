from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol

from tenantauth.storage.models import OtpCode

OTP_LENGTH = 6
DEFAULT_EXPIRY_MINUTES = 10
DEFAULT_MAX_ATTEMPTS = 3


class OtpState(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    INVALID = "invalid"
    NOT_FOUND = "not_found"


OTP_MESSAGES: dict[OtpState, str] = {
    OtpState.VERIFIED: "OTP verified successfully",
    OtpState.EXPIRED: "OTP has expired",
    OtpState.EXHAUSTED: "Maximum attempts exceeded. Please request a new OTP.",
    OtpState.INVALID: "Invalid OTP",
    OtpState.NOT_FOUND: "Invalid or expired OTP",
}


@dataclass
class OtpVerification:
    valid: bool
    message: str
    state: OtpState
    tenant_id: Optional[str] = None


class OtpStore(Protocol):
    def get_pending_otp(self, phone: str, purpose: str) -> Optional[OtpCode]: ...

    def increment_otp_attempts(self, otp_id: str) -> int: ...

    def consume_otp(self, otp_id: str, consumed_at: datetime) -> bool: ...


def mask_phone(phone: str) -> str:
    """Display-safe phone: all but the last four characters become ``*``."""

    if len(phone) < 6:
        return phone
    return "*" * (len(phone) - 4) + phone[-4:]


class OtpEngine:
    """Generates one-time codes and evaluates verification attempts.

    Codes never rest in plaintext: the store only sees an HMAC-SHA256 digest
    keyed with ``secret``. Storage side effects (attempt increments and
    consumption) are performed by the caller through atomic store primitives;
    this class decides the transitions.
    """

    def __init__(
        self,
        secret: str,
        *,
        expiry_minutes: int = DEFAULT_EXPIRY_MINUTES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._secret = secret.encode()
        self.expiry_minutes = expiry_minutes
        self.max_attempts = max_attempts

    @property
    def expires_in_seconds(self) -> int:
        return self.expiry_minutes * 60

    def generate(self) -> str:
        return str(secrets.randbelow(10**OTP_LENGTH)).zfill(OTP_LENGTH)

    def expiry(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.expiry_minutes)

    def digest(self, phone: str, purpose: str, code: str) -> str:
        # Binding phone and purpose into the MAC keeps a digest from matching elsewhere
        message = f"{phone}:{purpose}:{code}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def matches(self, otp: OtpCode, code: str) -> bool:
        candidate = self.digest(otp.phone, otp.purpose, code)
        return hmac.compare_digest(candidate, otp.code_digest)

    def precheck(self, otp: Optional[OtpCode], now: datetime) -> Optional[OtpState]:
        """Terminal state reachable before the attempt counter moves, if any."""

        if otp is None or otp.consumed_at is not None:
            return OtpState.NOT_FOUND
        if otp.expires_at <= now:
            return OtpState.EXPIRED
        return None

    def judge(self, otp: OtpCode, code: str, attempts: int) -> OtpState:
        """Decide the outcome once ``attempts`` already counts this call."""

        if attempts > self.max_attempts:
            return OtpState.EXHAUSTED
        if not self.matches(otp, code):
            return OtpState.INVALID
        return OtpState.VERIFIED

    def evaluate(
        self, store: OtpStore, phone: str, code: str, purpose: str, now: datetime
    ) -> OtpVerification:
        otp = store.get_pending_otp(phone, purpose)
        state = self.precheck(otp, now)
        if state is not None:
            return self.result(state)
        # Count the attempt before comparing so parallel guesses share one budget
        attempts = store.increment_otp_attempts(otp.id)
        state = self.judge(otp, code, attempts)
        if state is OtpState.VERIFIED and not store.consume_otp(otp.id, now):
            state = OtpState.NOT_FOUND
        return self.result(state, otp)

    @staticmethod
    def result(state: OtpState, otp: Optional[OtpCode] = None) -> OtpVerification:
        verified = state is OtpState.VERIFIED
        return OtpVerification(
            valid=verified,
            message=OTP_MESSAGES[state],
            state=state,
            tenant_id=otp.tenant_id if verified and otp is not None else None,
        )


__all__ = [
    "OTP_LENGTH",
    "OTP_MESSAGES",
    "OtpEngine",
    "OtpState",
    "OtpVerification",
    "mask_phone",
]
