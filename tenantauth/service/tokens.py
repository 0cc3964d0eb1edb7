from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthenticationError
from tenantauth.service.permissions import Role, parse_role, permissions_for

logger = get_logger(__name__)

DEFAULT_EXPIRY_SECONDS = 900
REFRESH_TOKEN_BYTES = 64

_EXPIRY_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 60 * 60 * 24}


def parse_expiry(text: str) -> int:
    """Convert compact durations like ``15m`` or ``7d`` into seconds.

    Malformed input falls back to 900 seconds so a bad value degrades a
    running instance instead of crashing it; ``validate_expiry`` catches the
    same mistakes at configuration time.
    """

    match = _EXPIRY_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if not match:
        logger.warning("expiry_parse_fallback", value=str(text), seconds=DEFAULT_EXPIRY_SECONDS)
        return DEFAULT_EXPIRY_SECONDS
    value, unit = match.groups()
    return int(value) * _UNIT_SECONDS[unit]


def validate_expiry(text: str) -> str:
    """Configuration-time check for duration strings; raises ValueError."""

    if not isinstance(text, str) or not _EXPIRY_PATTERN.match(text.strip()):
        raise ValueError(
            f"invalid duration {text!r}; expected <number><s|m|h|d>, e.g. 15m"
        )
    if int(_EXPIRY_PATTERN.match(text.strip()).group(1)) <= 0:
        raise ValueError(f"duration {text!r} must be positive")
    return text.strip()


@dataclass(frozen=True)
class SigningKeys:
    """HMAC secrets for access tokens.

    ``current`` signs every new token; ``previous`` secrets are only accepted
    during verification so keys can be rotated with an overlap window.
    """

    current: str
    previous: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.current:
            raise ValueError("signing key must not be empty")

    def verification_keys(self) -> tuple[str, ...]:
        return (self.current, *self.previous)


@dataclass(frozen=True)
class TokenConfig:
    keys: SigningKeys
    issuer: str = "tenantauth"
    audience: str = "tenantauth-clients"
    access_ttl_seconds: int = DEFAULT_EXPIRY_SECONDS
    refresh_ttl_seconds: int = 7 * 24 * 60 * 60
    leeway_seconds: int = 30


@dataclass
class AccessClaims:
    subject: str
    tenant_id: str
    branch_ids: List[str]
    role: str
    permissions: List[str]
    issued_at: int
    expires_at: int
    jti: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    token_type: str = field(default="bearer")


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self.config = config

    @property
    def access_ttl_seconds(self) -> int:
        return self.config.access_ttl_seconds

    def refresh_expires_at(self, now: Optional[datetime] = None) -> datetime:
        base = now or datetime.now(timezone.utc)
        return base + timedelta(seconds=self.config.refresh_ttl_seconds)

    def issue_access_token(
        self,
        user_id: str,
        tenant_id: str,
        branch_ids: Sequence[str],
        role: str | Role,
    ) -> str:
        resolved = parse_role(role)
        issued_at = int(time.time())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": user_id,
            "tenant_id": tenant_id,
            "branch_ids": list(branch_ids),
            "role": resolved.value,
            "permissions": sorted(permissions_for(resolved)),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + self.config.access_ttl_seconds,
        }
        return self._encode_jwt(payload)

    def issue_refresh_token(self) -> str:
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    def issue_token_pair(
        self,
        user_id: str,
        tenant_id: str,
        branch_ids: Sequence[str],
        role: str | Role,
        *,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user_id, tenant_id, branch_ids, role),
            refresh_token=self.issue_refresh_token(),
            expires_in=self.config.access_ttl_seconds,
            refresh_expires_at=self.refresh_expires_at(now),
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise AuthenticationError("Invalid or expired token")
        try:
            return AccessClaims(
                subject=str(payload["sub"]),
                tenant_id=str(payload["tenant_id"]),
                branch_ids=list(payload.get("branch_ids") or []),
                role=str(payload["role"]),
                permissions=list(payload.get("permissions") or []),
                issued_at=int(payload.get("iat", 0)),
                expires_at=int(payload["exp"]),
                jti=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_malformed")
            raise AuthenticationError("Invalid or expired token")

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self.config.keys.current)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not any(
            hmac.compare_digest(self._sign(signing_input, key), sig_b64)
            for key in self.config.keys.verification_keys()
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.config.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.config.audience
        elif isinstance(aud, list):
            valid_aud = self.config.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.config.leeway_seconds:
            return None
        return payload


__all__ = [
    "AccessClaims",
    "SigningKeys",
    "TokenConfig",
    "TokenIssuer",
    "TokenPair",
    "parse_expiry",
    "validate_expiry",
]
