from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

OTP_PURPOSES = ("login", "register", "reset_password", "verify_phone")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    email: str
    phone: str
    subscription_plan: str = "trial"
    trial_ends_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Branch:
    id: str
    tenant_id: str
    name: str
    code: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserBranch:
    id: str
    user_id: str
    branch_id: str
    is_primary: bool = False


@dataclass
class BranchMembership:
    """Membership joined with its branch, as shown on user profiles."""

    id: str
    branch_id: str
    branch_name: str
    branch_code: str
    is_primary: bool = False


@dataclass
class User:
    id: str
    tenant_id: str
    phone: str
    name: str
    password_hash: str
    role: str
    email: Optional[str] = None
    is_active: bool = True
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        token: str,
        user_id: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "RefreshToken":
        return cls(
            id=new_id(),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )


@dataclass
class OtpCode:
    id: str
    phone: str
    purpose: str
    code_digest: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    attempts: int = 0
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    phone: str
    success: bool
    tenant_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordHistory:
    user_id: str
    password_hash: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    tenant_id: Optional[str]
    action: str
    entity_type: str
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
