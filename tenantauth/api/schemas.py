from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from tenantauth.logging import get_correlation_id
from tenantauth.service.errors import ErrorCode
from tenantauth.service.permissions import Role

PHONE_PATTERN = r"^[6-9]\d{9}$"
OTP_PATTERN = r"^\d{6}$"

OtpPurpose = Literal["login", "register", "reset_password", "verify_phone"]

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_text(value: str) -> str:
    """Strip control characters and apply NFKC normalization."""

    cleaned = "".join(ch for ch in value if unicodedata.category(ch)[0] != "C")
    return unicodedata.normalize("NFKC", cleaned).strip()


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_text(value).lower()
    if not normalized:
        return None
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def canonical_id(value: str) -> str:
    """Lower-case hyphenated UUID form; ValueError for anything else."""

    try:
        return str(UUID(value))
    except (AttributeError, TypeError, ValueError):
        raise ValueError("must be a UUID") from None


def _optional_id(value: Optional[str]) -> Optional[str]:
    return canonical_id(value) if value is not None else None


class LoginRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("tenant_id")
    @classmethod
    def _validate_tenant_id(cls, value: Optional[str]) -> Optional[str]:
        return _optional_id(value)


class RegisterRequest(BaseModel):
    facility_name: str = Field(..., min_length=2, max_length=100)
    owner_name: str = Field(..., min_length=2, max_length=100)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[str] = None
    password: str = Field(..., max_length=128)

    @field_validator("facility_name", "owner_name")
    @classmethod
    def _normalize_names(cls, value: str) -> str:
        normalized = _normalize_text(value)
        if len(normalized) < 2:
            raise ValueError("must be at least 2 characters")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class OtpRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    purpose: OtpPurpose
    tenant_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("tenant_id")
    @classmethod
    def _validate_tenant_id(cls, value: Optional[str]) -> Optional[str]:
        return _optional_id(value)


class OtpVerifyRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    code: str = Field(..., pattern=OTP_PATTERN)
    purpose: OtpPurpose


class PasswordResetRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    otp: str = Field(..., pattern=OTP_PATTERN)
    new_password: str = Field(..., max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


class BranchMembershipResponse(BaseModel):
    id: str
    branch_id: str
    branch_name: str
    branch_code: str
    is_primary: bool


class UserResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    phone: str
    role: str
    role_name: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    branches: List[BranchMembershipResponse] = Field(default_factory=list)
    primary_branch_id: Optional[str] = None


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None


class RegisterResponse(BaseModel):
    tenant_id: str
    user_id: str
    message: str


class OtpResponse(BaseModel):
    message: str
    expires_in: int


class OtpVerifyResponse(BaseModel):
    valid: bool
    message: str


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    revoked: int


class CreateUserRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    name: str = Field(..., min_length=2, max_length=100)
    email: Optional[str] = None
    password: str = Field(..., max_length=128)
    role: Role
    branch_ids: List[str] = Field(..., min_length=1, max_length=50)
    primary_branch_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_staff_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("branch_ids")
    @classmethod
    def _validate_branch_ids(cls, value: List[str]) -> List[str]:
        return [canonical_id(item) for item in value]

    @field_validator("primary_branch_id")
    @classmethod
    def _validate_primary_branch_id(cls, value: Optional[str]) -> Optional[str]:
        return _optional_id(value)


class UpdateRoleRequest(BaseModel):
    role: Role
