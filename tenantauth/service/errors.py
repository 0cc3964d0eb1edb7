from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable machine-readable codes carried in every error envelope."""

    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER = "server_error"


class ServiceError(Exception):
    """Base class for identity errors that surface to API callers.

    Subclasses pin an HTTP status and an ``ErrorCode``; ``detail`` carries
    structured context (offending field, required permission) and is
    rendered as the envelope's ``details``.
    """

    status_code: int = 400
    error_code: str = ErrorCode.VALIDATION.value

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = ErrorCode(error_code).value
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input: weak password, unknown role, bad branch list."""


class BadRequestError(ValidationError):
    """Well-formed input rejected by a business rule, e.g. a reused password."""


class AuthenticationError(ServiceError):
    """Credentials, access tokens or refresh tokens did not check out."""

    status_code = 401
    error_code = ErrorCode.UNAUTHORIZED.value


class ForbiddenError(ServiceError):
    """Authenticated, but the role or plan does not allow the action."""

    status_code = 403
    error_code = ErrorCode.FORBIDDEN.value


class NotFoundError(ServiceError):
    status_code = 404
    error_code = ErrorCode.NOT_FOUND.value


class ConflictError(ServiceError):
    """Duplicate phone, email or tenant slug."""

    status_code = 409
    error_code = ErrorCode.CONFLICT.value


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = ErrorCode.RATE_LIMITED.value


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "ConflictError",
    "ErrorCode",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServiceError",
    "ValidationError",
]
