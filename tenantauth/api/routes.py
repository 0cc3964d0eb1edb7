from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from tenantauth.api.schemas import (
    BranchMembershipResponse,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    OtpRequest,
    OtpResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    UpdateRoleRequest,
    UserResponse,
    canonical_id,
)
from tenantauth.logging import bind_principal, get_logger
from tenantauth.service.auth import AuthContext, AuthUser, RequestMeta
from tenantauth.service.errors import NotFoundError, RateLimitedError
from tenantauth.service.permissions import display_name
from tenantauth.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)



def _target_user_id(user_id: str) -> str:
    try:
        return canonical_id(user_id)
    except ValueError:
        raise NotFoundError("User not found") from None

class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
    message: str = "Too many requests. Please try again later.",
) -> RateLimitInfo:
    """Consume one token from the bucket at ``key``.

    Raises:
        RateLimitedError if the bucket is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", key_prefix=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            message, detail={"retry_after_seconds": info.reset_seconds}
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _user_to_response(user: AuthUser) -> UserResponse:
    return UserResponse(
        id=user.id,
        tenant_id=user.tenant_id,
        name=user.name,
        phone=user.phone,
        role=user.role,
        role_name=display_name(user.role),
        email=user.email,
        avatar_url=user.avatar_url,
        branches=[
            BranchMembershipResponse(
                id=b.id,
                branch_id=b.branch_id,
                branch_name=b.branch_name,
                branch_code=b.branch_code,
                is_primary=b.is_primary,
            )
            for b in user.branches
        ],
        primary_branch_id=user.primary_branch_id,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.accounts.authenticate(authorization)
    bind_principal(principal.user_id, principal.tenant_id)
    return principal


def require_permission(permission: str) -> Callable:
    """Dependency factory that rejects principals lacking ``permission``."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not principal.allows(permission):
            logger.info(
                "permission_denied",
                user_id=principal.user_id,
                role=principal.role,
                permission=permission,
            )
            raise _http_error(
                "forbidden",
                "Insufficient permissions",
                status_code=403,
                details={"required": permission},
            )
        return principal

    return _dependency


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange phone and password for an access/refresh token pair.

    Raises:
        401: Unknown phone, wrong password, inactive or locked account
        429: Too many attempts from this client for this phone
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}:{body.phone}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_limit_window_seconds,
        response=response,
        message="Too many login attempts. Please try again later.",
    )
    result = await runtime.accounts.login(
        body.phone, body.password, body.tenant_id, meta=_request_meta(request)
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            user=_user_to_response(result.user),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a tenant with its main branch and owner account."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit_per_hour,
        3600,
        message="Too many registration attempts. Please try again later.",
    )
    result = await runtime.accounts.register(
        body.facility_name,
        body.owner_name,
        body.phone,
        body.password,
        email=body.email,
    )
    return Envelope(status="ok", data=RegisterResponse(**result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.accounts.refresh(body.refresh_token, meta=_request_meta(request))
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            refresh_token=result.refresh_token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, authorization: Optional[str] = Header(None)):
    """Revoke a refresh token; a bearer access token, if sent, is denylisted too."""
    runtime = get_runtime()
    access_token = None
    if authorization and authorization.lower().startswith("bearer "):
        access_token = authorization[7:].strip() or None
    await runtime.accounts.logout(body.refresh_token, access_token=access_token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.accounts.logout_all(principal.user_id)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(message="Logged out from all devices", revoked=revoked),
    )


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
async def request_otp(body: OtpRequest):
    """Issue a one-time code; the answer does not reveal whether the phone exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.phone}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
        message="Please wait before requesting another OTP.",
    )
    await _enforce_rate_limit(
        runtime,
        f"otp:hour:{body.phone}",
        runtime.settings.otp_rate_limit_per_hour,
        3600,
        message="Too many OTP requests. Please try again later.",
    )
    result = await runtime.accounts.request_otp(body.phone, body.purpose, body.tenant_id)
    return Envelope(status="ok", data=OtpResponse(**result))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest):
    runtime = get_runtime()
    result = await runtime.accounts.verify_otp(body.phone, body.code, body.purpose)
    return Envelope(
        status="ok", data=OtpVerifyResponse(valid=result.valid, message=result.message)
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.phone}",
        runtime.settings.reset_rate_limit_per_hour,
        3600,
        message="Too many password reset attempts. Please try again later.",
    )
    result = await runtime.accounts.reset_password(body.phone, body.otp, body.new_password)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.accounts.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(**result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.accounts.get_current_user(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest,
    principal: AuthContext = Depends(require_permission("users:create")),
):
    runtime = get_runtime()
    user = await runtime.staff.create_user(
        principal,
        phone=body.phone,
        name=body.name,
        password=body.password,
        role=body.role.value,
        branch_ids=body.branch_ids,
        email=body.email,
        primary_branch_id=body.primary_branch_id,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    user_id: str,
    body: UpdateRoleRequest,
    principal: AuthContext = Depends(require_permission("users:write")),
):
    runtime = get_runtime()
    user = await runtime.staff.update_role(
        principal, _target_user_id(user_id), body.role.value
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission("users:delete")),
):
    runtime = get_runtime()
    target_id = _target_user_id(user_id)
    revoked = await runtime.staff.deactivate_user(principal, target_id)
    return Envelope(
        status="ok",
        data={"deleted": True, "user_id": target_id, "revoked_sessions": revoked},
    )


@router.post("/users/{user_id}/unlock", response_model=Envelope, tags=["users"])
async def unlock_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission("users:write")),
):
    runtime = get_runtime()
    await runtime.staff.unlock_user(principal, _target_user_id(user_id))
    return Envelope(status="ok", data=MessageResponse(message="Account unlocked"))
