from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Sequence

from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.notifications import OtpNotifier
from tenantauth.service.otp import OtpEngine, OtpVerification, mask_phone
from tenantauth.service.passwords import CredentialHasher, PasswordPolicy
from tenantauth.service.permissions import TOP_ROLE, claims_allow
from tenantauth.service.tokens import TokenIssuer
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    OTP_PURPOSES,
    AuditEvent,
    Branch,
    BranchMembership,
    LoginAttempt,
    OtpCode,
    RefreshToken,
    Tenant,
    User,
    UserBranch,
    new_id,
)

logger = get_logger(__name__)

GENERIC_OTP_MESSAGE = "If the phone number is registered, you will receive an OTP"
REUSED_PASSWORD_MESSAGE = (
    "Cannot reuse recent passwords. Please choose a different password."
)
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class IdentityStore(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def tenant_slug_exists(self, slug: str) -> bool: ...

    def get_branch(self, branch_id: str) -> Optional[Branch]: ...

    def create_tenant_with_owner(
        self, tenant: Tenant, branch: Branch, owner: User, membership: UserBranch
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def find_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]: ...

    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def count_users(self, tenant_id: str) -> int: ...

    def create_user(self, user: User, memberships: Sequence[UserBranch]) -> User: ...

    def list_user_branches(self, user_id: str) -> List[BranchMembership]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def deactivate_user(self, user_id: str, at: datetime) -> Optional[User]: ...

    def register_failed_login(
        self, user_id: str, threshold: int, locked_until: datetime
    ) -> tuple[int, Optional[datetime]]: ...

    def record_successful_login(self, user_id: str, at: datetime) -> None: ...

    def reset_lockout(self, user_id: str) -> None: ...

    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def add_password_history(self, user_id: str, password_hash: str) -> None: ...

    def recent_password_hashes(self, user_id: str, limit: int) -> List[str]: ...

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str, at: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, at: datetime) -> int: ...

    def create_otp(self, otp: OtpCode) -> OtpCode: ...

    def get_pending_otp(self, phone: str, purpose: str) -> Optional[OtpCode]: ...

    def increment_otp_attempts(self, otp_id: str) -> int: ...

    def consume_otp(self, otp_id: str, at: datetime) -> bool: ...

    def record_audit_event(self, event: AuditEvent) -> None: ...


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthUser:
    id: str
    tenant_id: str
    name: str
    phone: str
    role: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    branches: List[BranchMembership] = field(default_factory=list)
    primary_branch_id: Optional[str] = None


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: AuthUser
    token_type: str = "bearer"


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


@dataclass
class AuthContext:
    user_id: str
    tenant_id: str
    role: str
    branch_ids: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    jti: Optional[str] = None
    expires_at: Optional[int] = None

    def allows(self, permission: str) -> bool:
        return claims_allow(self.permissions, permission)


def to_auth_user(store: IdentityStore, user: User) -> AuthUser:
    branches = store.list_user_branches(user.id)
    primary = next((b.branch_id for b in branches if b.is_primary), None)
    return AuthUser(
        id=user.id,
        tenant_id=user.tenant_id,
        name=user.name,
        phone=user.phone,
        role=user.role,
        email=user.email,
        avatar_url=user.avatar_url,
        branches=branches,
        primary_branch_id=primary,
    )


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.lower()).strip("-")
    return slug or "tenant"


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


class AccountManager:
    """Login, token lifecycle, OTP and password flows over an ``IdentityStore``."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        otp: OtpEngine,
        tokens: TokenIssuer,
        notifier: OtpNotifier,
        audit: Optional[AuditRecorder] = None,
        cache: Any = None,
        max_failed_logins: int = 5,
        lockout_minutes: int = 30,
        trial_days: int = 30,
        rotate_refresh_tokens: bool = False,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.otp = otp
        self.tokens = tokens
        self.notifier = notifier
        self.audit = audit or AuditRecorder(store)
        self.cache = cache
        self.max_failed_logins = max_failed_logins
        self.lockout_minutes = lockout_minutes
        self.trial_days = trial_days
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # helpers

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password: str, encoded: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, encoded)

    async def _ensure_not_reused(self, user_id: str, password: str) -> None:
        recent = self.store.recent_password_hashes(user_id, self.policy.history_limit)
        if await asyncio.to_thread(self.policy.is_reused, password, recent):
            raise BadRequestError(REUSED_PASSWORD_MESSAGE)

    def _record_attempt(
        self,
        phone: str,
        tenant_id: Optional[str],
        meta: Optional[RequestMeta],
        *,
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        meta = meta or RequestMeta()
        self.store.record_login_attempt(
            LoginAttempt(
                phone=phone,
                tenant_id=tenant_id,
                success=success,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                failure_reason=reason,
            )
        )

    def _branch_ids(self, user_id: str) -> List[str]:
        return [m.branch_id for m in self.store.list_user_branches(user_id)]

    def _to_auth_user(self, user: User) -> AuthUser:
        return to_auth_user(self.store, user)

    def _unique_slug(self, facility_name: str) -> str:
        slug = slugify(facility_name)
        if not self.store.tenant_slug_exists(slug):
            return slug
        stamp = _base36(int(time.time() * 1000))
        return f"{slug}-{stamp}{secrets.token_hex(2)}"

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    # ------------------------------------------------------------------
    # login and tokens

    async def login(
        self,
        phone: str,
        password: str,
        tenant_id: Optional[str] = None,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> LoginResult:
        user = self.store.find_user_by_phone(phone, tenant_id)
        if not user:
            self._record_attempt(phone, tenant_id, meta, success=False, reason="User not found")
            self.logger.info("login_failed", reason="user_not_found")
            raise AuthenticationError("Invalid credentials")

        now = self._now()
        if user.is_locked(now):
            self._record_attempt(phone, tenant_id, meta, success=False, reason="Account locked")
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AuthenticationError(
                "Account is temporarily locked. Please try again later."
            )

        if not user.is_active:
            self._record_attempt(phone, tenant_id, meta, success=False, reason="Account inactive")
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AuthenticationError("Invalid credentials")

        if not await self._verify_password(password, user.password_hash):
            count, locked_until = self.store.register_failed_login(
                user.id,
                self.max_failed_logins,
                now + timedelta(minutes=self.lockout_minutes),
            )
            self._record_attempt(phone, tenant_id, meta, success=False, reason="Invalid password")
            self.audit.record_event(
                user.tenant_id,
                user.id,
                "auth.login_failed",
                "user",
                user.id,
                {"failed_login_count": count},
            )
            if locked_until is not None:
                self.logger.warning(
                    "account_locked", user_id=user.id, locked_until=locked_until.isoformat()
                )
                self.audit.record_event(
                    user.tenant_id,
                    user.id,
                    "auth.account_locked",
                    "user",
                    user.id,
                    {"locked_until": locked_until.isoformat()},
                )
            else:
                self.logger.info("login_failed", user_id=user.id, failed_login_count=count)
            raise AuthenticationError("Invalid credentials")

        self.store.record_successful_login(user.id, now)
        self._record_attempt(phone, user.tenant_id, meta, success=True)
        if self.hasher.needs_rehash(user.password_hash):
            # Upgrade hashes minted under older argon2 parameters
            self.store.update_password(user.id, await self._hash_password(password))
            self.logger.info("password_rehashed", user_id=user.id)

        profile = self._to_auth_user(user)
        pair = self.tokens.issue_token_pair(
            user.id,
            user.tenant_id,
            [b.branch_id for b in profile.branches],
            user.role,
            now=now,
        )
        meta = meta or RequestMeta()
        self.store.create_refresh_token(
            RefreshToken.new(
                pair.refresh_token,
                user.id,
                pair.refresh_expires_at,
                user_agent=meta.user_agent,
                ip_address=meta.ip_address,
            )
        )
        self.audit.record_event(
            user.tenant_id, user.id, "auth.login_success", "user", user.id
        )
        self.logger.info("login_success", user_id=user.id, tenant_id=user.tenant_id)
        return LoginResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user=profile,
        )

    async def refresh(
        self, refresh_token: str, *, meta: Optional[RequestMeta] = None
    ) -> RefreshResult:
        stored = self.store.get_refresh_token(refresh_token)
        if not stored:
            raise AuthenticationError("Invalid refresh token")
        if stored.revoked_at is not None:
            raise AuthenticationError("Refresh token has been revoked")
        now = self._now()
        if stored.expires_at <= now:
            raise AuthenticationError("Refresh token has expired")

        user = self.store.get_user(stored.user_id)
        if not user or not user.is_active:
            self.store.revoke_refresh_token(refresh_token, now)
            raise AuthenticationError("User account is inactive")

        branch_ids = self._branch_ids(user.id)
        access_token = self.tokens.issue_access_token(
            user.id, user.tenant_id, branch_ids, user.role
        )
        if not self.rotate_refresh_tokens:
            return RefreshResult(
                access_token=access_token, expires_in=self.tokens.access_ttl_seconds
            )

        # Revoking first means only one of two concurrent refreshes can rotate
        if not self.store.revoke_refresh_token(refresh_token, now):
            raise AuthenticationError("Refresh token has been revoked")
        meta = meta or RequestMeta()
        replacement = self.store.create_refresh_token(
            RefreshToken.new(
                self.tokens.issue_refresh_token(),
                user.id,
                self.tokens.refresh_expires_at(now),
                user_agent=meta.user_agent,
                ip_address=meta.ip_address,
            )
        )
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return RefreshResult(
            access_token=access_token,
            expires_in=self.tokens.access_ttl_seconds,
            refresh_token=replacement.token,
        )

    async def logout(
        self, refresh_token: str, *, access_token: Optional[str] = None
    ) -> None:
        stored = self.store.get_refresh_token(refresh_token)
        revoked = self.store.revoke_refresh_token(refresh_token, self._now())
        if stored and revoked:
            user = self.store.get_user(stored.user_id)
            self.audit.record_event(
                user.tenant_id if user else None,
                stored.user_id,
                "auth.logout",
                "user",
                stored.user_id,
            )
        if access_token and self.cache:
            await self._denylist_access_token(access_token)

    async def _denylist_access_token(self, access_token: str) -> None:
        try:
            claims = self.tokens.verify_access_token(access_token)
        except AuthenticationError:
            return
        ttl = max(0, int(claims.expires_at - time.time()))
        if not claims.jti or ttl <= 0:
            return
        try:
            await self.cache.denylist_access_token(claims.jti, ttl)
        except Exception as exc:
            # Logout still succeeds; the access token simply lives out its TTL
            self.logger.warning("access_token_denylist_failed", error=str(exc))

    async def logout_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, self._now())
        self.logger.info("logout_all", user_id=user_id, revoked=revoked)
        return revoked

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing authentication token")
        claims = self.tokens.verify_access_token(token)
        if self.cache and claims.jti:
            try:
                denylisted = await self.cache.is_access_token_denylisted(claims.jti)
            except Exception as exc:
                # Fail open so a cache outage does not block every request
                self.logger.warning("denylist_check_failed", error=str(exc))
                denylisted = False
            if denylisted:
                raise AuthenticationError("Invalid or expired token")
        return AuthContext(
            user_id=claims.subject,
            tenant_id=claims.tenant_id,
            role=claims.role,
            branch_ids=claims.branch_ids,
            permissions=claims.permissions,
            jti=claims.jti,
            expires_at=claims.expires_at,
        )

    # ------------------------------------------------------------------
    # registration

    async def register(
        self,
        facility_name: str,
        owner_name: str,
        phone: str,
        password: str,
        email: Optional[str] = None,
    ) -> dict[str, str]:
        self.policy.ensure_valid(password)
        if self.store.find_user_by_phone(phone):
            raise ConflictError("Phone number is already registered")
        if email and self.store.find_user_by_email(email):
            raise ConflictError("Email is already registered")

        password_hash = await self._hash_password(password)
        now = self._now()
        tenant = Tenant(
            id=new_id(),
            name=facility_name,
            slug=self._unique_slug(facility_name),
            email=email or f"{phone}@placeholder.local",
            phone=phone,
            subscription_plan="trial",
            trial_ends_at=now + timedelta(days=self.trial_days),
            created_at=now,
        )
        branch = Branch(
            id=new_id(), tenant_id=tenant.id, name="Main Branch", code="MAIN", created_at=now
        )
        owner = User(
            id=new_id(),
            tenant_id=tenant.id,
            phone=phone,
            name=owner_name,
            email=email,
            password_hash=password_hash,
            role=TOP_ROLE.value,
            created_at=now,
        )
        membership = UserBranch(
            id=new_id(), user_id=owner.id, branch_id=branch.id, is_primary=True
        )
        try:
            self.store.create_tenant_with_owner(tenant, branch, owner, membership)
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", detail=exc.detail)
            if exc.field == "phone":
                raise ConflictError("Phone number is already registered")
            raise ConflictError("Registration conflicts with an existing tenant")

        self.audit.record_event(
            tenant.id,
            owner.id,
            "user.create",
            "user",
            owner.id,
            {"role": owner.role, "source": "registration"},
        )
        self.logger.info("tenant_registered", tenant_id=tenant.id, user_id=owner.id)
        return {
            "tenant_id": tenant.id,
            "user_id": owner.id,
            "message": "Registration successful. Your 30-day free trial has started.",
        }

    # ------------------------------------------------------------------
    # one-time passcodes

    async def request_otp(
        self, phone: str, purpose: str, tenant_id: Optional[str] = None
    ) -> dict[str, Any]:
        if purpose not in OTP_PURPOSES:
            raise ValidationError(
                "Invalid OTP purpose", detail={"field": "purpose", "allowed": list(OTP_PURPOSES)}
            )
        expires_in = self.otp.expires_in_seconds
        if purpose in ("login", "reset_password"):
            if not self.store.find_user_by_phone(phone, tenant_id):
                # Same answer as the success path so callers cannot enumerate accounts
                self.logger.info("otp_request_unknown_phone", purpose=purpose)
                return {"message": GENERIC_OTP_MESSAGE, "expires_in": expires_in}

        now = self._now()
        code = self.otp.generate()
        self.store.create_otp(
            OtpCode(
                id=new_id(),
                phone=phone,
                purpose=purpose,
                code_digest=self.otp.digest(phone, purpose, code),
                expires_at=self.otp.expiry(now),
                tenant_id=tenant_id,
                created_at=now,
            )
        )
        try:
            delivered = await self.notifier.deliver_otp(phone, code, purpose)
        except Exception as exc:
            self.logger.error(
                "otp_delivery_failed", to=mask_phone(phone), purpose=purpose, error=str(exc)
            )
        else:
            if not delivered:
                self.logger.error("otp_delivery_failed", to=mask_phone(phone), purpose=purpose)
        return {"message": "OTP sent successfully", "expires_in": expires_in}

    async def verify_otp(self, phone: str, code: str, purpose: str) -> OtpVerification:
        result = self.otp.evaluate(self.store, phone, code, purpose, self._now())
        if not result.valid:
            self.logger.info(
                "otp_verification_failed",
                to=mask_phone(phone),
                purpose=purpose,
                outcome=result.state.value,
            )
        return result

    # ------------------------------------------------------------------
    # passwords

    async def reset_password(
        self, phone: str, otp: str, new_password: str
    ) -> dict[str, str]:
        self.policy.ensure_valid(new_password, field_name="new_password")
        verification = await self.verify_otp(phone, otp, "reset_password")
        if not verification.valid:
            raise BadRequestError(verification.message)

        # A code requested for one tenant only resets that tenant's account
        user = self.store.find_user_by_phone(phone, verification.tenant_id)
        if not user:
            raise BadRequestError("User not found")
        await self._ensure_not_reused(user.id, new_password)

        password_hash = await self._hash_password(new_password)
        now = self._now()
        self.store.update_password(user.id, password_hash)
        self.store.add_password_history(user.id, password_hash)
        revoked = self.store.revoke_user_refresh_tokens(user.id, now)
        self.store.reset_lockout(user.id)
        self.audit.record_event(
            user.tenant_id,
            user.id,
            "auth.password_reset",
            "user",
            user.id,
            {"revoked_sessions": revoked},
        )
        self.logger.info("password_reset", user_id=user.id)
        return {
            "message": "Password reset successful. Please login with your new password."
        }

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> dict[str, str]:
        self.policy.ensure_valid(new_password, field_name="new_password")
        user = self.store.get_user(user_id)
        if not user:
            raise BadRequestError("User not found")
        if not await self._verify_password(current_password, user.password_hash):
            raise BadRequestError("Current password is incorrect")
        await self._ensure_not_reused(user.id, new_password)

        password_hash = await self._hash_password(new_password)
        self.store.update_password(user.id, password_hash)
        self.store.add_password_history(user.id, password_hash)
        self.audit.record_event(
            user.tenant_id, user.id, "auth.password_change", "user", user.id
        )
        self.logger.info("password_changed", user_id=user.id)
        return {"message": "Password changed successfully"}

    # ------------------------------------------------------------------
    # profile

    async def get_current_user(self, user_id: str) -> AuthUser:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return self._to_auth_user(user)


__all__ = [
    "AccountManager",
    "AuthContext",
    "AuthUser",
    "IdentityStore",
    "LoginResult",
    "RefreshResult",
    "RequestMeta",
    "slugify",
    "to_auth_user",
]
