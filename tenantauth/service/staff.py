from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.auth import AuthContext, AuthUser, IdentityStore, to_auth_user
from tenantauth.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.passwords import CredentialHasher, PasswordPolicy
from tenantauth.service.permissions import outranks, parse_role
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import User, UserBranch, new_id

logger = get_logger(__name__)

PLAN_LIMITS = {
    "trial": 5,
    "basic": 10,
    "professional": 50,
    "enterprise": 500,
}


def plan_limit(plan: Optional[str]) -> int:
    return PLAN_LIMITS.get(plan or "trial", PLAN_LIMITS["trial"])


class StaffService:
    """Tenant-scoped staff management guarded by role rank.

    An actor may only create, modify, deactivate or unlock accounts whose
    role it strictly outranks, and may only hand out roles below its own.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        audit: Optional[AuditRecorder] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.audit = audit or AuditRecorder(store)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _role(value: str) -> str:
        try:
            return parse_role(value).value
        except ValueError:
            raise ValidationError("Invalid role", detail={"field": "role", "value": value})

    def _tenant_user(self, actor: AuthContext, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.tenant_id != actor.tenant_id or user.deleted_at is not None:
            raise NotFoundError("User not found")
        return user

    def _memberships(
        self,
        actor: AuthContext,
        user_id: str,
        branch_ids: Sequence[str],
        primary_branch_id: Optional[str],
    ) -> List[UserBranch]:
        unique_ids = list(dict.fromkeys(branch_ids))
        if not unique_ids:
            raise ValidationError(
                "At least one branch is required", detail={"field": "branch_ids"}
            )
        primary = primary_branch_id or unique_ids[0]
        if primary not in unique_ids:
            raise ValidationError(
                "Primary branch must be one of the assigned branches",
                detail={"field": "primary_branch_id"},
            )
        for branch_id in unique_ids:
            branch = self.store.get_branch(branch_id)
            if not branch or branch.tenant_id != actor.tenant_id:
                raise NotFoundError("Branch not found", detail={"branch_id": branch_id})
        return [
            UserBranch(
                id=new_id(),
                user_id=user_id,
                branch_id=branch_id,
                is_primary=branch_id == primary,
            )
            for branch_id in unique_ids
        ]

    async def create_user(
        self,
        actor: AuthContext,
        *,
        phone: str,
        name: str,
        password: str,
        role: str,
        branch_ids: Sequence[str],
        email: Optional[str] = None,
        primary_branch_id: Optional[str] = None,
    ) -> AuthUser:
        self.policy.ensure_valid(password)
        role = self._role(role)
        if not outranks(actor.role, role):
            raise ForbiddenError("Cannot create user with equal or higher role")

        tenant = self.store.get_tenant(actor.tenant_id)
        plan = tenant.subscription_plan if tenant else "trial"
        limit = plan_limit(plan)
        if self.store.count_users(actor.tenant_id) >= limit:
            raise ForbiddenError(
                f"User limit reached. Your {plan} plan allows {limit} users."
            )
        if self.store.find_user_by_phone(phone, actor.tenant_id):
            raise ConflictError("Phone number already registered")

        user_id = new_id()
        memberships = self._memberships(actor, user_id, branch_ids, primary_branch_id)
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        user = User(
            id=user_id,
            tenant_id=actor.tenant_id,
            phone=phone,
            name=name,
            email=email,
            password_hash=password_hash,
            role=role,
        )
        try:
            self.store.create_user(user, memberships)
        except ConstraintViolation as exc:
            raise ConflictError("Phone number already registered", detail=exc.detail)

        self.audit.record_event(
            actor.tenant_id, actor.user_id, "user.create", "user", user.id, {"role": role}
        )
        logger.info("staff_user_created", tenant_id=actor.tenant_id, user_id=user.id, role=role)
        return to_auth_user(self.store, user)

    async def update_role(self, actor: AuthContext, user_id: str, role: str) -> AuthUser:
        user = self._tenant_user(actor, user_id)
        role = self._role(role)
        if not outranks(actor.role, user.role):
            raise ForbiddenError("Cannot modify user with equal or higher role")
        if not outranks(actor.role, role):
            raise ForbiddenError("Cannot assign equal or higher role")
        previous = user.role
        updated = self.store.update_user_role(user.id, role)
        if not updated:
            raise NotFoundError("User not found")
        self.audit.record_event(
            actor.tenant_id,
            actor.user_id,
            "user.role_change",
            "user",
            user.id,
            {"from": previous, "to": role},
        )
        return to_auth_user(self.store, updated)

    async def deactivate_user(self, actor: AuthContext, user_id: str) -> int:
        """Soft-delete a user and revoke their sessions; returns tokens revoked."""

        user = self._tenant_user(actor, user_id)
        if not outranks(actor.role, user.role):
            raise ForbiddenError("Cannot delete user with equal or higher role")
        now = self._now()
        self.store.deactivate_user(user.id, now)
        revoked = self.store.revoke_user_refresh_tokens(user.id, now)
        self.audit.record_event(
            actor.tenant_id,
            actor.user_id,
            "user.delete",
            "user",
            user.id,
            {"revoked_sessions": revoked},
        )
        logger.info("staff_user_deactivated", tenant_id=actor.tenant_id, user_id=user.id)
        return revoked

    async def unlock_user(self, actor: AuthContext, user_id: str) -> None:
        user = self._tenant_user(actor, user_id)
        if not outranks(actor.role, user.role):
            raise ForbiddenError("Cannot modify user with equal or higher role")
        self.store.reset_lockout(user.id)
        self.audit.record_event(
            actor.tenant_id, actor.user_id, "auth.account_unlocked", "user", user.id
        )


__all__ = ["PLAN_LIMITS", "StaffService", "plan_limit"]
