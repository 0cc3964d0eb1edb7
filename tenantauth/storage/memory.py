from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    AuditEvent,
    Branch,
    BranchMembership,
    LoginAttempt,
    OtpCode,
    PasswordHistory,
    RefreshToken,
    Tenant,
    User,
    UserBranch,
)


class MemoryStore:
    """In-process identity store for development and tests.

    Every public method runs under a single re-entrant lock, which makes the
    read-modify-write primitives (failed-login counting, OTP attempts and
    consumption) atomic with respect to other threads. When ``fs_root`` is
    given the whole state is snapshotted to JSON after each mutation and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.branches: Dict[str, Branch] = {}
        self.user_branches: List[UserBranch] = []
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.otp_codes: Dict[str, OtpCode] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.password_history: List[PasswordHistory] = []
        self.audit_events: List[AuditEvent] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # tenants and branches

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._data_lock:
            return any(t.slug == slug for t in self.tenants.values())

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        with self._data_lock:
            return self.branches.get(branch_id)

    def create_tenant_with_owner(
        self,
        tenant: Tenant,
        branch: Branch,
        owner: User,
        membership: UserBranch,
    ) -> User:
        """Create tenant, default branch, owner, membership and first history row together."""

        with self._data_lock:
            if self.tenant_slug_exists(tenant.slug):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            self._check_user_unique(owner)
            self.tenants[tenant.id] = tenant
            self.branches[branch.id] = branch
            self.users[owner.id] = owner
            self.user_branches.append(membership)
            self.password_history.append(
                PasswordHistory(user_id=owner.id, password_hash=owner.password_hash)
            )
            self._persist_state()
            return owner

    # ------------------------------------------------------------------
    # users

    def _check_user_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.tenant_id == user.tenant_id and existing.phone == user.phone:
                raise ConstraintViolation(
                    "phone already exists for tenant", {"field": "phone"}
                )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def find_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if u.phone == phone and (tenant_id is None or u.tenant_id == tenant_id)
            ]
            if not matches:
                return None
            # A phone may exist in several tenants; without a tenant the oldest account wins
            return min(matches, key=lambda u: u.created_at)

    def find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email and u.email.lower() == lowered
                ),
                None,
            )

    def count_users(self, tenant_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if u.tenant_id == tenant_id and u.deleted_at is None
            )

    def create_user(self, user: User, memberships: Sequence[UserBranch]) -> User:
        with self._data_lock:
            self._check_user_unique(user)
            for membership in memberships:
                if membership.branch_id not in self.branches:
                    raise ConstraintViolation(
                        "branch does not exist", {"field": "branch_id"}
                    )
            self.users[user.id] = user
            self.user_branches.extend(memberships)
            self.password_history.append(
                PasswordHistory(user_id=user.id, password_hash=user.password_hash)
            )
            self._persist_state()
            return user

    def list_user_branches(self, user_id: str) -> List[BranchMembership]:
        with self._data_lock:
            result: List[BranchMembership] = []
            for membership in self.user_branches:
                if membership.user_id != user_id:
                    continue
                branch = self.branches.get(membership.branch_id)
                if not branch:
                    continue
                result.append(
                    BranchMembership(
                        id=membership.id,
                        branch_id=branch.id,
                        branch_name=branch.name,
                        branch_code=branch.code,
                        is_primary=membership.is_primary,
                    )
                )
            result.sort(key=lambda m: not m.is_primary)
            return result

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def deactivate_user(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = False
            user.deleted_at = at
            self._persist_state()
            return user

    # ------------------------------------------------------------------
    # login state

    def register_failed_login(
        self, user_id: str, threshold: int, locked_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        """Increment the failure counter; lock when it reaches ``threshold``.

        Returns the new count and the lock expiry if this call set one.
        """

        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            user.failed_login_count += 1
            applied: Optional[datetime] = None
            if user.failed_login_count >= threshold:
                user.locked_until = locked_until
                applied = locked_until
            self._persist_state()
            return user.failed_login_count, applied

    def record_successful_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = 0
            user.locked_until = None
            user.last_login_at = at
            self._persist_state()

    def reset_lockout(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = 0
            user.locked_until = None
            self._persist_state()

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()

    # ------------------------------------------------------------------
    # passwords

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            self._persist_state()

    def add_password_history(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self.password_history.append(
                PasswordHistory(user_id=user_id, password_hash=password_hash)
            )
            self._persist_state()

    def recent_password_hashes(self, user_id: str, limit: int) -> List[str]:
        with self._data_lock:
            entries = [h for h in self.password_history if h.user_id == user_id]
            # list order breaks ties between rows stamped in the same instant
            ordered = sorted(
                enumerate(entries), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True
            )
            return [entry.password_hash for _, entry in ordered[:limit]]

    # ------------------------------------------------------------------
    # refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[token.token] = token
            self._persist_state()
            return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def revoke_refresh_token(self, token: str, at: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = at
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = at
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # ------------------------------------------------------------------
    # one-time passcodes

    def create_otp(self, otp: OtpCode) -> OtpCode:
        """Consume pending codes for the same phone and purpose, then insert."""

        with self._data_lock:
            for existing in self.otp_codes.values():
                if (
                    existing.phone == otp.phone
                    and existing.purpose == otp.purpose
                    and existing.consumed_at is None
                ):
                    existing.consumed_at = otp.created_at
            self.otp_codes[otp.id] = otp
            self._persist_state()
            return otp

    def get_pending_otp(self, phone: str, purpose: str) -> Optional[OtpCode]:
        with self._data_lock:
            pending = [
                o
                for o in self.otp_codes.values()
                if o.phone == phone and o.purpose == purpose and o.consumed_at is None
            ]
            if not pending:
                return None
            return replace(max(pending, key=lambda o: o.created_at))

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if not otp:
                return 0
            otp.attempts += 1
            self._persist_state()
            return otp.attempts

    def consume_otp(self, otp_id: str, at: datetime) -> bool:
        with self._data_lock:
            otp = self.otp_codes.get(otp_id)
            if not otp or otp.consumed_at is not None:
                return False
            otp.consumed_at = at
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # audit and health

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)
            self._persist_state()

    def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # persistence

    _COLLECTIONS = {
        "tenants": Tenant,
        "branches": Branch,
        "user_branches": UserBranch,
        "users": User,
        "refresh_tokens": RefreshToken,
        "otp_codes": OtpCode,
        "login_attempts": LoginAttempt,
        "password_history": PasswordHistory,
        "audit_events": AuditEvent,
    }

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize(obj) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model, data: dict):
        values = dict(data)
        for f in fields(model):
            raw = values.get(f.name)
            if isinstance(raw, str) and "datetime" in str(f.type):
                values[f.name] = datetime.fromisoformat(raw)
        return model(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state: Dict[str, list] = {}
        for name in self._COLLECTIONS:
            collection = getattr(self, name)
            items = collection.values() if isinstance(collection, dict) else collection
            state[name] = [self._serialize(item) for item in items]
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, model in self._COLLECTIONS.items():
            items = [self._deserialize(model, raw) for raw in data.get(name, [])]
            if isinstance(getattr(self, name), dict):
                key = "token" if name == "refresh_tokens" else "id"
                setattr(self, name, {getattr(item, key): item for item in items})
            else:
                setattr(self, name, items)
        self.logger.info("memory_store_loaded", path=str(path), users=len(self.users))
        return True
