from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    AuditEvent,
    Branch,
    BranchMembership,
    LoginAttempt,
    OtpCode,
    RefreshToken,
    Tenant,
    User,
    UserBranch,
)

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        phone TEXT NOT NULL,
        subscription_plan TEXT NOT NULL DEFAULT 'trial',
        trial_ends_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch (
        id UUID PRIMARY KEY,
        tenant_id UUID NOT NULL REFERENCES tenant(id),
        name TEXT NOT NULL,
        code TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        tenant_id UUID NOT NULL REFERENCES tenant(id),
        phone TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,
        UNIQUE (tenant_id, phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_branch (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        branch_id UUID NOT NULL REFERENCES branch(id),
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        UNIQUE (user_id, branch_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id UUID PRIMARY KEY,
        phone TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code_digest TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        attempts INTEGER NOT NULL DEFAULT 0,
        tenant_id UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS otp_code_pending_idx
        ON otp_code (phone, purpose) WHERE consumed_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id UUID PRIMARY KEY,
        phone TEXT NOT NULL,
        tenant_id UUID,
        success BOOLEAN NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        failure_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES app_user(id),
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS password_history_user_idx
        ON password_history (user_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        tenant_id UUID,
        user_id UUID,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_USER_COLUMNS = (
    "id, tenant_id, phone, name, email, password_hash, role, is_active, "
    "failed_login_count, locked_until, last_login_at, avatar_url, created_at, deleted_at"
)


class PostgresStore:
    """Postgres-backed identity store.

    Atomic primitives lean on single statements (``UPDATE ... RETURNING``) or
    explicit transactions; uniqueness is enforced by the schema and surfaces
    as ``ConstraintViolation``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping

    @staticmethod
    def _str_or_none(value: Any) -> Optional[str]:
        return str(value) if value is not None else None

    def _row_to_tenant(self, row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            email=row["email"],
            phone=row["phone"],
            subscription_plan=row.get("subscription_plan") or "trial",
            trial_ends_at=row.get("trial_ends_at"),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
        )

    def _row_to_branch(self, row: dict) -> Branch:
        return Branch(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            name=row["name"],
            code=row["code"],
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
        )

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            phone=row["phone"],
            name=row["name"],
            email=row.get("email"),
            password_hash=row["password_hash"],
            role=row["role"],
            is_active=row.get("is_active", True),
            failed_login_count=row.get("failed_login_count") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            avatar_url=row.get("avatar_url"),
            created_at=row["created_at"],
            deleted_at=row.get("deleted_at"),
        )

    def _row_to_refresh_token(self, row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            created_at=row["created_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    def _row_to_otp(self, row: dict) -> OtpCode:
        return OtpCode(
            id=str(row["id"]),
            phone=row["phone"],
            purpose=row["purpose"],
            code_digest=row["code_digest"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
            attempts=row.get("attempts") or 0,
            tenant_id=self._str_or_none(row.get("tenant_id")),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # tenants and branches

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM tenant WHERE slug = %s", (slug,)
            ).fetchone()
        return bool(row)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM branch WHERE id = %s", (branch_id,)
            ).fetchone()
        return self._row_to_branch(row) if row else None

    def _insert_user(self, conn, user: User) -> None:
        conn.execute(
            f"""
            INSERT INTO app_user ({_USER_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.tenant_id,
                user.phone,
                user.name,
                user.email,
                user.password_hash,
                user.role,
                user.is_active,
                user.failed_login_count,
                user.locked_until,
                user.last_login_at,
                user.avatar_url,
                user.created_at,
                user.deleted_at,
            ),
        )

    def _insert_membership(self, conn, membership: UserBranch) -> None:
        conn.execute(
            "INSERT INTO user_branch (id, user_id, branch_id, is_primary) VALUES (%s, %s, %s, %s)",
            (
                membership.id,
                membership.user_id,
                membership.branch_id,
                membership.is_primary,
            ),
        )

    def _insert_history(self, conn, user_id: str, password_hash: str) -> None:
        conn.execute(
            "INSERT INTO password_history (user_id, password_hash) VALUES (%s, %s)",
            (user_id, password_hash),
        )

    def create_tenant_with_owner(
        self,
        tenant: Tenant,
        branch: Branch,
        owner: User,
        membership: UserBranch,
    ) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO tenant (id, name, slug, email, phone, subscription_plan, trial_ends_at, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        tenant.name,
                        tenant.slug,
                        tenant.email,
                        tenant.phone,
                        tenant.subscription_plan,
                        tenant.trial_ends_at,
                        tenant.is_active,
                        tenant.created_at,
                    ),
                )
                conn.execute(
                    "INSERT INTO branch (id, tenant_id, name, code, is_active, created_at) VALUES (%s, %s, %s, %s, %s, %s)",
                    (
                        branch.id,
                        branch.tenant_id,
                        branch.name,
                        branch.code,
                        branch.is_active,
                        branch.created_at,
                    ),
                )
                self._insert_user(conn, owner)
                self._insert_membership(conn, membership)
                self._insert_history(conn, owner.id, owner.password_hash)
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            raise ConstraintViolation(
                "tenant registration conflicts with existing data",
                {
                    "constraint": constraint or None,
                    "field": "phone" if "phone" in constraint else "slug",
                },
            )
        return owner

    # ------------------------------------------------------------------
    # users

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            if tenant_id:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE tenant_id = %s AND phone = %s",
                    (tenant_id, phone),
                ).fetchone()
            else:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE phone = %s ORDER BY created_at ASC LIMIT 1",
                    (phone,),
                ).fetchone()
        return self._row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE lower(email) = lower(%s) ORDER BY created_at ASC LIMIT 1",
                (email,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def count_users(self, tenant_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM app_user WHERE tenant_id = %s AND deleted_at IS NULL",
                (tenant_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def create_user(self, user: User, memberships: Sequence[UserBranch]) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                self._insert_user(conn, user)
                for membership in memberships:
                    self._insert_membership(conn, membership)
                self._insert_history(conn, user.id, user.password_hash)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "phone already exists for tenant", {"field": "phone"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("branch does not exist", {"field": "branch_id"})
        return user

    def list_user_branches(self, user_id: str) -> List[BranchMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ub.id, ub.branch_id, ub.is_primary, b.name AS branch_name, b.code AS branch_code
                FROM user_branch ub
                JOIN branch b ON b.id = ub.branch_id
                WHERE ub.user_id = %s
                ORDER BY ub.is_primary DESC, b.name ASC
                """,
                (user_id,),
            ).fetchall()
        return [
            BranchMembership(
                id=str(row["id"]),
                branch_id=str(row["branch_id"]),
                branch_name=row["branch_name"],
                branch_code=row["branch_code"],
                is_primary=bool(row["is_primary"]),
            )
            for row in rows
        ]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET role = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def deactivate_user(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET is_active = FALSE, deleted_at = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (at, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # ------------------------------------------------------------------
    # login state

    def register_failed_login(
        self, user_id: str, threshold: int, locked_until: datetime
    ) -> tuple[int, Optional[datetime]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = failed_login_count + 1,
                    locked_until = CASE
                        WHEN failed_login_count + 1 >= %s THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING failed_login_count, locked_until
                """,
                (threshold, locked_until, user_id),
            ).fetchone()
        if not row:
            return 0, None
        count = int(row["failed_login_count"])
        return count, (row["locked_until"] if count >= threshold else None)

    def record_successful_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_count = 0, locked_until = NULL, last_login_at = %s WHERE id = %s",
                (at, user_id),
            )

    def reset_lockout(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_count = 0, locked_until = NULL WHERE id = %s",
                (user_id,),
            )

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, phone, tenant_id, success, ip_address, user_agent, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.phone,
                    attempt.tenant_id,
                    attempt.success,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.failure_reason,
                    attempt.created_at,
                ),
            )

    # ------------------------------------------------------------------
    # passwords

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def add_password_history(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            self._insert_history(conn, user_id, password_hash)

    def recent_password_hashes(self, user_id: str, limit: int) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT password_hash FROM password_history WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [row["password_hash"] for row in rows]

    # ------------------------------------------------------------------
    # refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, user_id, expires_at, created_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token,
                        token.user_id,
                        token.expires_at,
                        token.created_at,
                        token.user_agent,
                        token.ip_address,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE token = %s AND revoked_at IS NULL RETURNING id",
                (at, token),
            ).fetchone()
        return bool(row)

    def revoke_user_refresh_tokens(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL RETURNING id",
                (at, user_id),
            ).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # one-time passcodes

    def create_otp(self, otp: OtpCode) -> OtpCode:
        try:
            with self._connect() as conn, conn.transaction():
                # Serialise issuers for one (phone, purpose) so the UPDATE below
                # sees any code a concurrent request committed first
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"otp:{otp.phone}:{otp.purpose}",),
                )
                conn.execute(
                    "UPDATE otp_code SET consumed_at = %s WHERE phone = %s AND purpose = %s AND consumed_at IS NULL",
                    (otp.created_at, otp.phone, otp.purpose),
                )
                conn.execute(
                    """
                    INSERT INTO otp_code (id, phone, purpose, code_digest, expires_at, attempts, tenant_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        otp.id,
                        otp.phone,
                        otp.purpose,
                        otp.code_digest,
                        otp.expires_at,
                        otp.attempts,
                        otp.tenant_id,
                        otp.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "a pending code already exists for this phone and purpose",
                {"field": "phone", "constraint": "otp_code_pending_idx"},
            )
        return otp

    def get_pending_otp(self, phone: str, purpose: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE phone = %s AND purpose = %s AND consumed_at IS NULL
                ORDER BY created_at DESC LIMIT 1
                """,
                (phone, purpose),
            ).fetchone()
        return self._row_to_otp(row) if row else None

    def increment_otp_attempts(self, otp_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET attempts = attempts + 1 WHERE id = %s RETURNING attempts",
                (otp_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def consume_otp(self, otp_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET consumed_at = %s WHERE id = %s AND consumed_at IS NULL RETURNING id",
                (at, otp_id),
            ).fetchone()
        return bool(row)

    # ------------------------------------------------------------------
    # audit

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, tenant_id, user_id, action, entity_type, entity_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.tenant_id,
                    event.user_id,
                    event.action,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )
