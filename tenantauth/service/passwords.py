from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger
from tenantauth.service.errors import ValidationError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
DEFAULT_HISTORY_LIMIT = 5

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


class CredentialHasher:
    """argon2id password hashing with salts embedded in the encoded hash."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, encoded: str | None) -> bool:
        """Return True when plaintext matches; malformed hashes yield False."""

        if not encoded:
            return False
        try:
            return self._hasher.verify(encoded, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable", algo=self.algorithm)
            return False

    def needs_rehash(self, encoded: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(encoded)
        except InvalidHash:
            return True


@dataclass
class PolicyResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


class PasswordPolicy:
    """Complexity rules and history reuse checks for new passwords."""

    def __init__(
        self, hasher: CredentialHasher, *, history_limit: int = DEFAULT_HISTORY_LIMIT
    ) -> None:
        self.hasher = hasher
        self.history_limit = history_limit

    def validate_complexity(self, password: str) -> PolicyResult:
        errors: List[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
        if not _UPPER.search(password):
            errors.append("Password must contain at least one uppercase letter")
        if not _LOWER.search(password):
            errors.append("Password must contain at least one lowercase letter")
        if not _DIGIT.search(password):
            errors.append("Password must contain at least one number")
        if not _SPECIAL.search(password):
            errors.append("Password must contain at least one special character")
        return PolicyResult(valid=not errors, errors=errors)

    def ensure_valid(self, password: str, *, field_name: str = "password") -> None:
        result = self.validate_complexity(password)
        if not result.valid:
            raise ValidationError(
                "Password does not meet complexity requirements",
                detail={"field": field_name, "errors": result.errors},
            )

    def is_reused(
        self,
        new_password: str,
        recent_hashes: Sequence[str],
        limit: int | None = None,
    ) -> bool:
        """Check the candidate against the newest ``limit`` hashes, stopping at the first match."""

        window = self.history_limit if limit is None else limit
        for encoded in list(recent_hashes)[:window]:
            if self.hasher.verify(new_password, encoded):
                return True
        return False


__all__ = [
    "CredentialHasher",
    "PasswordPolicy",
    "PolicyResult",
    "MIN_PASSWORD_LENGTH",
    "MAX_PASSWORD_LENGTH",
]
