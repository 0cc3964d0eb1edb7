from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping


class Role(str, Enum):
    """Fixed staff roles. Declaration order follows rank, highest first."""

    SUPER_ADMIN = "super_admin"
    BRANCH_ADMIN = "branch_admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    PHARMACIST = "pharmacist"
    LAB_TECH = "lab_tech"
    RECEPTIONIST = "receptionist"
    ACCOUNTANT = "accountant"


# Strictly decreasing so the ranks form a total order: administrators, then
# clinical staff, then front-desk and support staff.
ROLE_RANK: dict[Role, int] = {
    Role.SUPER_ADMIN: 100,
    Role.BRANCH_ADMIN: 80,
    Role.DOCTOR: 60,
    Role.NURSE: 50,
    Role.PHARMACIST: 45,
    Role.LAB_TECH: 44,
    Role.RECEPTIONIST: 42,
    Role.ACCOUNTANT: 40,
}

ROLE_DISPLAY_NAMES: dict[Role, str] = {
    Role.SUPER_ADMIN: "Super Admin",
    Role.BRANCH_ADMIN: "Branch Admin",
    Role.DOCTOR: "Doctor",
    Role.NURSE: "Nurse",
    Role.PHARMACIST: "Pharmacist",
    Role.LAB_TECH: "Lab Technician",
    Role.RECEPTIONIST: "Receptionist",
    Role.ACCOUNTANT: "Accountant",
}

ALL = "*"

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.SUPER_ADMIN: frozenset({ALL}),
    Role.BRANCH_ADMIN: frozenset(
        {
            "tenants:read",
            "branches:read",
            "users:read",
            "users:write",
            "users:create",
            "users:delete",
            "patients:*",
            "appointments:*",
            "consultations:*",
            "prescriptions:*",
            "billing:*",
            "reports:read",
            "inventory:*",
            "audit:read",
        }
    ),
    Role.DOCTOR: frozenset(
        {
            "patients:read",
            "patients:write",
            "appointments:read",
            "appointments:write:own",
            "consultations:*",
            "prescriptions:*",
            "lab_orders:write",
            "lab_results:read",
            "ipd:read",
            "ipd:write:own",
        }
    ),
    Role.NURSE: frozenset(
        {
            "patients:read",
            "appointments:read",
            "vitals:write",
            "ipd:read",
            "ipd:write:nursing",
            "medication_admin:write",
        }
    ),
    Role.PHARMACIST: frozenset(
        {
            "patients:read:limited",
            "prescriptions:read",
            "dispensing:*",
            "inventory:*",
        }
    ),
    Role.LAB_TECH: frozenset(
        {
            "patients:read:limited",
            "lab_orders:read",
            "lab_results:write",
            "samples:*",
        }
    ),
    Role.RECEPTIONIST: frozenset(
        {
            "patients:read",
            "patients:write",
            "appointments:*",
            "billing:read",
            "billing:write",
            "queue:*",
        }
    ),
    Role.ACCOUNTANT: frozenset(
        {
            "tenants:read",
            "branches:read",
            "users:read",
            "billing:read",
            "reports:read",
            "reports:read:financial",
            "insurance:read",
            "audit:read",
        }
    ),
}


def validate_permission_table(
    table: Mapping[Role, frozenset[str]] = ROLE_PERMISSIONS,
    ranks: Mapping[Role, int] = ROLE_RANK,
) -> None:
    """Fail fast when a role lacks a permission set or a rank, or ranks tie."""

    missing = [role.value for role in Role if role not in table]
    if missing:
        raise RuntimeError(f"roles missing from permission table: {', '.join(missing)}")
    unranked = [role.value for role in Role if role not in ranks]
    if unranked:
        raise RuntimeError(f"roles missing from rank table: {', '.join(unranked)}")
    if len(set(ranks.values())) != len(ranks):
        raise RuntimeError("role ranks must be distinct")


validate_permission_table()


def parse_role(value: str | Role) -> Role:
    """Coerce a stored role string into a Role, raising ValueError when unknown."""

    if isinstance(value, Role):
        return value
    return Role(value)


def permissions_for(role: str | Role) -> frozenset[str]:
    return ROLE_PERMISSIONS[parse_role(role)]


def claims_allow(granted: Iterable[str], permission: str) -> bool:
    """Check a permission against a granted list, honouring wildcards.

    A grant matches when it is ``*``, the exact permission, or
    ``<resource>:*`` for the permission's resource.
    """

    granted_set = granted if isinstance(granted, (set, frozenset)) else set(granted)
    if ALL in granted_set:
        return True
    resource = permission.split(":", 1)[0]
    return permission in granted_set or f"{resource}:*" in granted_set


def has_permission(role: str | Role, permission: str) -> bool:
    return claims_allow(permissions_for(role), permission)


def has_any(role: str | Role, permissions: Iterable[str]) -> bool:
    granted = permissions_for(role)
    return any(claims_allow(granted, perm) for perm in permissions)


def has_all(role: str | Role, permissions: Iterable[str]) -> bool:
    granted = permissions_for(role)
    return all(claims_allow(granted, perm) for perm in permissions)


def rank(role: str | Role) -> int:
    return ROLE_RANK[parse_role(role)]


def outranks(role_a: str | Role, role_b: str | Role) -> bool:
    """True when role_a sits strictly above role_b in the hierarchy."""

    return rank(role_a) > rank(role_b)


def display_name(role: str | Role) -> str:
    try:
        return ROLE_DISPLAY_NAMES[parse_role(role)]
    except ValueError:
        return str(role)


TOP_ROLE: Role = max(ROLE_RANK, key=ROLE_RANK.__getitem__)


__all__ = [
    "ALL",
    "ROLE_PERMISSIONS",
    "ROLE_RANK",
    "Role",
    "TOP_ROLE",
    "claims_allow",
    "display_name",
    "has_all",
    "has_any",
    "has_permission",
    "outranks",
    "parse_role",
    "permissions_for",
    "rank",
    "validate_permission_table",
]
