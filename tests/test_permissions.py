import pytest

from tenantauth.service.permissions import (
    ROLE_PERMISSIONS,
    ROLE_RANK,
    TOP_ROLE,
    Role,
    claims_allow,
    display_name,
    has_all,
    has_any,
    has_permission,
    outranks,
    parse_role,
    permissions_for,
    validate_permission_table,
)


def test_every_role_has_permissions_and_rank():
    for role in Role:
        assert role in ROLE_PERMISSIONS
        assert role in ROLE_RANK


def test_ranks_form_total_order():
    assert len(set(ROLE_RANK.values())) == len(Role)
    assert TOP_ROLE is Role.SUPER_ADMIN


def test_validate_rejects_incomplete_table():
    partial = {k: v for k, v in ROLE_PERMISSIONS.items() if k is not Role.NURSE}
    with pytest.raises(RuntimeError, match="nurse"):
        validate_permission_table(partial)


def test_validate_rejects_tied_ranks():
    tied = dict(ROLE_RANK)
    tied[Role.NURSE] = tied[Role.DOCTOR]
    with pytest.raises(RuntimeError, match="distinct"):
        validate_permission_table(ROLE_PERMISSIONS, tied)


def test_super_admin_wildcard():
    assert has_permission("super_admin", "anything:at:all")
    assert has_permission(Role.SUPER_ADMIN, "users:delete")


def test_exact_and_resource_wildcard():
    assert has_permission("doctor", "patients:read")
    # consultations:* covers any consultations action
    assert has_permission("doctor", "consultations:delete")
    assert not has_permission("doctor", "billing:read")
    assert has_permission("branch_admin", "inventory:adjust")


def test_scoped_permission_does_not_widen():
    # pharmacists only hold patients:read:limited
    assert not has_permission("pharmacist", "patients:read")
    assert has_permission("pharmacist", "patients:read:limited")


def test_has_any_and_has_all():
    assert has_any("nurse", ["billing:read", "vitals:write"])
    assert not has_any("nurse", ["billing:read", "users:create"])
    assert has_all("receptionist", ["appointments:create", "queue:next"])
    assert not has_all("receptionist", ["appointments:create", "users:create"])


def test_outranks_is_strict():
    assert outranks("super_admin", "branch_admin")
    assert outranks("branch_admin", "doctor")
    assert outranks("doctor", "receptionist")
    assert not outranks("doctor", "doctor")
    assert not outranks("nurse", "doctor")


def test_unknown_role_raises():
    with pytest.raises(ValueError):
        parse_role("janitor")
    with pytest.raises(ValueError):
        permissions_for("janitor")


def test_claims_allow_against_token_list():
    granted = ["users:read", "patients:*"]
    assert claims_allow(granted, "patients:write")
    assert claims_allow(granted, "users:read")
    assert not claims_allow(granted, "users:write")
    assert claims_allow(["*"], "users:write")


def test_display_name():
    assert display_name("lab_tech") == "Lab Technician"
    assert display_name("unknown") == "unknown"
