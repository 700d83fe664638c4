"""Permission catalog and role mapping."""

from hypothesis import given, strategies as st

from shared.schemas.permissions import (
    DEFAULT_ROLE,
    ROLE_PERMISSIONS,
    Permission,
    Role,
    parse_role,
    permissions_for_role,
)


def test_user_role_capabilities():
    assert permissions_for_role(Role.USER) == {
        Permission.READ_OWN_DATA,
        Permission.WRITE_OWN_DATA,
        Permission.DELETE_OWN_DATA,
        Permission.EXPORT_OWN_DATA,
        Permission.SHARE_WITH_HEALTHCARE,
    }


def test_healthcare_viewer_only_reads_shared_data():
    assert permissions_for_role(Role.HEALTHCARE_VIEWER) == {Permission.READ_SHARED_DATA}


def test_admin_cannot_share_or_read_shared():
    admin = permissions_for_role(Role.ADMIN)
    assert Permission.MANAGE_SYSTEM_SETTINGS in admin
    assert Permission.VIEW_ANONYMIZED_ANALYTICS in admin
    assert Permission.SHARE_WITH_HEALTHCARE not in admin
    assert Permission.READ_SHARED_DATA not in admin


def test_every_role_is_mapped():
    assert set(ROLE_PERMISSIONS) == set(Role)


def test_wire_values():
    assert Role.HEALTHCARE_VIEWER.value == "healthcareViewer"
    assert Permission.MANAGE_SYSTEM_SETTINGS.value == "manageSystemSettings"


def test_parse_role_accepts_raw_strings():
    assert parse_role("admin") is Role.ADMIN
    assert parse_role("healthcareViewer") is Role.HEALTHCARE_VIEWER
    assert parse_role(Role.ADMIN) is Role.ADMIN


@given(st.one_of(st.none(), st.integers(), st.booleans(), st.text()))
def test_unrecognised_role_values_fall_back_to_user(value):
    if isinstance(value, str) and value in {r.value for r in Role}:
        return
    assert parse_role(value) is DEFAULT_ROLE
    assert permissions_for_role(value) == ROLE_PERMISSIONS[Role.USER]


@given(st.sampled_from(list(Role)))
def test_only_admin_manages_settings(role):
    assert (Permission.MANAGE_SYSTEM_SETTINGS in permissions_for_role(role)) == (role is Role.ADMIN)
