"""
HealthTrack Permission Catalog

Closed set of capability tokens and the fixed role -> capability mapping.
Contract-first: the backend, clients and tests all read from here.
"""

from enum import Enum
from typing import Any


class Permission(str, Enum):
    """Capability tokens gating one class of operation each."""

    READ_OWN_DATA = "readOwnData"
    WRITE_OWN_DATA = "writeOwnData"
    DELETE_OWN_DATA = "deleteOwnData"
    EXPORT_OWN_DATA = "exportOwnData"
    SHARE_WITH_HEALTHCARE = "shareWithHealthcare"
    READ_SHARED_DATA = "readSharedData"
    VIEW_ANONYMIZED_ANALYTICS = "viewAnonymizedAnalytics"
    MANAGE_SYSTEM_SETTINGS = "manageSystemSettings"


class Role(str, Enum):
    """Roles a user can be assigned. One per user."""

    USER = "user"
    ADMIN = "admin"
    HEALTHCARE_VIEWER = "healthcareViewer"


DEFAULT_ROLE = Role.USER


# ============================================================================
# Role -> Capability Mapping
# ============================================================================

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.USER: frozenset({
        Permission.READ_OWN_DATA,
        Permission.WRITE_OWN_DATA,
        Permission.DELETE_OWN_DATA,
        Permission.EXPORT_OWN_DATA,
        Permission.SHARE_WITH_HEALTHCARE,
    }),
    Role.HEALTHCARE_VIEWER: frozenset({
        Permission.READ_SHARED_DATA,
    }),
    Role.ADMIN: frozenset({
        Permission.READ_OWN_DATA,
        Permission.WRITE_OWN_DATA,
        Permission.DELETE_OWN_DATA,
        Permission.EXPORT_OWN_DATA,
        Permission.VIEW_ANONYMIZED_ANALYTICS,
        Permission.MANAGE_SYSTEM_SETTINGS,
    }),
}


def parse_role(value: Any) -> Role:
    """
    Resolve a stored role value to a Role.

    Anything unrecognised (None, bad strings, wrong types) fails safe to
    the default `user` role.
    """
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        try:
            return Role(value)
        except ValueError:
            pass
    return DEFAULT_ROLE


def permissions_for_role(role: Any) -> frozenset[Permission]:
    """Capability set for a role (or raw role string)."""
    return ROLE_PERMISSIONS[parse_role(role)]
