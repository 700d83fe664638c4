"""
HealthTrack Shared Schemas

Contract-first types shared between the backend, clients and tests.
"""

from .permissions import (
    Permission,
    Role,
    DEFAULT_ROLE,
    ROLE_PERMISSIONS,
    parse_role,
    permissions_for_role,
)

from .state import (
    # Users
    NOTIFICATION_CATEGORIES,
    UserRecord,
    ProviderIdentity,
    default_notification_preferences,
    # Authorization
    AccessGrant,
    # Session
    SessionFlags,
    # Results
    MfaFactor,
    AuthResult,
)

from .storage import (
    StoreValue,
    KeyValueStore,
    UserRecordStore,
    HealthTrackStorage,
)

__all__ = [
    # Permissions
    "Permission",
    "Role",
    "DEFAULT_ROLE",
    "ROLE_PERMISSIONS",
    "parse_role",
    "permissions_for_role",
    # State
    "NOTIFICATION_CATEGORIES",
    "UserRecord",
    "ProviderIdentity",
    "default_notification_preferences",
    "AccessGrant",
    "SessionFlags",
    "MfaFactor",
    "AuthResult",
    # Storage
    "StoreValue",
    "KeyValueStore",
    "UserRecordStore",
    "HealthTrackStorage",
]
