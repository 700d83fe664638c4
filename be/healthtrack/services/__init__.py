"""Identity, session and authorization services."""

from .auth_service import AuthService
from .rbac_service import RBACService
from .role_store import RoleStore
from .session_manager import SessionContext, SessionManager

__all__ = [
    "AuthService",
    "RBACService",
    "RoleStore",
    "SessionContext",
    "SessionManager",
]
