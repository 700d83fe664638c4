"""API endpoints."""

from .routes import router, set_services, require_permission

__all__ = ["router", "set_services", "require_permission"]
