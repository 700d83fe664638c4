"""
RBAC Service

Role-based access control over personal health data.

Decisions are plain booleans: False means deny/render nothing, never an
error to report. Store failures on the read path fail closed.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from shared.schemas.permissions import (
    Permission,
    Role,
    DEFAULT_ROLE,
    parse_role,
    permissions_for_role,
)
from shared.schemas.state import AccessGrant, utcnow

from ..core.event_bus import EventBus, IdentityEventType
from .role_store import RoleStore

logger = logging.getLogger(__name__)


class RBACService:
    """
    Evaluates and mutates roles and healthcare access grants.

    `set_role` is the only path that writes role assignments.
    """

    def __init__(
        self,
        role_store: RoleStore,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = role_store
        self._event_bus = event_bus
        self._clock = clock

    async def _emit(self, event_type: IdentityEventType, user_id: str, **payload) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(event_type, user_id=user_id, **payload)

    # ---- Roles ----

    async def get_role(self, user_id: str) -> Role:
        """User's role; `user` when absent, unrecognised or unreadable."""
        try:
            raw = await self._store.roles.get(user_id)
        except Exception as e:
            logger.warning(f"Role lookup failed for {user_id}, using default: {e}")
            return DEFAULT_ROLE
        return parse_role(raw)

    async def get_permissions(self, user_id: str) -> frozenset[Permission]:
        """Capability set granted by the user's role."""
        return permissions_for_role(await self.get_role(user_id))

    async def has_permission(self, user_id: str, permission: Permission) -> bool:
        return permission in await self.get_permissions(user_id)

    async def set_role(self, target_user_id: str, new_role: Role, acting_admin_id: str) -> bool:
        """
        Assign `new_role` to `target_user_id`.

        Only an actor holding MANAGE_SYSTEM_SETTINGS may do this; anyone
        else gets False and nothing is written.
        """
        if not await self.has_permission(acting_admin_id, Permission.MANAGE_SYSTEM_SETTINGS):
            logger.warning(
                f"Role change denied: {acting_admin_id} tried to set {target_user_id} "
                f"to {new_role.value}"
            )
            await self._emit(
                IdentityEventType.ROLE_CHANGE_DENIED,
                acting_admin_id,
                target_user_id=target_user_id,
                requested_role=new_role.value,
            )
            return False

        try:
            await self._store.roles.put(target_user_id, new_role)
        except Exception as e:
            logger.error(f"Failed to persist role for {target_user_id}: {e}")
            return False

        logger.info(f"Role for {target_user_id} set to {new_role.value} by {acting_admin_id}")
        await self._emit(
            IdentityEventType.ROLE_CHANGED,
            acting_admin_id,
            target_user_id=target_user_id,
            role=new_role.value,
        )
        return True

    # ---- Data Access ----

    async def can_access_data(
        self,
        requester_id: str,
        owner_id: str,
        write_access: bool = False,
    ) -> bool:
        """
        Decide whether `requester_id` may touch `owner_id`'s health data.

        Owners always may. Delegated access is read-only and requires the
        healthcareViewer role plus an effective grant.
        """
        if requester_id == owner_id:
            return True

        if write_access:
            return False

        if await self.get_role(requester_id) != Role.HEALTHCARE_VIEWER:
            return False

        grant = await self.get_grant(owner_id, requester_id)
        return grant is not None and grant.is_effective(self._clock())

    async def get_grant(self, owner_id: str, viewer_id: str) -> Optional[AccessGrant]:
        """Stored grant, or None when it cannot be read."""
        try:
            return await self._store.grants.get(owner_id, viewer_id)
        except Exception as e:
            logger.warning(f"Grant lookup failed for {owner_id} -> {viewer_id}: {e}")
            return None

    async def grant_healthcare_access(
        self,
        owner_id: str,
        viewer_id: str,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """
        Give `viewer_id` read access to `owner_id`'s data.

        Refused unless the viewer holds the healthcareViewer role. Without
        `expires_at` the grant lasts until revoked.
        """
        if await self.get_role(viewer_id) != Role.HEALTHCARE_VIEWER:
            logger.info(f"Grant refused: {viewer_id} is not a healthcare viewer")
            return False

        grant = AccessGrant(
            owner_id=owner_id,
            viewer_id=viewer_id,
            active=True,
            expires_at=expires_at,
        )
        try:
            await self._store.grants.put(grant)
        except Exception as e:
            logger.error(f"Failed to persist grant {owner_id} -> {viewer_id}: {e}")
            return False

        logger.info(f"Healthcare access granted {owner_id} -> {viewer_id} (expires {expires_at})")
        await self._emit(
            IdentityEventType.ACCESS_GRANTED,
            owner_id,
            viewer_id=viewer_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return True

    async def revoke_healthcare_access(self, owner_id: str, viewer_id: str) -> None:
        """Remove a grant. Idempotent."""
        await self._store.grants.delete(owner_id, viewer_id)
        logger.info(f"Healthcare access revoked {owner_id} -> {viewer_id}")
        await self._emit(IdentityEventType.ACCESS_REVOKED, owner_id, viewer_id=viewer_id)
