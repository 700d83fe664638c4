"""
Role Store Adapter

Typed role and grant tables on top of the flat local key-value store.
These tables are plain persistence: authorization rules live in
RBACService, which is the only component meant to call the writers.
"""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from shared.schemas.permissions import Role
from shared.schemas.state import AccessGrant, ensure_utc
from shared.schemas.storage import KeyValueStore

from ..storage.keys import StoreKeys

logger = logging.getLogger(__name__)


class RoleTable:
    """One role value per user id."""

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    async def get(self, user_id: str) -> Optional[str]:
        """Raw stored role value, or None when unassigned."""
        return await self._kv.get(StoreKeys.USER_ROLE.format(user_id=user_id))

    async def put(self, user_id: str, role: Role) -> None:
        await self._kv.set(StoreKeys.USER_ROLE.format(user_id=user_id), role.value)

    async def delete(self, user_id: str) -> None:
        await self._kv.delete(StoreKeys.USER_ROLE.format(user_id=user_id))


class GrantTable:
    """Access grants keyed by (owner id, viewer id)."""

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    @staticmethod
    def _keys(owner_id: str, viewer_id: str) -> tuple[str, str]:
        # Ids are percent-encoded so ":" inside an id cannot shift the pair boundary.
        owner_id, viewer_id = quote(owner_id, safe=""), quote(viewer_id, safe="")
        return (
            StoreKeys.GRANT_ACTIVE.format(owner_id=owner_id, viewer_id=viewer_id),
            StoreKeys.GRANT_EXPIRY.format(owner_id=owner_id, viewer_id=viewer_id),
        )

    async def get(self, owner_id: str, viewer_id: str) -> AccessGrant:
        """
        Read a grant. A missing grant comes back inactive.

        Raises ValueError when the stored expiry is not ISO-8601.
        """
        active_key, expiry_key = self._keys(owner_id, viewer_id)
        active = await self._kv.get(active_key, False)
        expiry_raw = await self._kv.get(expiry_key)

        expires_at = None
        if expiry_raw is not None:
            expires_at = ensure_utc(datetime.fromisoformat(str(expiry_raw)))

        return AccessGrant(
            owner_id=owner_id,
            viewer_id=viewer_id,
            active=active is True,
            expires_at=expires_at,
        )

    async def put(self, grant: AccessGrant) -> None:
        """Write the active flag, then the expiry (or clear a stale one)."""
        active_key, expiry_key = self._keys(grant.owner_id, grant.viewer_id)
        await self._kv.set(active_key, grant.active)
        if grant.expires_at is not None:
            await self._kv.set(expiry_key, ensure_utc(grant.expires_at).isoformat())
        else:
            await self._kv.delete(expiry_key)

    async def delete(self, owner_id: str, viewer_id: str) -> None:
        """Remove both the active flag and the expiry. Safe when absent."""
        active_key, expiry_key = self._keys(owner_id, viewer_id)
        await self._kv.delete(active_key)
        await self._kv.delete(expiry_key)


class RoleStore:
    """Role and grant tables sharing one key-value store."""

    def __init__(self, kv: KeyValueStore):
        self.roles = RoleTable(kv)
        self.grants = GrantTable(kv)
