"""
Session Manager

Durable session flags (is-logged-in, current user id) in the local
key-value store. They answer "who is logged in" at startup before any
network call; provider state takes precedence once it is available.
"""

import logging
from typing import Optional

from shared.schemas.state import SessionFlags, UserRecord
from shared.schemas.storage import KeyValueStore, UserRecordStore

from ..storage.keys import StoreKeys
from .identity_provider import IdentityProvider

logger = logging.getLogger(__name__)


class SessionContext:
    """
    Get/set/clear access to the session flags.

    One instance per process, passed explicitly to every component that
    needs it. Writes are sequential, not transactional.
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv

    async def get(self) -> SessionFlags:
        is_logged_in = await self._kv.get(StoreKeys.IS_LOGGED_IN, False)
        user_id = await self._kv.get(StoreKeys.CURRENT_USER_ID)
        return SessionFlags(
            is_logged_in=is_logged_in is True,
            current_user_id=user_id if isinstance(user_id, str) else None,
        )

    async def set(self, user_id: str) -> None:
        await self._kv.set(StoreKeys.IS_LOGGED_IN, True)
        await self._kv.set(StoreKeys.CURRENT_USER_ID, user_id)

    async def clear(self) -> None:
        await self._kv.set(StoreKeys.IS_LOGGED_IN, False)
        await self._kv.delete(StoreKeys.CURRENT_USER_ID)

    async def clear_user_id(self) -> None:
        await self._kv.delete(StoreKeys.CURRENT_USER_ID)


class SessionManager:
    """Single source of truth for login state at application start."""

    def __init__(
        self,
        context: SessionContext,
        users: UserRecordStore,
        provider: IdentityProvider,
        kv: KeyValueStore,
    ):
        self._context = context
        self._users = users
        self._provider = provider
        self._kv = kv

    @property
    def context(self) -> SessionContext:
        return self._context

    async def is_logged_in(self) -> bool:
        """Provider identity first, durable flag as fallback."""
        try:
            if await self._provider.current_identity() is not None:
                return True
        except Exception as e:
            logger.warning(f"Provider state unavailable, using local flag: {e}")

        try:
            return (await self._context.get()).is_logged_in
        except Exception as e:
            logger.warning(f"Reading session flag failed: {e}")
            return False

    async def get_current_user_id(self) -> Optional[str]:
        try:
            return (await self._context.get()).current_user_id
        except Exception as e:
            logger.warning(f"get_current_user_id error: {e}")
            return None

    async def get_current_user(self) -> Optional[UserRecord]:
        user_id = await self.get_current_user_id()
        if user_id is None:
            return None
        try:
            return await self._users.get(user_id)
        except Exception as e:
            logger.warning(f"get_current_user error: {e}")
            return None

    # ---- Health-data consent ----

    async def has_consented(self, user_id: str) -> bool:
        try:
            return await self._kv.get(StoreKeys.CONSENT.format(user_id=user_id), False) is True
        except Exception as e:
            logger.warning(f"Consent lookup failed for {user_id}: {e}")
            return False

    async def record_consent(self, user_id: str) -> None:
        await self._kv.set(StoreKeys.CONSENT.format(user_id=user_id), True)
        logger.info(f"Health data consent recorded for {user_id}")
