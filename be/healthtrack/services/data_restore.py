"""
Remote Data Restore

Repopulates locally-owned health data after login. The identity core only
triggers it; failures are the caller's to log.
"""

import logging
import ssl
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
import certifi

from ..core.config import settings

logger = logging.getLogger(__name__)


class DataRestoreError(Exception):
    """Restore request failed."""
    pass


class DataRestoreService(ABC):
    """Restores a user's health data from remote backup."""

    @abstractmethod
    async def restore(self, user_id: str) -> None:
        pass


class NullDataRestoreService(DataRestoreService):
    """Used when no restore endpoint is configured."""

    async def restore(self, user_id: str) -> None:
        logger.debug(f"Data restore not configured; skipping for {user_id}")


class HttpDataRestoreService(DataRestoreService):
    """POSTs a restore request for the user to the configured endpoint."""

    def __init__(self, restore_url: str = None, timeout_seconds: float = None):
        self._restore_url = restore_url or settings.restore_url
        self._timeout = aiohttp.ClientTimeout(
            total=timeout_seconds or settings.restore_timeout_seconds
        )
        self._client_session: Optional[aiohttp.ClientSession] = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        """Get or create shared aiohttp session with proper SSL."""
        if self._client_session is None or self._client_session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._client_session = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
        return self._client_session

    async def restore(self, user_id: str) -> None:
        session = await self._get_http_session()
        try:
            async with session.post(self._restore_url, json={"user_id": user_id}) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise DataRestoreError(f"Restore failed with HTTP {resp.status}: {body[:200]}")
        except aiohttp.ClientError as e:
            raise DataRestoreError(f"Restore request failed: {e}") from e
        logger.info(f"Data restore requested for {user_id}")

    async def close(self) -> None:
        if self._client_session and not self._client_session.closed:
            await self._client_session.close()


def create_data_restore_service() -> DataRestoreService:
    """Pick the restore service from settings."""
    if settings.restore_url:
        return HttpDataRestoreService()
    return NullDataRestoreService()
