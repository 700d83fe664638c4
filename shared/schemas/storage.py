"""
Storage Interfaces (Repository Pattern)

Abstract interfaces for the local key-value store and the local user
record store. Implementations can be swapped (memory -> Redis) without
changing business logic.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from .state import UserRecord


# Values the key-value store accepts. Timestamps travel as ISO-8601 strings.
StoreValue = Union[bool, int, float, str]


# ============================================================================
# Key-Value Store Interface
# ============================================================================

class KeyValueStore(ABC):
    """
    Durable mapping from string keys to simple typed values.

    Used for session flags, role assignments, access grants and consent.
    Implementations:
    - MemoryKeyValueStore (dev/tests)
    - RedisKeyValueStore
    """

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Get value for key, or `default` if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: StoreValue) -> None:
        """Set value for key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key. No-op if absent."""
        pass


# ============================================================================
# User Record Store Interface
# ============================================================================

class UserRecordStore(ABC):
    """Durable mapping from user id to UserRecord."""

    @abstractmethod
    async def get_all(self) -> list[UserRecord]:
        """All known user records."""
        pass

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserRecord]:
        """Get record by user id."""
        pass

    @abstractmethod
    async def put(self, record: UserRecord) -> None:
        """Create or replace a record."""
        pass

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        """Delete record. No-op if absent."""
        pass


# ============================================================================
# Combined Storage Interface
# ============================================================================

class HealthTrackStorage(ABC):
    """Combined storage interface providing both local stores."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections."""
        pass

    @property
    @abstractmethod
    def kv(self) -> KeyValueStore:
        """Get key-value store instance."""
        pass

    @property
    @abstractmethod
    def users(self) -> UserRecordStore:
        """Get user record store instance."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check storage connectivity."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections."""
        pass
