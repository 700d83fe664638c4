"""
In-Memory Storage Implementation

Simple in-memory storage for development and tests without Redis.
"""

from typing import Any, Optional

from shared.schemas.state import UserRecord
from shared.schemas.storage import (
    HealthTrackStorage,
    KeyValueStore,
    StoreValue,
    UserRecordStore,
)


class MemoryKeyValueStore(KeyValueStore):
    """In-memory implementation of KeyValueStore."""

    def __init__(self):
        self._values: dict[str, StoreValue] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    async def set(self, key: str, value: StoreValue) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        """Snapshot of stored keys (debugging/tests)."""
        return list(self._values)


class MemoryUserRecordStore(UserRecordStore):
    """In-memory implementation of UserRecordStore."""

    def __init__(self):
        self._users: dict[str, UserRecord] = {}

    async def get_all(self) -> list[UserRecord]:
        return [user.model_copy() for user in self._users.values()]

    async def get(self, user_id: str) -> Optional[UserRecord]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def put(self, record: UserRecord) -> None:
        self._users[record.id] = record.model_copy()

    async def delete(self, user_id: str) -> None:
        self._users.pop(user_id, None)


class MemoryHealthTrackStorage(HealthTrackStorage):
    """In-memory storage implementation."""

    def __init__(self):
        self._kv = MemoryKeyValueStore()
        self._users = MemoryUserRecordStore()

    async def connect(self) -> None:
        """No connection needed for memory storage."""
        pass

    @property
    def kv(self) -> MemoryKeyValueStore:
        return self._kv

    @property
    def users(self) -> MemoryUserRecordStore:
        return self._users

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass
