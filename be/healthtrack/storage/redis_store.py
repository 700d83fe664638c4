"""
Redis Storage Implementation

Implements the KeyValueStore and UserRecordStore interfaces using Redis.
Values are JSON-encoded so booleans and strings keep their type.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from shared.schemas.state import UserRecord
from shared.schemas.storage import (
    HealthTrackStorage,
    KeyValueStore,
    StoreValue,
    UserRecordStore,
)

from ..core.config import settings


# ============================================================================
# Redis Key Prefixes (namespacing)
# ============================================================================

class RedisKeys:
    """Redis key patterns for different data types."""

    # Flat key-value settings (session flags, roles, grants, consent)
    SETTING = "kv:{key}"

    # User records
    USER = "user:{user_id}"
    USER_INDEX = "users"


def _serialize(obj) -> str:
    """Serialize Pydantic model or plain value to JSON string."""
    if hasattr(obj, 'model_dump_json'):
        return obj.model_dump_json()
    return json.dumps(obj, default=str)


def _deserialize(data, model_class):
    """Deserialize JSON string to Pydantic model."""
    if data is None:
        return None
    return model_class.model_validate_json(data)


# ============================================================================
# Redis Key-Value Store Implementation
# ============================================================================

class RedisKeyValueStore(KeyValueStore):
    """Redis implementation of KeyValueStore interface."""

    def __init__(self, client: redis.Redis):
        self._client = client

    async def get(self, key: str, default: Any = None) -> Any:
        data = await self._client.get(RedisKeys.SETTING.format(key=key))
        if data is None:
            return default
        return json.loads(data)

    async def set(self, key: str, value: StoreValue) -> None:
        await self._client.set(RedisKeys.SETTING.format(key=key), _serialize(value))

    async def delete(self, key: str) -> None:
        await self._client.delete(RedisKeys.SETTING.format(key=key))


# ============================================================================
# Redis User Record Store Implementation
# ============================================================================

class RedisUserRecordStore(UserRecordStore):
    """Redis implementation of UserRecordStore interface."""

    def __init__(self, client: redis.Redis):
        self._client = client

    async def get_all(self) -> list[UserRecord]:
        user_ids = await self._client.smembers(RedisKeys.USER_INDEX)

        users = []
        for uid in user_ids:
            user = await self.get(uid.decode() if isinstance(uid, bytes) else uid)
            if user:
                users.append(user)
        return users

    async def get(self, user_id: str) -> Optional[UserRecord]:
        data = await self._client.get(RedisKeys.USER.format(user_id=user_id))
        return _deserialize(data, UserRecord) if data else None

    async def put(self, record: UserRecord) -> None:
        pipe = self._client.pipeline()
        pipe.set(RedisKeys.USER.format(user_id=record.id), _serialize(record))
        pipe.sadd(RedisKeys.USER_INDEX, record.id)
        await pipe.execute()

    async def delete(self, user_id: str) -> None:
        pipe = self._client.pipeline()
        pipe.delete(RedisKeys.USER.format(user_id=user_id))
        pipe.srem(RedisKeys.USER_INDEX, user_id)
        await pipe.execute()


# ============================================================================
# Combined Storage Implementation
# ============================================================================

class RedisHealthTrackStorage(HealthTrackStorage):
    """Combined storage providing both local stores on one Redis connection."""

    def __init__(self, redis_url: str = None):
        self._redis_url = redis_url or settings.redis_url
        self._client: Optional[redis.Redis] = None
        self._kv: Optional[RedisKeyValueStore] = None
        self._users: Optional[RedisUserRecordStore] = None

    async def connect(self) -> None:
        """Initialize Redis connection."""
        self._client = redis.from_url(
            self._redis_url,
            password=settings.redis_password,
            encoding="utf-8",
            decode_responses=False
        )
        self._kv = RedisKeyValueStore(self._client)
        self._users = RedisUserRecordStore(self._client)

    @property
    def kv(self) -> KeyValueStore:
        """Get key-value store instance."""
        if self._kv is None:
            raise RuntimeError("Storage not connected. Call connect() first.")
        return self._kv

    @property
    def users(self) -> UserRecordStore:
        """Get user record store instance."""
        if self._users is None:
            raise RuntimeError("Storage not connected. Call connect() first.")
        return self._users

    async def health_check(self) -> bool:
        """Check storage connectivity."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except redis.RedisError:
            return False

    async def close(self) -> None:
        """Close storage connections."""
        if self._client:
            await self._client.aclose()
