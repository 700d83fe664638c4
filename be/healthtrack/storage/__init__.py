"""Storage implementations."""

from .keys import StoreKeys
from .memory_store import MemoryKeyValueStore, MemoryUserRecordStore, MemoryHealthTrackStorage
from .redis_store import RedisKeyValueStore, RedisUserRecordStore, RedisHealthTrackStorage

__all__ = [
    "StoreKeys",
    "MemoryKeyValueStore",
    "MemoryUserRecordStore",
    "MemoryHealthTrackStorage",
    "RedisKeyValueStore",
    "RedisUserRecordStore",
    "RedisHealthTrackStorage",
]
