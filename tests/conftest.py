"""Shared fixtures: in-memory stores, provider and wired services."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from shared.schemas.state import UserRecord
from shared.schemas.storage import KeyValueStore, UserRecordStore

from healthtrack.core.event_bus import Event, EventBus
from healthtrack.services.auth_service import AuthService
from healthtrack.services.data_restore import DataRestoreService
from healthtrack.services.identity_provider import MemoryIdentityProvider
from healthtrack.services.rbac_service import RBACService
from healthtrack.services.role_store import RoleStore
from healthtrack.services.session_manager import SessionContext, SessionManager
from healthtrack.storage.memory_store import MemoryHealthTrackStorage


FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock for expiry tests."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FailingKeyValueStore(KeyValueStore):
    """Every call raises."""

    async def get(self, key, default=None):
        raise RuntimeError("kv store unavailable")

    async def set(self, key, value):
        raise RuntimeError("kv store unavailable")

    async def delete(self, key):
        raise RuntimeError("kv store unavailable")


class FailingUserRecordStore(UserRecordStore):
    """Reads succeed with nothing, writes raise."""

    async def get_all(self):
        return []

    async def get(self, user_id):
        return None

    async def put(self, record: UserRecord):
        raise RuntimeError("user store unavailable")

    async def delete(self, user_id):
        raise RuntimeError("user store unavailable")


class RecordingRestoreService(DataRestoreService):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []

    async def restore(self, user_id: str) -> None:
        self.calls.append(user_id)
        if self.fail:
            raise RuntimeError("restore endpoint down")


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage():
    return MemoryHealthTrackStorage()


@pytest.fixture
def provider():
    return MemoryIdentityProvider()


@pytest.fixture
def restore():
    return RecordingRestoreService()


@pytest_asyncio.fixture
async def event_bus():
    bus = EventBus()
    await bus.start()
    yield bus
    await bus.stop()


@pytest.fixture
def events(event_bus):
    """Every event published on the bus, in order."""
    received: list[Event] = []
    event_bus.subscribe_all(received.append)
    return received


@pytest.fixture
def session_context(storage):
    return SessionContext(storage.kv)


@pytest.fixture
def auth_service(provider, storage, session_context, restore, event_bus, clock):
    return AuthService(
        provider=provider,
        users=storage.users,
        session=session_context,
        restore=restore,
        event_bus=event_bus,
        clock=clock,
    )


@pytest.fixture
def role_store(storage):
    return RoleStore(storage.kv)


@pytest.fixture
def rbac(role_store, event_bus, clock):
    return RBACService(role_store, event_bus=event_bus, clock=clock)


@pytest.fixture
def session_manager(session_context, storage, provider):
    return SessionManager(session_context, storage.users, provider, storage.kv)
