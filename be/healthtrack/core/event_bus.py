"""
Typed Event Bus for identity and authorization events.

Semantics:
- Asynchronous, in-process
- Typed events only (no unstructured dicts)
- At-least-once delivery, handler failures retried once
- Publishing never raises into the identity flow that emitted the event

Operators subscribe to LOCAL_PERSISTENCE_FAILED to detect drift between
the identity provider and the local stores.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

Handler = Callable[["Event"], Any]

# Delivery attempts per handler (first try + one retry)
MAX_ATTEMPTS = 2

# Event ids remembered for deduplication
SEEN_CACHE_SIZE = 5000


class IdentityEventType(str, Enum):
    """Typed event categories for the identity core."""

    # Identity
    SIGNED_UP = "identity.signed_up"
    LOGGED_IN = "identity.logged_in"
    LOGGED_OUT = "identity.logged_out"
    MFA_CHALLENGE_ISSUED = "identity.mfa_challenge_issued"
    ACCOUNT_DELETED = "identity.account_deleted"

    # Drift between provider and local stores
    LOCAL_PERSISTENCE_FAILED = "storage.local_persistence_failed"
    DATA_RESTORE_FAILED = "storage.data_restore_failed"

    # Authorization
    ROLE_CHANGED = "rbac.role_changed"
    ROLE_CHANGE_DENIED = "rbac.role_change_denied"
    ACCESS_GRANTED = "rbac.access_granted"
    ACCESS_REVOKED = "rbac.access_revoked"


@dataclass
class Event:
    """An identity event. `user_id` is the subject or actor, when known."""

    event_type: IdentityEventType
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "identity"
    user_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.event_type, IdentityEventType):
            raise TypeError(f"event_type must be IdentityEventType, got {type(self.event_type)}")
        if not isinstance(self.payload, dict):
            raise TypeError(f"payload must be dict, got {type(self.payload)}")


class EventBus:
    """
    Queue-backed bus. Construct one per application and pass it to the
    services that publish; nothing here is global.

    Handlers may be plain functions or coroutines.
    """

    def __init__(self):
        self._handlers: dict[IdentityEventType, list[Handler]] = {}
        self._wildcard_handlers: list[Handler] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._seen: OrderedDict[str, None] = OrderedDict()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self):
        if self.running:
            return
        self._worker = asyncio.create_task(self._run())
        logger.info("Event bus started")

    async def stop(self):
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Event bus stopped")

    # ---- Subscriptions ----

    def subscribe(self, event_type: IdentityEventType, handler: Handler):
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Handler subscribed to {event_type.value}")

    def subscribe_all(self, handler: Handler):
        """Receive every event (auditing, tests)."""
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: IdentityEventType, handler: Handler):
        handlers = self._handlers.get(event_type)
        if handlers:
            self._handlers[event_type] = [h for h in handlers if h != handler]

    # ---- Publishing ----

    async def publish(self, event: Event):
        if not isinstance(event, Event):
            raise TypeError(f"Can only publish Event instances, got {type(event)}")
        await self._queue.put(event)
        logger.debug(f"Queued {event.event_type.value} ({event.event_id})")

    async def emit(self, event_type: IdentityEventType, user_id: Optional[str] = None, **payload: Any):
        """Shorthand for publish(Event(...))."""
        await self.publish(Event(event_type=event_type, payload=payload, user_id=user_id))

    async def drain(self):
        """Block until every queued event has been delivered. Requires start()."""
        await self._queue.join()

    # ---- Delivery ----

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as e:
                logger.error(f"Error delivering {event.event_type.value}: {e}")
            finally:
                self._queue.task_done()

    def _first_sighting(self, event_id: str) -> bool:
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        if len(self._seen) > SEEN_CACHE_SIZE:
            self._seen.popitem(last=False)
        return True

    async def _deliver(self, event: Event):
        if not self._first_sighting(event.event_id):
            logger.debug(f"Dropping duplicate event {event.event_id}")
            return

        for handler in self._handlers.get(event.event_type, []) + self._wildcard_handlers:
            await self._call(handler, event)

    async def _call(self, handler: Handler, event: Event):
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
                return
            except Exception as e:
                logger.error(
                    f"Handler for {event.event_type.value} failed "
                    f"(attempt {attempt}/{MAX_ATTEMPTS}): {e}"
                )
