"""
HealthTrack Backend - FastAPI Application

Main entry point for the identity and authorization API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.schemas.storage import HealthTrackStorage

from .core.config import settings
from .core.event_bus import Event, EventBus, IdentityEventType
from .storage.memory_store import MemoryHealthTrackStorage
from .storage.redis_store import RedisHealthTrackStorage
from .services.auth_service import AuthService
from .services.data_restore import create_data_restore_service
from .services.identity_provider import IdentityProvider, MemoryIdentityProvider
from .services.rbac_service import RBACService
from .services.role_store import RoleStore
from .services.session_manager import SessionContext, SessionManager
from .api.routes import router, set_services

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_storage() -> HealthTrackStorage:
    if settings.uses_redis:
        logger.info("Using Redis storage")
        return RedisHealthTrackStorage()
    logger.info("Using in-memory storage")
    return MemoryHealthTrackStorage()


def create_identity_provider() -> IdentityProvider:
    if settings.identity_provider == "firebase":
        from .services.firebase_provider import FirebaseIdentityProvider
        logger.info("Using Firebase identity provider")
        return FirebaseIdentityProvider()
    logger.info("Using in-memory identity provider")
    return MemoryIdentityProvider()


def log_persistence_failure(event: Event):
    """Provider and local stores have drifted apart."""
    logger.error(
        f"Local persistence failed ({event.payload.get('operation')}) "
        f"for {event.user_id}: {event.payload.get('error')}"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting HealthTrack backend...")

    storage = create_storage()
    await storage.connect()

    event_bus = EventBus()
    event_bus.subscribe(IdentityEventType.LOCAL_PERSISTENCE_FAILED, log_persistence_failure)
    await event_bus.start()

    provider = create_identity_provider()
    restore = create_data_restore_service()
    session_context = SessionContext(storage.kv)

    auth_service = AuthService(
        provider=provider,
        users=storage.users,
        session=session_context,
        restore=restore,
        event_bus=event_bus,
    )
    rbac_service = RBACService(RoleStore(storage.kv), event_bus=event_bus)
    session_manager = SessionManager(session_context, storage.users, provider, storage.kv)

    set_services(storage, auth_service, rbac_service, session_manager)
    app.state.event_bus = event_bus

    logger.info("HealthTrack backend started")

    yield

    # Shutdown
    logger.info("Shutting down HealthTrack backend...")
    await event_bus.stop()
    for client in (provider, restore):
        close = getattr(client, "close", None)
        if close is not None:
            await close()
    await storage.close()
    logger.info("HealthTrack backend stopped")


# Create FastAPI app
app = FastAPI(
    title="HealthTrack API",
    description="Identity and authorization core for personal health data",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include REST routes
app.include_router(router, prefix="/api")


# ============================================================================
# Root endpoint
# ============================================================================

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "HealthTrack API",
        "version": "1.0.0",
        "status": "running"
    }


# ============================================================================
# Run directly
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "healthtrack.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
