"""
Main application module for the Family Screen Time API.

This module sets up the FastAPI application with lifespan management of the
storage backend and notification bus, middleware and routing, with
comprehensive logging.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from family_screen_time.config import settings
from family_screen_time.database import db_manager
from family_screen_time.managers.logging_manager import get_logger
from family_screen_time.managers.notification_bus import (
    InMemoryEventLog,
    InMemoryLivePublisher,
    MongoEventLog,
    NotificationBus,
    RedisLivePublisher,
)
from family_screen_time.managers.redis_manager import redis_manager
from family_screen_time.managers.screen_time_repository import (
    InMemoryScreenTimeRepository,
    MongoScreenTimeRepository,
)
from family_screen_time.managers.session_lifecycle import SessionLifecycleController
from family_screen_time.managers.session_store import SessionStore
from family_screen_time.routes import screen_time_router, websocket_router
from family_screen_time.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


def build_components(app: FastAPI, backend: str) -> None:
    """Wire the repository, event log, live publisher, store and controller onto ``app.state``."""
    if backend == "memory":
        repository = InMemoryScreenTimeRepository()
        bus = NotificationBus(InMemoryEventLog(), InMemoryLivePublisher())
    else:
        repository = MongoScreenTimeRepository(db_manager)
        bus = NotificationBus(MongoEventLog(db_manager), RedisLivePublisher(redis_manager))
    store = SessionStore(repository, bus)
    app.state.backend = backend
    app.state.repository = repository
    app.state.bus = bus
    app.state.store = store
    app.state.controller = SessionLifecycleController(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager with comprehensive logging.

    Connects the storage backend on startup. On shutdown, waits for pending
    event publications and closes the connections.
    """
    startup_start_time = time.time()
    backend = getattr(app.state, "backend", None) or settings.STORE_BACKEND

    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
            "store_backend": backend,
        },
    )
    if not settings.passcode_configured:
        logger.warning("GUARDIAN_PASSCODE is not set; children cannot edit or delete sessions")

    if backend == "mongo":
        try:
            await db_manager.initialize()
            log_application_lifecycle(
                "database_connected",
                {
                    "database_name": settings.MONGODB_DATABASE,
                    "connection_url": (
                        settings.MONGODB_URL.split("@")[-1] if "@" in settings.MONGODB_URL else settings.MONGODB_URL
                    ),
                },
            )
        except Exception as e:
            log_application_lifecycle(
                "startup_failed",
                {
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "startup_duration": f"{time.time() - startup_start_time:.3f}s",
                },
            )
            log_error_with_context(e, {"operation": "application_startup", "phase": "database_connection"})
            raise HTTPException(status_code=503, detail="Service not ready: Database connection failed") from e

    if not hasattr(app.state, "store"):
        build_components(app, backend)

    log_application_lifecycle("startup_completed", {"startup_duration": f"{time.time() - startup_start_time:.3f}s"})

    yield

    shutdown_start_time = time.time()
    log_application_lifecycle("shutdown_initiated")
    try:
        await app.state.bus.drain()
        if backend == "mongo":
            await redis_manager.close()
            await db_manager.close()
    except Exception as e:
        log_error_with_context(e, {"operation": "application_shutdown"})
    log_application_lifecycle("shutdown_completed", {"shutdown_duration": f"{time.time() - shutdown_start_time:.3f}s"})


app = FastAPI(
    title="Family Screen Time API",
    description="Screen-time accounting, session lifecycle and live change events for families.",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Screen Time", "description": "Families, sessions, usage and settings"},
        {"name": "System", "description": "System health and monitoring endpoints"},
    ],
)

# Add comprehensive request logging middleware
logger.info("Adding request logging middleware...")
app.add_middleware(RequestLoggingMiddleware)
if settings.CORS_ENABLED:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
log_application_lifecycle(
    "middleware_configured",
    {"middleware": ["RequestLoggingMiddleware"] + (["CORSMiddleware"] if settings.CORS_ENABLED else [])},
)

# Include routers with comprehensive logging
routers_config = [
    ("screen_time", screen_time_router, "Families, sessions, usage and settings endpoints"),
    ("websockets", websocket_router, "Live family event stream"),
]

logger.info("Including API routers...")
for router_name, router, description in routers_config:
    app.include_router(router)
    logger.info("Successfully included %s router: %s", router_name, description)

log_application_lifecycle("routers_configured", {"routers": [name for name, _, _ in routers_config]})


@app.get("/health", tags=["System"])
async def health_check(request: Request):
    """
    Health check of the storage backend and the notification channel.

    Returns 200 when every component answers, 503 otherwise.
    """
    backend = getattr(request.app.state, "backend", settings.STORE_BACKEND)
    if backend == "memory":
        return {"status": "healthy", "backend": "memory", "api": "running"}

    database_ok = await db_manager.health_check()
    redis_ok = await redis_manager.health_check()
    body = {
        "status": "healthy" if database_ok and redis_ok else "unhealthy",
        "backend": backend,
        "database": "connected" if database_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "api": "running",
    }
    if not (database_ok and redis_ok):
        logger.warning("Health check failed: %s", body)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


# Configure Prometheus metrics
logger.info("Setting up Prometheus metrics instrumentation...")
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_instrument_requests_inprogress=True,
).instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")
log_application_lifecycle("prometheus_configured", {"metrics_endpoint": "/metrics"})


def run() -> None:
    uvicorn.run(
        "family_screen_time.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    run()
