"""FastAPI application factory.

Creates the app with logging and metrics middleware, Sentry, lifespan events
that initialize the database and build the sync engine, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.syncbridge.config import get_settings
from src.syncbridge.core.database import close_db, init_db
from src.syncbridge.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.syncbridge.core.redis import close_redis
from src.syncbridge.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.syncbridge.api.v1.router import router as v1_router
from src.syncbridge.sync.scheduler import ReconcileScheduler
from src.syncbridge.sync.service import create_sync_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the sync engine on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    if settings.DATABASE_URL:
        await init_db()
        log.info("startup.database_initialized")
    else:
        log.warning("startup.in_memory_stores", hint="set DATABASE_URL to persist tasks and mappings")

    app.state.sync_service = create_sync_service(settings)
    log.info("startup.sync_engine_initialized", environment=settings.ENVIRONMENT.value)

    app.state.reconcile_scheduler = ReconcileScheduler(
        app.state.sync_service,
        settings.INVENTORY_RECONCILE_INTERVAL_MINUTES,
        settings.INVENTORY_DEFAULT_LOCATION_ID or None,
    )
    app.state.reconcile_scheduler.start()

    yield

    app.state.reconcile_scheduler.stop()
    # Running tasks end INTERRUPTED and stay recoverable
    await app.state.sync_service.shutdown()
    app.state.sync_service = None
    if settings.DATABASE_URL:
        await close_db()
    if settings.REDIS_URL:
        await close_redis()
    log.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="SyncBridge API",
        version="0.1.0",
        description="Order and inventory synchronization between two commerce platforms",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, sync, webhooks, inventory)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
