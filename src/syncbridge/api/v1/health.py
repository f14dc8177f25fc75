"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
only probes the backends that are configured; the in-memory stores have
nothing to check.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.syncbridge.config import get_settings
from src.syncbridge.core.database import get_engine
from src.syncbridge.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, Redis, and engine initialization. Returns check results dict."""
    settings = get_settings()
    checks: dict = {"database": "not_configured", "redis": "not_configured", "sync_engine": "ok"}

    if settings.DATABASE_URL:
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)

    if settings.REDIS_URL:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            if pong:
                checks["redis"] = "ok"
            else:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    if getattr(request.app.state, "sync_service", None) is None:
        checks["sync_engine"] = "error"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: returns 200 if every configured dependency passes, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = (
        checks.get("database") in ("ok", "not_configured")
        and checks.get("redis") in ("ok", "not_configured")
        and checks.get("sync_engine") == "ok"
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
