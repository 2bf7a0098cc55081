"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness check verifies the sync state store and the Redis instance
holding run locks and webhook dedup markers.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.retail_sync.config import get_settings
from src.retail_sync.core.database import get_engine
from src.retail_sync.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity plus the queue and scheduler state."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    queue = getattr(request.app.state, "sync_queue", None)
    checks["queue_depth"] = queue.depth if queue is not None else None
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    checks["scheduler"] = "running" if scheduler is not None and scheduler.running else "stopped"
    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when database and Redis respond, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("redis") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
