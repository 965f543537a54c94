"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from fleetwizard.config import settings
from fleetwizard.database import engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight health check (no DB/Redis check)."""
    return {
        "status": "ok",
        "service": "FleetWizard",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check covering the stores the configured draft backend
    and commit path depend on.

    Returns 200 only if all of them are reachable, 503 otherwise.
    """
    checks = {"service": "ok"}
    overall_healthy = True

    if settings.draft_backend == "database" or not settings.commit_endpoint_url:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {str(e)[:100]}"
            overall_healthy = False

    if settings.draft_backend == "redis":
        try:
            from fleetwizard.utils.redis_client import get_redis

            redis_client = await get_redis()
            await redis_client.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {str(e)[:100]}"
            overall_healthy = False

    return_status = status.HTTP_200_OK if overall_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(
        status_code=return_status,
        content={
            "status": "healthy" if overall_healthy else "unhealthy",
            "service": "FleetWizard",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
