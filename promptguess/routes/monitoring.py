"""Dependency health with latency."""

import time

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from promptguess.database import get_db
from promptguess.logging_config import get_logger
from promptguess.redis import ping_redis
from promptguess.schemas import HealthCheckResponse, SystemStatusResponse
from promptguess.services.expiry import utcnow

logger = get_logger(__name__)
router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


@router.get("/health", response_model=SystemStatusResponse)
async def health_status(db: AsyncSession = Depends(get_db)):
    """Database and Redis health. Redis only backs rate limiting, so its loss is ``degraded``."""
    checks: dict[str, HealthCheckResponse] = {}

    start = time.monotonic()
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = HealthCheckResponse(status="healthy", latency_ms=_elapsed_ms(start))
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        checks["database"] = HealthCheckResponse(status="unhealthy", latency_ms=_elapsed_ms(start))

    try:
        checks["redis"] = HealthCheckResponse(status="healthy", latency_ms=await ping_redis())
    except Exception as e:
        logger.warning("health_check_redis_failed", error=str(e))
        checks["redis"] = HealthCheckResponse(status="unhealthy")

    if checks["database"].status == "unhealthy":
        overall = "unhealthy"
    elif checks["redis"].status == "unhealthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return SystemStatusResponse(status=overall, checks=checks, timestamp=utcnow())
