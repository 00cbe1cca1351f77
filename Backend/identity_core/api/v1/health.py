"""
Health check and system status endpoints.
"""

import structlog
from fastapi import APIRouter
from sqlalchemy import text

from identity_core.core.config import settings
from identity_core.core.database import engine
from identity_core.core.dependencies import get_redis_pool
from identity_core.schemas.auth import HealthResponse

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/healthz", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns the service status without checking dependencies.
    """
    return HealthResponse(
        status="healthy",
        version=settings.app.app_version,
    )


@router.get("/health", response_model=HealthResponse)
async def health_detailed():
    """
    Detailed health check with dependency status.

    Redis is reported as "disabled" when correlation state is kept in
    process memory.
    """
    db_status = "unhealthy"
    redis_status = "disabled"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        logger.error("Database health check failed", error=str(e))

    if settings.redis.enabled:
        redis_status = "unhealthy"
        try:
            redis = await get_redis_pool()
            await redis.ping()
            redis_status = "healthy"
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))

    healthy = db_status == "healthy" and redis_status in ("healthy", "disabled")

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=settings.app.app_version,
        database=db_status,
        redis=redis_status,
    )


@router.get("/")
async def root():
    """
    Root endpoint with API information.
    """
    return {
        "name": settings.app.app_name,
        "version": settings.app.app_version,
        "environment": settings.app.app_env,
        "docs_url": "/docs" if settings.docs_enabled else None,
        "api_v1": "/api/v1",
    }
