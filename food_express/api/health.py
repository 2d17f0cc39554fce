"""
Food Express Order Service - Health endpoint
"""
import asyncio

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from food_express.core.config import get_settings
from food_express.core.redis_client import get_redis
from food_express.db.database import AsyncSessionLocal

settings = get_settings()
router = APIRouter(tags=["health"])


async def _ping_database() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


@router.get("/health")
async def health_check():
    deps: dict[str, str] = {}
    healthy = True

    # Check PostgreSQL
    try:
        await asyncio.wait_for(_ping_database(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["postgres"] = "ok"
    except Exception as e:
        deps["postgres"] = f"error: {str(e)[:100]}"
        healthy = False

    # Check Redis
    try:
        redis = get_redis()
        await asyncio.wait_for(redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["redis"] = "ok"
    except Exception as e:
        deps["redis"] = f"error: {str(e)[:100]}"
        healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
