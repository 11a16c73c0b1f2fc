"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _missing_configuration():
    required = {
        "REPLICATE_API_TOKEN": settings.REPLICATE_API_TOKEN,
        "STRIPE_SECRET_KEY": settings.STRIPE_SECRET_KEY,
        "STRIPE_WEBHOOK_SECRET": settings.STRIPE_WEBHOOK_SECRET,
        "STORAGE_PUBLIC_BASE_URL": settings.STORAGE_PUBLIC_BASE_URL,
    }
    return [name for name, value in required.items() if not value]


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database and Redis reachability plus provider configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "replicate": "configured" if settings.REPLICATE_API_TOKEN else "missing",
        "stripe": "configured" if settings.STRIPE_SECRET_KEY else "missing",
        "email": "configured" if settings.SENDGRID_API_KEY else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting, so an outage degrades but does not fail.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = _missing_configuration()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
