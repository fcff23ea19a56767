"""Health check endpoints."""

from fastapi import APIRouter, Request

from src.config import get_settings
from src.core.database import AsyncCassandraConnection
from src.core.redis import get_redis


router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict[str, str]:
    """Liveness probe - checks if the application is running."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness(request: Request) -> dict[str, str | bool]:
    """Readiness probe - event ingestion needs Cassandra; Redis is optional."""
    settings = get_settings()
    tracking_ready = getattr(request.app.state, "tracking_service", None) is not None
    return {
        "status": "ready" if tracking_ready else "degraded",
        "environment": settings.environment,
        "tracking": tracking_ready,
        "cassandra": AsyncCassandraConnection.is_connected(),
        "alert_notifications": get_redis() is not None,
    }


@router.get("")
async def health() -> dict[str, str]:
    """General health check endpoint."""
    settings = get_settings()
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }
