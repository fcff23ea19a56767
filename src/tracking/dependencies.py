"""FastAPI dependencies for video viewing integrity.

Provides dependency injection for:
- Tracking, security and alert services
- The shared video cache
- Error handlers
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from .alerts import AlertService
from .cache import VideoCache
from .exceptions import TrackingError
from .security import SecurityService
from .service import TrackingService


def _from_state(request: Request, name: str, label: str):
    value = getattr(request.app.state, name, None)
    if not value:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not available",
        )
    return value


async def get_tracking_service(request: Request) -> TrackingService:
    """Get tracking service from app state.

    Args:
        request: FastAPI request

    Returns:
        TrackingService instance
    """
    return _from_state(request, "tracking_service", "Tracking service")


async def get_security_service(request: Request) -> SecurityService:
    """Get security service from app state."""
    return _from_state(request, "security_service", "Security service")


async def get_alert_service(request: Request) -> AlertService:
    """Get alert service from app state."""
    return _from_state(request, "alert_service", "Alert service")


async def get_video_cache(request: Request) -> VideoCache:
    """Get the process-wide video cache from app state."""
    cache = getattr(request.app.state, "video_cache", None)
    if cache is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Video cache not available",
        )
    return cache


# Type aliases for dependency injection
TrackingServiceDep = Annotated[TrackingService, Depends(get_tracking_service)]
SecurityServiceDep = Annotated[SecurityService, Depends(get_security_service)]
AlertServiceDep = Annotated[AlertService, Depends(get_alert_service)]
VideoCacheDep = Annotated[VideoCache, Depends(get_video_cache)]


def handle_tracking_error(error: TrackingError) -> HTTPException:
    """Convert tracking errors to HTTP exceptions.

    Args:
        error: Tracking error

    Returns:
        HTTPException with appropriate status code
    """
    status_map = {
        "session_not_found": status.HTTP_404_NOT_FOUND,
        "session_forbidden": status.HTTP_403_FORBIDDEN,
        "session_inactive": status.HTTP_400_BAD_REQUEST,
        "video_lesson_not_found": status.HTTP_404_NOT_FOUND,
        "invalid_event_batch": status.HTTP_400_BAD_REQUEST,
        "alert_not_found": status.HTTP_404_NOT_FOUND,
    }

    status_code = status_map.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return HTTPException(
        status_code=status_code,
        detail=error.message,
    )
