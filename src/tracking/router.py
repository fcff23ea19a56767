"""Video viewing integrity API endpoints.

Provides routes for:
- Viewing session start/end
- Event batch ingestion with progress recomputation
- Progress queries
- Latency probe used by the player to size batches
- Administrator security review, maintenance and cache statistics
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status

from src.auth.dependencies import AdminUser, ClientInfo, CurrentUser
from src.auth.permissions import can_view_viewer_data

from .dependencies import (
    AlertServiceDep,
    SecurityServiceDep,
    TrackingServiceDep,
    VideoCacheDep,
    handle_tracking_error,
)
from .exceptions import InvalidEventBatchError, SessionForbiddenError, TrackingError
from .schemas import (
    AlertStatusUpdateRequest,
    CacheStatsResponse,
    EventBatchRequest,
    EventBatchResponse,
    MaintenanceResponse,
    ProgressListResponse,
    ProgressResponse,
    RiskProfileResponse,
    SecurityAlertListResponse,
    SecurityAlertResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    SuccessResponse,
    VideoDataResponse,
)


router = APIRouter(prefix="/v1/video", tags=["video-tracking"])


# ==============================================================================
# Session Endpoints
# ==============================================================================


@router.post(
    "/sessions",
    response_model=SessionCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start viewing session",
)
async def create_session(
    data: SessionCreateRequest,
    tracking_service: TrackingServiceDep,
    user: CurrentUser,
    client_info: ClientInfo,
) -> SessionCreateResponse:
    """Start a viewing session for the current user.

    Other active sessions of the user on the same video are flagged and
    terminated.
    """
    user_agent, ip_address = client_info
    try:
        viewing_session, lesson = await tracking_service.create_session(
            user_id=user.id,
            video_lesson_id=data.video_lesson_id,
            browser_tab_id=data.browser_tab_id,
            user_agent=user_agent,
            ip_address=ip_address,
        )
    except TrackingError as e:
        raise handle_tracking_error(e) from e

    return SessionCreateResponse(
        session_token=viewing_session.session_token,
        video_data=VideoDataResponse.from_entity(lesson),
    )


@router.post(
    "/sessions/{session_token}/end",
    response_model=SuccessResponse,
    summary="End viewing session",
)
async def end_session(
    session_token: str,
    tracking_service: TrackingServiceDep,
    user: CurrentUser,
) -> SuccessResponse:
    """Mark the session inactive. Only the owner may end it."""
    try:
        viewing_session = await tracking_service.get_session_by_token(session_token)
        if viewing_session.user_id != user.id:
            raise SessionForbiddenError
        await tracking_service.close_session(session_token)
    except TrackingError as e:
        raise handle_tracking_error(e) from e

    return SuccessResponse()


# ==============================================================================
# Event Ingestion
# ==============================================================================


@router.post(
    "/events/batch",
    response_model=EventBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit viewing events",
)
async def submit_events(
    data: EventBatchRequest,
    tracking_service: TrackingServiceDep,
    user: CurrentUser,
) -> EventBatchResponse:
    """Store a batch of playback events and return recomputed progress.

    Suspicious batches are stored and flagged, never rejected.
    """
    try:
        max_events = tracking_service.max_events_per_batch
        if not data.events or len(data.events) > max_events:
            msg = f"Batch must contain between 1 and {max_events} events"
            raise InvalidEventBatchError(msg)

        events = data.to_entities()
        progress = await tracking_service.process_viewing_events(
            data.session_token, events, user_id=user.id
        )
    except TrackingError as e:
        raise handle_tracking_error(e) from e

    return EventBatchResponse(
        events_processed=len(events),
        progress=ProgressResponse.from_entity(progress),
    )


# ==============================================================================
# Progress
# ==============================================================================


@router.get(
    "/progress",
    response_model=ProgressListResponse,
    summary="Get video progress",
)
async def get_progress(
    tracking_service: TrackingServiceDep,
    user: CurrentUser,
    video_lesson_id: UUID | None = Query(None, description="Filter by video lesson"),
    user_id: UUID | None = Query(None, description="Viewer (admin only when not self)"),
) -> ProgressListResponse:
    """Progress rows of a viewer, most recently updated first."""
    target_user_id = user_id or user.id
    if not can_view_viewer_data(user.role, user.id, target_user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )

    rows = await tracking_service.get_user_progress(target_user_id, video_lesson_id)
    return ProgressListResponse(
        items=[ProgressResponse.from_entity(p) for p in rows],
        total=len(rows),
    )


# ==============================================================================
# Latency Probe
# ==============================================================================


@router.api_route(
    "/ping",
    methods=["GET", "HEAD"],
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Latency probe",
    include_in_schema=False,
)
async def ping() -> Response:
    """Empty response used by players to estimate round-trip time."""
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==============================================================================
# Administration
# ==============================================================================


@router.get(
    "/security/alerts",
    response_model=SecurityAlertListResponse,
    summary="List security alerts (admin)",
)
async def list_security_alerts(
    alert_service: AlertServiceDep,
    admin: AdminUser,
    user_id: UUID = Query(..., description="Flagged user"),
    active_only: bool = Query(False, description="Only alerts awaiting review"),
) -> SecurityAlertListResponse:
    """Security alerts of a user, newest first."""
    alerts = await alert_service.get_user_alerts(user_id, active_only=active_only)
    return SecurityAlertListResponse(
        items=[SecurityAlertResponse.from_entity(a) for a in alerts],
        total=len(alerts),
    )


@router.patch(
    "/security/alerts/{user_id}/{alert_id}",
    response_model=SecurityAlertResponse,
    summary="Review security alert (admin)",
)
async def review_security_alert(
    user_id: UUID,
    alert_id: UUID,
    data: AlertStatusUpdateRequest,
    alert_service: AlertServiceDep,
    admin: AdminUser,
) -> SecurityAlertResponse:
    """Record an administrator decision on an alert."""
    try:
        alert = await alert_service.update_alert_status(
            user_id,
            alert_id,
            data.status,
            reviewed_by=admin.id,
            notes=data.notes,
        )
    except TrackingError as e:
        raise handle_tracking_error(e) from e
    return SecurityAlertResponse.from_entity(alert)


@router.get(
    "/security/users/{user_id}/risk-profile",
    response_model=RiskProfileResponse,
    summary="Get user fraud risk profile (admin)",
)
async def get_risk_profile(
    user_id: UUID,
    security_service: SecurityServiceDep,
    admin: AdminUser,
) -> RiskProfileResponse:
    """Reliability score, active flag count and risk level of a user."""
    profile = await security_service.get_user_fraud_risk_profile(user_id)
    return RiskProfileResponse.from_profile(user_id, profile)


@router.post(
    "/maintenance",
    response_model=MaintenanceResponse,
    summary="Run scheduled maintenance (admin)",
)
async def run_maintenance(
    security_service: SecurityServiceDep,
    admin: AdminUser,
) -> MaintenanceResponse:
    """Reap stale sessions, auto-resolve old alerts, refresh reliability scores."""
    report = await security_service.perform_scheduled_maintenance()
    return MaintenanceResponse.from_report(report)


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    summary="Get cache statistics (admin)",
)
async def get_cache_stats(
    cache: VideoCacheDep,
    admin: AdminUser,
) -> CacheStatsResponse:
    return CacheStatsResponse(**cache.get_stats())
