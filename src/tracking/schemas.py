"""Pydantic schemas for video viewing integrity.

Request and response models for:
- Viewing session start/end
- Event batch ingestion (verbose and compressed event forms)
- Progress queries
- Security alert review and risk profiles
- Maintenance and cache statistics
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    EventType,
    SecurityAlert,
    VideoLesson,
    VideoProgress,
    ViewingEvent,
    expand_event,
    is_compressed_event,
    parse_event_details,
)
from .security import MaintenanceReport, RiskLevel, RiskProfile


# ==============================================================================
# Session Schemas
# ==============================================================================


class SessionCreateRequest(BaseModel):
    """Request to start a viewing session."""

    video_lesson_id: UUID = Field(..., description="Video lesson UUID")
    browser_tab_id: str | None = Field(
        None, max_length=128, description="Client tab identifier"
    )


class VideoDataResponse(BaseModel):
    """Video lesson metadata returned with a new session."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lesson_id: UUID | None = None
    title: str
    video_provider_id: str | None = None
    duration_seconds: float
    required_completion_percentage: float

    @classmethod
    def from_entity(cls, entity: VideoLesson) -> "VideoDataResponse":
        """Create response from entity."""
        return cls(
            id=entity.id,
            lesson_id=entity.lesson_id,
            title=entity.title,
            video_provider_id=entity.video_provider_id,
            duration_seconds=entity.duration_seconds,
            required_completion_percentage=entity.required_completion_percentage,
        )


class SessionCreateResponse(BaseModel):
    """Created session handle."""

    session_token: str
    video_data: VideoDataResponse


class SuccessResponse(BaseModel):
    """Generic success acknowledgement."""

    success: bool = True


# ==============================================================================
# Event Schemas
# ==============================================================================


class ViewingEventIn(BaseModel):
    """One playback event as sent by the player (verbose form).

    ``client_timestamp`` accepts ISO strings or epoch numbers; large
    numbers are read as milliseconds.
    """

    event_type: EventType
    timestamp_in_video: float = Field(..., description="Video position in seconds")
    client_timestamp: datetime
    is_tab_visible: bool | None = None
    playback_rate: float | None = None
    volume_level: float | None = None
    additional_data: dict[str, Any] | None = None

    def to_entity(self) -> ViewingEvent:
        """Create the domain event (session and server time set on ingestion)."""
        return ViewingEvent(
            event_type=self.event_type,
            timestamp_in_video=self.timestamp_in_video,
            client_timestamp=self.client_timestamp,
            is_tab_visible=self.is_tab_visible,
            playback_rate=self.playback_rate,
            volume_level=self.volume_level,
            details=parse_event_details(self.additional_data),
        )


class CompressionInfo(BaseModel):
    """Sizes reported by the client optimizer."""

    original_size: int = Field(0, ge=0)
    compressed_size: int = Field(0, ge=0)
    ratio: float = Field(
        1.0, ge=0, validation_alias=AliasChoices("ratio", "compression_ratio")
    )


class EventBatchRequest(BaseModel):
    """Batch of events for one session.

    Events in the short-keyed form are expanded before validation. The
    batch size bound is enforced by the endpoint so it maps to 400.
    """

    session_token: str = Field(..., min_length=1)
    events: list[ViewingEventIn]
    compression_info: CompressionInfo | None = None

    @model_validator(mode="before")
    @classmethod
    def expand_compressed_events(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        events = data.get("events")
        if not isinstance(events, list):
            return data

        info = data.get("compression_info")
        ratio = (
            info.get("ratio", info.get("compression_ratio"))
            if isinstance(info, dict)
            else None
        )
        compressed = (
            isinstance(ratio, int | float) and not isinstance(ratio, bool) and ratio < 1
        )

        def needs_expansion(event: Any) -> bool:
            if not isinstance(event, dict) or "event_type" in event:
                return False
            return compressed or is_compressed_event(event)

        return {
            **data,
            "events": [
                expand_event(event) if needs_expansion(event) else event
                for event in events
            ],
        }

    def to_entities(self) -> list[ViewingEvent]:
        return [event.to_entity() for event in self.events]


class ProgressResponse(BaseModel):
    """Recomputed progress for one (user, video lesson)."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    video_lesson_id: UUID
    total_watched_seconds: float
    completion_percentage: float
    is_completed: bool
    first_watch_started: datetime | None = None
    last_watch_updated: datetime
    suspicious_activity_count: int
    grade_contribution: float

    @classmethod
    def from_entity(cls, entity: VideoProgress) -> "ProgressResponse":
        """Create response from entity."""
        return cls(**entity.to_dict())


class EventBatchResponse(BaseModel):
    """Result of one batch ingestion."""

    success: bool = True
    events_processed: int
    progress: ProgressResponse


class ProgressListResponse(BaseModel):
    """Progress rows of a user, newest update first."""

    items: list[ProgressResponse]
    total: int


# ==============================================================================
# Security Schemas
# ==============================================================================


class SecurityAlertResponse(BaseModel):
    """Security alert for administrators."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    video_lesson_id: UUID | None = None
    alert_type: AlertType
    severity: AlertSeverity
    description: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus
    created_at: datetime
    reviewed_at: datetime | None = None
    reviewed_by: UUID | None = None
    notes: str | None = None

    @classmethod
    def from_entity(cls, entity: SecurityAlert) -> "SecurityAlertResponse":
        """Create response from entity."""
        return cls(**entity.to_dict())


class SecurityAlertListResponse(BaseModel):
    items: list[SecurityAlertResponse]
    total: int


class AlertStatusUpdateRequest(BaseModel):
    """Administrator review of an alert."""

    status: AlertStatus
    notes: str | None = Field(None, max_length=2000)


class RiskProfileResponse(BaseModel):
    """Fraud risk profile of a user."""

    user_id: UUID
    risk_level: RiskLevel
    reliability_score: float
    flag_count: int
    recommendations: list[str]

    @classmethod
    def from_profile(cls, user_id: UUID, profile: RiskProfile) -> "RiskProfileResponse":
        return cls(
            user_id=user_id,
            risk_level=profile.risk_level,
            reliability_score=profile.reliability_score,
            flag_count=profile.flag_count,
            recommendations=profile.recommendations,
        )


class MaintenanceResponse(BaseModel):
    """Scheduled maintenance summary."""

    sessions_cleaned: int
    alerts_resolved: int
    reliability_updated: int
    log: list[str]

    @classmethod
    def from_report(cls, report: MaintenanceReport) -> "MaintenanceResponse":
        return cls(
            sessions_cleaned=report.sessions_cleaned,
            alerts_resolved=report.alerts_resolved,
            reliability_updated=report.reliability_updated,
            log=report.log,
        )


class CacheStatsResponse(BaseModel):
    """In-process cache statistics."""

    hits: int
    misses: int
    entries: int
    memory_usage_mb: float
    hit_rate: float
