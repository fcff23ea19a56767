"""Builders for events and Cassandra rows used across tests."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from uuid import UUID, uuid4

import orjson

from src.auth.permissions import UserRole
from src.auth.security import create_access_token
from src.tracking.models import EventDetails, EventType, ViewingEvent


BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FakeResult(list):
    """Cassandra result set stand-in: iterable with ``one()``."""

    def one(self):
        return self[0] if self else None


def make_event(
    event_type: EventType | str,
    video_time: float,
    offset_ms: float = 0,
    is_tab_visible: bool | None = True,
    playback_rate: float | None = 1.0,
    volume_level: float | None = 1.0,
    details: EventDetails | None = None,
    base: datetime = BASE_TIME,
) -> ViewingEvent:
    """Event at ``base + offset_ms`` positioned at ``video_time`` seconds."""
    return ViewingEvent(
        event_type=event_type,
        timestamp_in_video=video_time,
        client_timestamp=base + timedelta(milliseconds=offset_ms),
        is_tab_visible=is_tab_visible,
        playback_rate=playback_rate,
        volume_level=volume_level,
        details=details,
    )


def session_row(
    user_id: UUID,
    video_lesson_id: UUID,
    is_active: bool = True,
    started_at: datetime | None = None,
    last_heartbeat: datetime | None = None,
    session_token: str | None = None,
    id: UUID | None = None,
) -> SimpleNamespace:
    started_at = started_at or datetime.now(UTC)
    return SimpleNamespace(
        id=id or uuid4(),
        user_id=user_id,
        video_lesson_id=video_lesson_id,
        session_token=session_token or f"token-{uuid4().hex}",
        started_at=started_at,
        last_heartbeat=last_heartbeat or started_at,
        is_active=is_active,
        browser_tab_id="tab_1",
        user_agent="pytest",
        ip_address="127.0.0.1",
    )


def lesson_row(
    video_lesson_id: UUID,
    duration_seconds: float = 60.0,
    required_completion_percentage: float = 80.0,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=video_lesson_id,
        lesson_id=uuid4(),
        title="Pharmacology 101",
        video_provider_id="provider-1",
        duration_seconds=duration_seconds,
        required_completion_percentage=required_completion_percentage,
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )


def event_row(event: ViewingEvent, session_id: UUID) -> SimpleNamespace:
    return SimpleNamespace(
        id=event.id,
        session_id=session_id,
        event_type=event.event_type.value,
        timestamp_in_video=event.timestamp_in_video,
        client_timestamp=event.client_timestamp,
        server_timestamp=event.client_timestamp,
        is_tab_visible=event.is_tab_visible,
        playback_rate=event.playback_rate,
        volume_level=event.volume_level,
        additional_data=orjson.dumps(event.additional_data).decode()
        if event.details is not None
        else None,
    )


def bearer(user_id: UUID, role: UserRole = UserRole.STUDENT) -> dict[str, str]:
    """Authorization header carrying a freshly minted access token."""
    token = create_access_token({"sub": str(user_id), "role": role.value})
    return {"Authorization": f"Bearer {token}"}
