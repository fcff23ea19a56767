"""Tests for tracking records, event details and the compressed wire form."""

from datetime import UTC, datetime
from types import SimpleNamespace
from uuid import uuid4

import orjson

from src.tracking.models import (
    ActivityDetails,
    AlertSeverity,
    AlertStatus,
    EventType,
    FocusDetails,
    OpaqueDetails,
    SecurityAlert,
    SeekDetails,
    VideoProgress,
    ViewingEvent,
    VisibilityDetails,
    details_to_dict,
    ensure_utc_aware,
    expand_event,
    is_compressed_event,
    parse_event_details,
)
from tests.factories import event_row, make_event


class TestEventDetails:
    """Tests for the tagged additional_data variants."""

    def test_seek_details_from_legacy_keys(self) -> None:
        """Seek payloads without a kind are recognized by their keys."""
        details = parse_event_details({"previous_time": 10, "seek_delta": 35})
        assert details == SeekDetails(previous_time=10.0, seek_distance=35.0)

    def test_visibility_details_from_legacy_keys(self) -> None:
        details = parse_event_details(
            {"visibility_changed": True, "was_visible": True, "now_visible": False}
        )
        assert isinstance(details, VisibilityDetails)
        assert details.now_visible is False

    def test_focus_details(self) -> None:
        details = parse_event_details({"window_focus_changed": True, "focused": False})
        assert details == FocusDetails(focused=False)

    def test_activity_details_tab_switch(self) -> None:
        details = parse_event_details(
            {"potential_tab_switch": True, "inactive_duration": 4200, "was_playing": True}
        )
        assert isinstance(details, ActivityDetails)
        assert details.signal == "potential_tab_switch"
        assert details.inactive_duration_ms == 4200.0

    def test_unknown_payload_kept_opaque(self) -> None:
        """Unrecognized payloads survive untouched."""
        details = parse_event_details({"quality": "720p"})
        assert details == OpaqueDetails(payload={"quality": "720p"})
        assert details_to_dict(details) == {"quality": "720p"}

    def test_empty_payload_has_no_details(self) -> None:
        assert parse_event_details(None) is None
        assert parse_event_details({}) is None

    def test_tagged_round_trip(self) -> None:
        """Serialized variants carry their kind and parse back identically."""
        for details in (
            SeekDetails(previous_time=5.0, seek_distance=-3.0),
            VisibilityDetails(was_visible=True, now_visible=False, visibility_state="hidden"),
            FocusDetails(focused=True),
            ActivityDetails(signal="user_activity", movement_x=80.0, movement_y=2.0),
        ):
            data = details_to_dict(details)
            assert data["kind"] == details.kind
            assert parse_event_details(data) == details


class TestViewingEvent:
    """Tests for the ViewingEvent record."""

    def test_naive_timestamps_are_utc(self) -> None:
        event = ViewingEvent("play", 0, client_timestamp=datetime(2025, 1, 1, 10, 0))
        assert event.client_timestamp.tzinfo is not None
        assert event.client_timestamp == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

    def test_seek_distance_only_from_seek_details(self) -> None:
        seek = make_event(EventType.SEEK, 50, details=SeekDetails(0.0, 50.0))
        heartbeat = make_event(EventType.HEARTBEAT, 50, details=FocusDetails(True))
        assert seek.seek_distance == 50.0
        assert heartbeat.seek_distance is None

    def test_from_row_parses_additional_data(self) -> None:
        """Rows are converted to typed records at the persistence boundary."""
        original = make_event(
            EventType.SEEK, 42, details=SeekDetails(previous_time=2.0, seek_distance=40.0)
        )
        session_id = uuid4()
        event = ViewingEvent.from_row(event_row(original, session_id))

        assert event.session_id == session_id
        assert event.event_type == EventType.SEEK
        assert event.details == original.details

    def test_from_row_without_additional_data(self) -> None:
        event = ViewingEvent.from_row(event_row(make_event("pause", 3), uuid4()))
        assert event.details is None
        assert event.additional_data == {}


class TestRecords:
    """Tests for progress and alert records."""

    def test_progress_from_row_defaults_nulls(self) -> None:
        row = SimpleNamespace(
            user_id=uuid4(),
            video_lesson_id=uuid4(),
            total_watched_seconds=None,
            completion_percentage=None,
            is_completed=None,
            first_watch_started=None,
            last_watch_updated=datetime(2025, 1, 1),
            suspicious_activity_count=None,
            grade_contribution=None,
        )
        progress = VideoProgress.from_row(row)
        assert progress.total_watched_seconds == 0.0
        assert progress.is_completed is False
        assert progress.suspicious_activity_count == 0
        assert progress.last_watch_updated.tzinfo is not None

    def test_alert_from_row_decodes_evidence(self) -> None:
        row = SimpleNamespace(
            id=uuid4(),
            user_id=uuid4(),
            video_lesson_id=None,
            alert_type="rapid_seeking",
            severity="medium",
            description="Suspicious activity: seek",
            evidence=orjson.dumps({"risk_score": 55}).decode(),
            status=None,
            created_at=datetime.now(UTC),
            reviewed_at=None,
            reviewed_by=None,
            notes=None,
        )
        alert = SecurityAlert.from_row(row)
        assert alert.evidence == {"risk_score": 55}
        assert alert.severity == AlertSeverity.MEDIUM
        assert alert.status == AlertStatus.ACTIVE
        assert alert.is_active

    def test_ensure_utc_aware_none(self) -> None:
        assert ensure_utc_aware(None) is None


class TestCompressedWireFormat:
    """Tests for short-keyed event payloads."""

    def test_is_compressed_event(self) -> None:
        assert is_compressed_event({"t": "play", "ts": 0})
        assert not is_compressed_event({"event_type": "play", "t": "x"})

    def test_expand_event_restores_defaults(self) -> None:
        expanded = expand_event({"t": "pause", "ts": 12.5, "ct": "2025-01-01T00:00:00Z"})
        assert expanded == {
            "event_type": "pause",
            "timestamp_in_video": 12.5,
            "client_timestamp": "2025-01-01T00:00:00Z",
            "is_tab_visible": True,
            "playback_rate": 1.0,
            "volume_level": 1.0,
            "additional_data": {},
        }

    def test_expand_event_keeps_reported_values(self) -> None:
        expanded = expand_event({"t": "heartbeat", "ts": 1, "ct": "x", "v": False, "r": 2})
        assert expanded["is_tab_visible"] is False
        assert expanded["playback_rate"] == 2
