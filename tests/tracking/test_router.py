"""HTTP tests for the video tracking endpoints."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock
from uuid import uuid1, uuid4

import pytest

from src.tracking.alerts import AlertService
from src.tracking.cache import VideoCache
from src.tracking.exceptions import (
    AlertNotFoundError,
    SessionForbiddenError,
    SessionInactiveError,
    SessionNotFoundError,
    VideoLessonNotFoundError,
)
from src.tracking.models import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    SecurityAlert,
    VideoLesson,
    VideoProgress,
    ViewingSession,
)
from src.tracking.security import (
    MaintenanceReport,
    RiskLevel,
    RiskProfile,
    SecurityService,
)
from src.tracking.service import TrackingService
from tests.factories import bearer


def verbose_event(event_type="play", ts=0.0):
    return {
        "event_type": event_type,
        "timestamp_in_video": ts,
        "client_timestamp": datetime.now(UTC).isoformat(),
        "is_tab_visible": True,
        "playback_rate": 1.0,
        "volume_level": 0.8,
    }


@pytest.fixture
def tracking_service(app, user_id, video_lesson_id):
    service = Mock(spec=TrackingService)
    service.max_events_per_batch = 100
    lesson = VideoLesson(id=video_lesson_id, title="Intro", duration_seconds=60)
    viewing_session = ViewingSession(
        user_id=user_id, video_lesson_id=video_lesson_id, session_token="tok-123"
    )
    service.create_session = AsyncMock(return_value=(viewing_session, lesson))
    service.get_session_by_token = AsyncMock(return_value=viewing_session)
    service.close_session = AsyncMock(return_value=viewing_session)
    service.process_viewing_events = AsyncMock(
        return_value=VideoProgress(
            user_id=user_id,
            video_lesson_id=video_lesson_id,
            total_watched_seconds=30,
            completion_percentage=50,
            grade_contribution=50,
        )
    )
    service.get_user_progress = AsyncMock(return_value=[])
    app.state.tracking_service = service
    return service


@pytest.fixture
def security_service(app):
    service = Mock(spec=SecurityService)
    service.get_user_fraud_risk_profile = AsyncMock(
        return_value=RiskProfile(
            risk_level=RiskLevel.MEDIUM,
            reliability_score=50,
            flag_count=1,
            recommendations=["Monitor for suspicious patterns"],
        )
    )
    service.perform_scheduled_maintenance = AsyncMock(
        return_value=MaintenanceReport(
            sessions_cleaned=3, alerts_resolved=1, log=["Cleaned up 3 inactive sessions"]
        )
    )
    app.state.security_service = service
    return service


@pytest.fixture
def alert_service(app):
    service = Mock(spec=AlertService)
    service.get_user_alerts = AsyncMock(return_value=[])
    service.update_alert_status = AsyncMock()
    app.state.alert_service = service
    return service


class TestAuthentication:
    """Tests for token and role enforcement."""

    def test_missing_token(self, client, tracking_service) -> None:
        response = client.post("/v1/video/sessions", json={"video_lesson_id": str(uuid4())})

        assert response.status_code == 401
        body = response.json()
        assert body["error"] is True
        assert body["message"] == "Access token required"

    def test_invalid_token(self, client, tracking_service) -> None:
        response = client.get(
            "/v1/video/progress", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"

    def test_student_cannot_use_admin_routes(
        self, client, student_headers, security_service
    ) -> None:
        response = client.post("/v1/video/maintenance", headers=student_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "Insufficient permissions"

    def test_service_unavailable(self, client, student_headers) -> None:
        response = client.get("/v1/video/progress", headers=student_headers)
        assert response.status_code == 503


class TestSessions:
    """Tests for session start and end."""

    def test_create_session(
        self, client, student_headers, tracking_service, user_id, video_lesson_id
    ) -> None:
        response = client.post(
            "/v1/video/sessions",
            json={"video_lesson_id": str(video_lesson_id), "browser_tab_id": "tab_1"},
            headers={**student_headers, "User-Agent": "pytest-agent"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["session_token"] == "tok-123"
        assert body["video_data"]["duration_seconds"] == 60
        kwargs = tracking_service.create_session.await_args.kwargs
        assert kwargs["user_id"] == user_id
        assert kwargs["browser_tab_id"] == "tab_1"
        assert kwargs["user_agent"] == "pytest-agent"

    def test_create_session_unknown_lesson(
        self, client, student_headers, tracking_service
    ) -> None:
        tracking_service.create_session.side_effect = VideoLessonNotFoundError()
        response = client.post(
            "/v1/video/sessions",
            json={"video_lesson_id": str(uuid4())},
            headers=student_headers,
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Video lesson not found"

    def test_create_session_invalid_body(
        self, client, student_headers, tracking_service
    ) -> None:
        response = client.post(
            "/v1/video/sessions", json={"video_lesson_id": "nope"}, headers=student_headers
        )
        assert response.status_code == 422

    def test_end_session(self, client, student_headers, tracking_service) -> None:
        response = client.post("/v1/video/sessions/tok-123/end", headers=student_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        tracking_service.close_session.assert_awaited_once_with("tok-123")

    def test_end_someone_elses_session(self, client, tracking_service) -> None:
        response = client.post("/v1/video/sessions/tok-123/end", headers=bearer(uuid4()))

        assert response.status_code == 403
        tracking_service.close_session.assert_not_awaited()


class TestEventBatch:
    """Tests for event ingestion."""

    @pytest.mark.parametrize("ratio", [None, "fast", [0.4]])
    def test_malformed_compression_ratio(
        self, client, student_headers, tracking_service, ratio
    ) -> None:
        response = client.post(
            "/v1/video/events/batch",
            json={
                "session_token": "tok-123",
                "events": [verbose_event("play", 0)],
                "compression_info": {"ratio": ratio},
            },
            headers=student_headers,
        )

        assert response.status_code == 422
        assert response.json()["message"] == "Validation error"
        tracking_service.process_viewing_events.assert_not_awaited()

    def test_submit_events(self, client, student_headers, tracking_service, user_id) -> None:
        response = client.post(
            "/v1/video/events/batch",
            json={
                "session_token": "tok-123",
                "events": [verbose_event("play", 0), verbose_event("pause", 30)],
            },
            headers=student_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["events_processed"] == 2
        assert body["progress"]["completion_percentage"] == 50
        args = tracking_service.process_viewing_events.await_args
        assert args.args[0] == "tok-123"
        assert args.kwargs["user_id"] == user_id

    def test_submit_compressed_events(
        self, client, student_headers, tracking_service
    ) -> None:
        """Short-keyed events are expanded with defaults."""
        response = client.post(
            "/v1/video/events/batch",
            json={
                "session_token": "tok-123",
                "events": [
                    {
                        "t": "seek",
                        "ts": 50,
                        "ct": "2025-03-01T12:00:00Z",
                        "d": {"previous_time": 10, "seek_delta": 40},
                    }
                ],
                "compression_info": {
                    "original_size": 200,
                    "compressed_size": 80,
                    "ratio": 0.4,
                },
            },
            headers=student_headers,
        )

        assert response.status_code == 201
        event = tracking_service.process_viewing_events.await_args.args[1][0]
        assert event.event_type.value == "seek"
        assert event.is_tab_visible is True
        assert event.seek_distance == 40

    def test_empty_batch(self, client, student_headers, tracking_service) -> None:
        response = client.post(
            "/v1/video/events/batch",
            json={"session_token": "tok-123", "events": []},
            headers=student_headers,
        )
        assert response.status_code == 400
        tracking_service.process_viewing_events.assert_not_awaited()

    def test_oversized_batch(self, client, student_headers, tracking_service) -> None:
        tracking_service.max_events_per_batch = 2
        response = client.post(
            "/v1/video/events/batch",
            json={
                "session_token": "tok-123",
                "events": [verbose_event("heartbeat", i) for i in range(3)],
            },
            headers=student_headers,
        )
        assert response.status_code == 400
        assert "between 1 and 2" in response.json()["message"]

    def test_unknown_event_type(self, client, student_headers, tracking_service) -> None:
        response = client.post(
            "/v1/video/events/batch",
            json={"session_token": "tok-123", "events": [verbose_event("rewind", 0)]},
            headers=student_headers,
        )
        assert response.status_code == 422

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (SessionNotFoundError(), 404),
            (SessionForbiddenError(), 403),
            (SessionInactiveError(), 400),
        ],
    )
    def test_session_errors(
        self, client, student_headers, tracking_service, error, expected
    ) -> None:
        tracking_service.process_viewing_events.side_effect = error
        response = client.post(
            "/v1/video/events/batch",
            json={"session_token": "tok-123", "events": [verbose_event()]},
            headers=student_headers,
        )
        assert response.status_code == expected


class TestProgress:
    """Tests for progress reads."""

    def test_own_progress(
        self, client, student_headers, tracking_service, user_id, video_lesson_id
    ) -> None:
        tracking_service.get_user_progress.return_value = [
            VideoProgress(user_id, video_lesson_id, 60, 100, True, grade_contribution=100)
        ]
        response = client.get(
            "/v1/video/progress",
            params={"video_lesson_id": str(video_lesson_id)},
            headers=student_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["is_completed"] is True
        tracking_service.get_user_progress.assert_awaited_once_with(
            user_id, video_lesson_id
        )

    def test_student_cannot_read_other_progress(
        self, client, student_headers, tracking_service
    ) -> None:
        response = client.get(
            "/v1/video/progress",
            params={"user_id": str(uuid4())},
            headers=student_headers,
        )
        assert response.status_code == 403

    def test_admin_reads_other_progress(
        self, client, admin_headers, tracking_service
    ) -> None:
        other = uuid4()
        response = client.get(
            "/v1/video/progress", params={"user_id": str(other)}, headers=admin_headers
        )
        assert response.status_code == 200
        tracking_service.get_user_progress.assert_awaited_once_with(other, None)


def test_ping(client) -> None:
    assert client.get("/v1/video/ping").status_code == 204
    assert client.head("/v1/video/ping").status_code == 204


class TestAdministration:
    """Tests for admin-only endpoints."""

    def test_list_alerts(self, client, admin_headers, alert_service) -> None:
        flagged = uuid4()
        alert_service.get_user_alerts.return_value = [
            SecurityAlert(
                id=uuid1(),
                user_id=flagged,
                alert_type=AlertType.RAPID_SEEKING,
                severity=AlertSeverity.MEDIUM,
                description="Suspicious activity: seek",
                evidence={"risk_score": 60},
            )
        ]

        response = client.get(
            "/v1/video/security/alerts",
            params={"user_id": str(flagged), "active_only": "true"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["alert_type"] == "rapid_seeking"
        assert body["items"][0]["evidence"] == {"risk_score": 60}
        alert_service.get_user_alerts.assert_awaited_once_with(flagged, active_only=True)

    def test_review_alert(self, client, admin_headers, alert_service, admin_id) -> None:
        flagged, alert_id = uuid4(), uuid1()
        alert_service.update_alert_status.return_value = SecurityAlert(
            id=alert_id,
            user_id=flagged,
            alert_type=AlertType.CONCURRENT_VIEWING,
            severity=AlertSeverity.LOW,
            description="Suspicious activity: concurrent_viewing",
            status=AlertStatus.DISMISSED,
            reviewed_by=admin_id,
        )

        response = client.patch(
            f"/v1/video/security/alerts/{flagged}/{alert_id}",
            json={"status": "dismissed", "notes": "shared computer"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "dismissed"
        alert_service.update_alert_status.assert_awaited_once_with(
            flagged,
            alert_id,
            AlertStatus.DISMISSED,
            reviewed_by=admin_id,
            notes="shared computer",
        )

    def test_review_unknown_alert(self, client, admin_headers, alert_service) -> None:
        alert_service.update_alert_status.side_effect = AlertNotFoundError()
        response = client.patch(
            f"/v1/video/security/alerts/{uuid4()}/{uuid1()}",
            json={"status": "resolved"},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_risk_profile(self, client, admin_headers, security_service) -> None:
        flagged = uuid4()
        response = client.get(
            f"/v1/video/security/users/{flagged}/risk-profile", headers=admin_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == str(flagged)
        assert body["risk_level"] == "medium"
        assert body["flag_count"] == 1

    def test_maintenance(self, client, admin_headers, security_service) -> None:
        response = client.post("/v1/video/maintenance", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["sessions_cleaned"] == 3

    def test_cache_stats(self, app, client, admin_headers) -> None:
        cache = VideoCache()
        cache.set("k", 1)
        cache.get("k")
        app.state.video_cache = cache

        response = client.get("/v1/video/cache/stats", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["hits"] == 1
        assert body["entries"] == 1
