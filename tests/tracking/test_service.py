"""Tests for session orchestration, event ingestion and progress."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest

from src.tracking.cache import VideoCache
from src.tracking.exceptions import (
    SessionForbiddenError,
    SessionInactiveError,
    SessionNotFoundError,
    VideoLessonNotFoundError,
)
from src.tracking.models import EventType
from src.tracking.security import ConcurrentSessionCheck, SecurityCheck, SecurityService
from src.tracking.service import TrackingService
from tests.factories import FakeResult, lesson_row, make_event


SESSION_COLUMNS = (
    "user_id",
    "video_lesson_id",
    "id",
    "session_token",
    "started_at",
    "last_heartbeat",
    "is_active",
    "browser_tab_id",
    "user_agent",
    "ip_address",
)
EVENT_COLUMNS = (
    "session_id",
    "client_timestamp",
    "id",
    "event_type",
    "timestamp_in_video",
    "server_timestamp",
    "is_tab_visible",
    "playback_rate",
    "volume_level",
    "additional_data",
)
PROGRESS_COLUMNS = (
    "user_id",
    "video_lesson_id",
    "total_watched_seconds",
    "completion_percentage",
    "is_completed",
    "first_watch_started",
    "last_watch_updated",
    "suspicious_activity_count",
    "grade_contribution",
)


class InMemoryCassandra:
    """Answers the tracking service's prepared statements from dicts."""

    def __init__(self, keyspace: str = "ks"):
        self.ks = keyspace
        self.lessons: dict = {}
        self.sessions: dict = {}
        self.tokens: dict = {}
        self.events: list = []
        self.progress: dict = {}
        self.queries: list[str] = []

    def prepare(self, query: str) -> str:
        return " ".join(query.split())

    async def aexecute(self, query: str, params=None) -> FakeResult:
        p = list(params or [])
        self.queries.append(query)
        ks = self.ks

        if query.startswith(f"SELECT * FROM {ks}.video_lessons"):
            return FakeResult([self.lessons[p[0]]] if p[0] in self.lessons else [])

        if query.startswith(f"INSERT INTO {ks}.video_viewing_sessions"):
            row = SimpleNamespace(**dict(zip(SESSION_COLUMNS, p)))
            self.sessions[row.id] = row
        elif query.startswith(f"INSERT INTO {ks}.video_sessions_by_token"):
            self.tokens[p[0]] = SimpleNamespace(
                session_token=p[0], id=p[1], user_id=p[2], video_lesson_id=p[3]
            )
        elif query.startswith(f"SELECT * FROM {ks}.video_sessions_by_token"):
            pointer = self.tokens.get(p[0])
            return FakeResult([pointer] if pointer else [])
        elif query.startswith(f"SELECT * FROM {ks}.video_viewing_sessions"):
            if "AND id = ?" in query:
                row = self.sessions.get(p[2])
                return FakeResult([row] if row else [])
            return FakeResult(
                row
                for row in self.sessions.values()
                if row.user_id == p[0] and row.video_lesson_id == p[1]
            )
        elif query.startswith(f"UPDATE {ks}.video_viewing_sessions"):
            row = self.sessions[p[-1]]
            row.last_heartbeat = p[0]
            if "is_active = false" in query:
                row.is_active = False
        elif query.startswith(f"INSERT INTO {ks}.video_viewing_events"):
            self.events.append(SimpleNamespace(**dict(zip(EVENT_COLUMNS, p))))
        elif query.startswith(f"SELECT * FROM {ks}.video_viewing_events"):
            return FakeResult(e for e in self.events if e.session_id == p[0])
        elif query.startswith(f"INSERT INTO {ks}.video_progress"):
            row = SimpleNamespace(**dict(zip(PROGRESS_COLUMNS, p)))
            self.progress[(row.user_id, row.video_lesson_id)] = row
        elif query.startswith(f"SELECT * FROM {ks}.video_progress"):
            if "video_lesson_id = ?" in query:
                row = self.progress.get((p[0], p[1]))
                return FakeResult([row] if row else [])
            return FakeResult(r for r in self.progress.values() if r.user_id == p[0])
        return FakeResult()


@pytest.fixture
def db(video_lesson_id) -> InMemoryCassandra:
    store = InMemoryCassandra()
    store.lessons[video_lesson_id] = lesson_row(video_lesson_id, duration_seconds=60)
    return store


@pytest.fixture
def security():
    service = Mock(spec=SecurityService)
    service.check_concurrent_sessions = AsyncMock(
        return_value=ConcurrentSessionCheck(
            has_concurrent_sessions=False, active_sessions=0
        )
    )
    service.alert_concurrent_viewing = AsyncMock()
    service.terminate_old_sessions = AsyncMock(return_value=0)
    service.perform_comprehensive_fraud_check = AsyncMock(return_value=SecurityCheck())
    service.flag_suspicious_user = AsyncMock()
    return service


@pytest.fixture
def tracking(db, security) -> TrackingService:
    return TrackingService(db, "ks", security=security, cache=VideoCache())


def first_half():
    return [
        make_event(EventType.PLAY, 0, offset_ms=0),
        make_event(EventType.PAUSE, 30, offset_ms=30_000),
    ]


def second_half():
    return [
        make_event(EventType.PLAY, 30, offset_ms=40_000),
        make_event(EventType.PAUSE, 60, offset_ms=70_000),
    ]


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_unknown_lesson(self, tracking, user_id) -> None:
        with pytest.raises(VideoLessonNotFoundError):
            await tracking.create_session(user_id, uuid4())

    @pytest.mark.asyncio
    async def test_creates_session_and_token_lookup(
        self, tracking, db, security, user_id, video_lesson_id
    ) -> None:
        viewing_session, lesson = await tracking.create_session(
            user_id, video_lesson_id, browser_tab_id="tab_1", ip_address="10.0.0.1"
        )

        assert lesson.duration_seconds == 60
        assert viewing_session.is_active
        assert len(viewing_session.session_token) >= 32
        assert db.sessions[viewing_session.id].browser_tab_id == "tab_1"
        assert db.tokens[viewing_session.session_token].id == viewing_session.id
        security.terminate_old_sessions.assert_not_awaited()
        security.alert_concurrent_viewing.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_sessions_flagged_and_terminated(
        self, tracking, security, user_id, video_lesson_id
    ) -> None:
        check = ConcurrentSessionCheck(has_concurrent_sessions=True, active_sessions=2)
        security.check_concurrent_sessions.return_value = check

        await tracking.create_session(user_id, video_lesson_id)

        security.alert_concurrent_viewing.assert_awaited_once_with(
            user_id, video_lesson_id, check
        )
        security.terminate_old_sessions.assert_awaited_once_with(
            user_id, video_lesson_id
        )

    @pytest.mark.asyncio
    async def test_single_previous_session_replaced_without_alert(
        self, tracking, security, user_id, video_lesson_id
    ) -> None:
        security.check_concurrent_sessions.return_value = ConcurrentSessionCheck(
            has_concurrent_sessions=False, active_sessions=1
        )

        await tracking.create_session(user_id, video_lesson_id)

        security.alert_concurrent_viewing.assert_not_awaited()
        security.terminate_old_sessions.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lesson_is_cached(self, tracking, db, user_id, video_lesson_id) -> None:
        await tracking.get_video_lesson(video_lesson_id)
        await tracking.get_video_lesson(video_lesson_id)
        lookups = [q for q in db.queries if "video_lessons" in q]
        assert len(lookups) == 1


class TestProcessEvents:
    """Tests for event ingestion and progress recomputation."""

    @pytest.mark.asyncio
    async def test_play_pause_half_video(
        self, tracking, db, user_id, video_lesson_id
    ) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)

        progress = await tracking.process_viewing_events(
            viewing_session.session_token, first_half(), user_id=user_id
        )

        assert progress.total_watched_seconds == 30
        assert progress.completion_percentage == 50
        assert progress.is_completed is False
        # Below the 80% requirement, grade is capped by completion
        assert progress.grade_contribution == 50
        assert len(db.events) == 2
        assert all(e.session_id == viewing_session.id for e in db.events)

    @pytest.mark.asyncio
    async def test_progress_recomputed_from_all_batches(
        self, tracking, user_id, video_lesson_id
    ) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)
        token = viewing_session.session_token

        await tracking.process_viewing_events(token, first_half(), user_id=user_id)
        progress = await tracking.process_viewing_events(
            token, second_half(), user_id=user_id
        )

        assert progress.completion_percentage == 100
        assert progress.is_completed is True
        assert progress.grade_contribution == 100

    @pytest.mark.asyncio
    async def test_history_spans_sessions(
        self, tracking, user_id, video_lesson_id
    ) -> None:
        first, _ = await tracking.create_session(user_id, video_lesson_id)
        await tracking.process_viewing_events(first.session_token, first_half())
        second, _ = await tracking.create_session(user_id, video_lesson_id)

        progress = await tracking.process_viewing_events(
            second.session_token, second_half()
        )

        assert progress.completion_percentage == 100

    @pytest.mark.asyncio
    async def test_fraud_check_failure_does_not_block(
        self, tracking, db, security, user_id, video_lesson_id
    ) -> None:
        security.perform_comprehensive_fraud_check.side_effect = RuntimeError("boom")
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)

        progress = await tracking.process_viewing_events(
            viewing_session.session_token, first_half()
        )

        assert progress.completion_percentage == 50
        assert len(db.events) == 2

    @pytest.mark.asyncio
    async def test_high_risk_flags_user_and_lowers_grade(
        self, tracking, db, security, user_id, video_lesson_id
    ) -> None:
        security.perform_comprehensive_fraud_check.return_value = SecurityCheck(
            is_valid=False, violations=["Rapid-fire events detected"], risk_score=85
        )
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)

        progress = await tracking.process_viewing_events(
            viewing_session.session_token, first_half()
        )

        security.flag_suspicious_user.assert_awaited_once()
        args = security.flag_suspicious_user.await_args.args
        assert args[2] == "High fraud risk score"
        assert args[3]["fraud_check"]["risk_score"] == 85
        # Flagged events are still stored
        assert len(db.events) == 2
        # 50 - min(30, 85 * 0.3)
        assert progress.grade_contribution == 24.5

    @pytest.mark.asyncio
    async def test_unknown_token(self, tracking) -> None:
        with pytest.raises(SessionNotFoundError):
            await tracking.process_viewing_events("nope", first_half())

    @pytest.mark.asyncio
    async def test_other_users_session(
        self, tracking, user_id, video_lesson_id
    ) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)
        with pytest.raises(SessionForbiddenError):
            await tracking.process_viewing_events(
                viewing_session.session_token, first_half(), user_id=uuid4()
            )

    @pytest.mark.asyncio
    async def test_closed_session(self, tracking, db, user_id, video_lesson_id) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)
        closed = await tracking.close_session(viewing_session.session_token)

        assert closed.is_active is False
        assert db.sessions[viewing_session.id].is_active is False
        with pytest.raises(SessionInactiveError):
            await tracking.process_viewing_events(
                viewing_session.session_token, first_half(), user_id=user_id
            )


class TestGradeContribution:
    """Tests for the grade formula."""

    @pytest.fixture(autouse=True)
    def _service(self, tracking) -> None:
        self.tracking = tracking

    @pytest.mark.parametrize(
        ("completion", "suspicious", "risk", "expected"),
        [
            (100, 0, 0, 100),
            (90, 5, 0, 80),
            (90, 20, 100, 40),
            (40, 0, 0, 40),
            (0, 3, 50, 0),
        ],
    )
    def test_penalties(self, completion, suspicious, risk, expected) -> None:
        grade = self.tracking.calculate_grade_contribution(
            completion, suspicious, 80, risk
        )
        assert grade == expected

    def test_never_exceeds_completion(self) -> None:
        for completion in range(0, 101, 5):
            for suspicious in (0, 4, 15):
                grade = self.tracking.calculate_grade_contribution(
                    completion, suspicious, 80, 30
                )
                assert 0 <= grade <= completion

    def test_monotonic_in_completion(self) -> None:
        grades = [
            self.tracking.calculate_grade_contribution(c, 2, 80, 20)
            for c in range(0, 101)
        ]
        assert grades == sorted(grades)


class TestUserProgress:
    """Tests for progress reads."""

    @pytest.mark.asyncio
    async def test_progress_read_from_cache_after_recompute(
        self, tracking, db, user_id, video_lesson_id
    ) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)
        await tracking.process_viewing_events(viewing_session.session_token, first_half())
        reads_before = len(db.queries)

        progress = await tracking.get_user_progress(user_id, video_lesson_id)

        assert progress[0].completion_percentage == 50
        assert len(db.queries) == reads_before

    @pytest.mark.asyncio
    async def test_all_progress_for_user(
        self, tracking, db, user_id, video_lesson_id
    ) -> None:
        viewing_session, _ = await tracking.create_session(user_id, video_lesson_id)
        await tracking.process_viewing_events(viewing_session.session_token, first_half())

        progress = await tracking.get_user_progress(user_id)
        again = await tracking.get_user_progress(user_id)

        assert [p.video_lesson_id for p in progress] == [video_lesson_id]
        assert again == progress

    @pytest.mark.asyncio
    async def test_no_progress(self, tracking, user_id, video_lesson_id) -> None:
        assert await tracking.get_user_progress(user_id, video_lesson_id) == []
