"""Viewing session orchestration.

Business logic for:
- Session creation with concurrent-session detection and termination
- Event ingestion (fraud check first, persistence regardless of outcome)
- Progress recomputation from the full event history
- Grade contribution with suspicious-activity and fraud-risk penalties

Progress is never patched incrementally. Every batch recomputes it from
all persisted events of the (user, video) pair and upserts the row, so
interleaved or out-of-order calls converge on the same aggregate.
"""

import secrets
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import orjson
import structlog

from src.core.context import set_viewing_session_id

from .cache import VideoCache
from .calculator import ProgressCalculator
from .exceptions import (
    SessionForbiddenError,
    SessionInactiveError,
    SessionNotFoundError,
    VideoLessonNotFoundError,
)
from .models import VideoLesson, VideoProgress, ViewingEvent, ViewingSession
from .security import SecurityService
from .thresholds import IntegrityThresholds


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


class TrackingService:
    """Service for viewing sessions, event ingestion and progress."""

    def __init__(
        self,
        session: "Session",
        keyspace: str,
        security: SecurityService,
        cache: VideoCache,
        calculator: ProgressCalculator | None = None,
        thresholds: IntegrityThresholds | None = None,
        fraud_alert_threshold: float = 70,
        max_events_per_batch: int = 100,
    ):
        """Initialize with Cassandra session and injected collaborators."""
        self.session = session
        self.keyspace = keyspace
        self.security = security
        self.cache = cache
        self.thresholds = thresholds or IntegrityThresholds()
        self.calculator = calculator or ProgressCalculator(self.thresholds)
        self.fraud_alert_threshold = fraud_alert_threshold
        self.max_events_per_batch = max_events_per_batch
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        # Video lessons
        self._get_lesson = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_lessons WHERE id = ?
        """)

        # Sessions (main table + token lookup)
        self._insert_session = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.video_viewing_sessions
            (user_id, video_lesson_id, id, session_token, started_at,
             last_heartbeat, is_active, browser_tab_id, user_agent, ip_address)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)

        self._insert_session_by_token = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.video_sessions_by_token
            (session_token, id, user_id, video_lesson_id)
            VALUES (?, ?, ?, ?)
        """)

        self._get_session_by_token = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_sessions_by_token
            WHERE session_token = ?
        """)

        self._get_session = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_sessions
            WHERE user_id = ? AND video_lesson_id = ? AND id = ?
        """)

        self._get_user_video_sessions = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_sessions
            WHERE user_id = ? AND video_lesson_id = ?
        """)

        self._update_heartbeat = self.session.prepare(f"""
            UPDATE {self.keyspace}.video_viewing_sessions
            SET last_heartbeat = ?
            WHERE user_id = ? AND video_lesson_id = ? AND id = ?
        """)

        self._close_session = self.session.prepare(f"""
            UPDATE {self.keyspace}.video_viewing_sessions
            SET is_active = false, last_heartbeat = ?
            WHERE user_id = ? AND video_lesson_id = ? AND id = ?
        """)

        # Events
        self._insert_event = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.video_viewing_events
            (session_id, client_timestamp, id, event_type, timestamp_in_video,
             server_timestamp, is_tab_visible, playback_rate, volume_level,
             additional_data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)

        self._get_session_events = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_events
            WHERE session_id = ?
        """)

        # Progress
        self._upsert_progress = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.video_progress
            (user_id, video_lesson_id, total_watched_seconds, completion_percentage,
             is_completed, first_watch_started, last_watch_updated,
             suspicious_activity_count, grade_contribution)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)

        self._get_progress = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_progress
            WHERE user_id = ? AND video_lesson_id = ?
        """)

        self._get_user_progress = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_progress
            WHERE user_id = ?
        """)

    # ==========================================================================
    # Lookups
    # ==========================================================================

    async def get_video_lesson(self, video_lesson_id: UUID) -> VideoLesson:
        """Get video lesson metadata, cache first.

        Raises:
            VideoLessonNotFoundError: If the lesson does not exist
        """
        cached = self.cache.get_video_lesson(video_lesson_id)
        if cached is not None:
            return cached

        result = await self.session.aexecute(self._get_lesson, [video_lesson_id])
        row = result.one()
        if not row:
            raise VideoLessonNotFoundError

        lesson = VideoLesson.from_row(row)
        self.cache.cache_video_lesson(video_lesson_id, lesson)
        return lesson

    async def get_session_by_token(self, session_token: str) -> ViewingSession:
        """Resolve a session token.

        Raises:
            SessionNotFoundError: If the token is unknown
        """
        result = await self.session.aexecute(self._get_session_by_token, [session_token])
        pointer = result.one()
        if not pointer:
            raise SessionNotFoundError

        result = await self.session.aexecute(
            self._get_session, [pointer.user_id, pointer.video_lesson_id, pointer.id]
        )
        row = result.one()
        if not row:
            raise SessionNotFoundError
        return ViewingSession.from_row(row)

    async def get_authorized_session(
        self, session_token: str, user_id: UUID
    ) -> ViewingSession:
        """Resolve a token for event submission by ``user_id``.

        Raises:
            SessionNotFoundError: Unknown token
            SessionForbiddenError: Session owned by someone else
            SessionInactiveError: Session already closed
        """
        viewing_session = await self.get_session_by_token(session_token)
        if viewing_session.user_id != user_id:
            raise SessionForbiddenError
        if not viewing_session.is_active:
            raise SessionInactiveError
        return viewing_session

    # ==========================================================================
    # Sessions
    # ==========================================================================

    async def create_session(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        browser_tab_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> tuple[ViewingSession, VideoLesson]:
        """Start a viewing session.

        Existing active sessions of the user on the same video are flagged
        and terminated before the new one is created.

        Args:
            user_id: Viewer UUID
            video_lesson_id: Video lesson UUID
            browser_tab_id: Client tab identifier
            user_agent: Client user agent
            ip_address: Client IP

        Returns:
            Tuple of (created session, video lesson)

        Raises:
            VideoLessonNotFoundError: If the lesson does not exist
        """
        lesson = await self.get_video_lesson(video_lesson_id)

        concurrent = await self.security.check_concurrent_sessions(
            user_id, video_lesson_id
        )
        if concurrent.has_concurrent_sessions:
            await self.security.alert_concurrent_viewing(
                user_id, video_lesson_id, concurrent
            )
        if concurrent.active_sessions:
            await self.security.terminate_old_sessions(user_id, video_lesson_id)

        viewing_session = ViewingSession(
            user_id=user_id,
            video_lesson_id=video_lesson_id,
            session_token=secrets.token_urlsafe(32),
            browser_tab_id=browser_tab_id,
            user_agent=user_agent,
            ip_address=ip_address,
        )

        # Dual write: main table + token lookup
        await self.session.aexecute(
            self._insert_session,
            [
                viewing_session.user_id,
                viewing_session.video_lesson_id,
                viewing_session.id,
                viewing_session.session_token,
                viewing_session.started_at,
                viewing_session.last_heartbeat,
                viewing_session.is_active,
                viewing_session.browser_tab_id,
                viewing_session.user_agent,
                viewing_session.ip_address,
            ],
        )
        await self.session.aexecute(
            self._insert_session_by_token,
            [
                viewing_session.session_token,
                viewing_session.id,
                viewing_session.user_id,
                viewing_session.video_lesson_id,
            ],
        )
        self.cache.delete(f"sessions:{user_id}")

        logger.info(
            "viewing_session_created",
            session_id=str(viewing_session.id),
            user_id=str(user_id),
            video_lesson_id=str(video_lesson_id),
            replaced_sessions=concurrent.active_sessions,
        )
        return viewing_session, lesson

    async def close_session(self, session_token: str) -> ViewingSession:
        """Mark a session inactive.

        Raises:
            SessionNotFoundError: If the token is unknown
        """
        viewing_session = await self.get_session_by_token(session_token)
        now = datetime.now(UTC)
        await self.session.aexecute(
            self._close_session,
            [
                now,
                viewing_session.user_id,
                viewing_session.video_lesson_id,
                viewing_session.id,
            ],
        )
        viewing_session.is_active = False
        viewing_session.last_heartbeat = now
        self.cache.delete(f"sessions:{viewing_session.user_id}")

        logger.info("viewing_session_closed", session_id=str(viewing_session.id))
        return viewing_session

    # ==========================================================================
    # Event ingestion
    # ==========================================================================

    async def process_viewing_events(
        self,
        session_token: str,
        events: list[ViewingEvent],
        user_id: UUID | None = None,
    ) -> VideoProgress:
        """Ingest one batch of events and recompute progress.

        The fraud check runs before persistence for logging and flagging
        only. Events are stored even when the check finds violations.

        Args:
            session_token: Session handle
            events: Batch of events
            user_id: Submitting user; when given, ownership and activity are
                enforced

        Returns:
            Recomputed VideoProgress

        Raises:
            SessionNotFoundError: Unknown token
            SessionForbiddenError: Session owned by someone else
            SessionInactiveError: Session already closed
        """
        if user_id is None:
            viewing_session = await self.get_session_by_token(session_token)
        else:
            viewing_session = await self.get_authorized_session(session_token, user_id)

        set_viewing_session_id(viewing_session.id)
        owner = viewing_session.user_id
        video_lesson_id = viewing_session.video_lesson_id

        risk_score: float = 0
        try:
            check = await self.security.perform_comprehensive_fraud_check(
                owner, video_lesson_id, events
            )
            risk_score = check.risk_score
            if not check.is_valid:
                logger.warning(
                    "suspicious_viewing_batch",
                    session_id=str(viewing_session.id),
                    user_id=str(owner),
                    risk_score=check.risk_score,
                    violations=check.violations,
                )
            if check.risk_score > self.fraud_alert_threshold:
                await self.security.flag_suspicious_user(
                    owner,
                    video_lesson_id,
                    "High fraud risk score",
                    {
                        "session_id": str(viewing_session.id),
                        "fraud_check": {
                            "risk_score": check.risk_score,
                            "violations": check.violations,
                            "recommendations": check.recommendations,
                        },
                        "event_count": len(events),
                    },
                )
        except Exception as e:
            logger.warning(
                "fraud_check_failed",
                session_id=str(viewing_session.id),
                error=str(e),
                error_type=type(e).__name__,
            )

        now = datetime.now(UTC)
        for event in events:
            event.session_id = viewing_session.id
            event.server_timestamp = now
            await self.session.aexecute(
                self._insert_event,
                [
                    event.session_id,
                    event.client_timestamp,
                    event.id,
                    event.event_type.value,
                    event.timestamp_in_video,
                    event.server_timestamp,
                    event.is_tab_visible,
                    event.playback_rate,
                    event.volume_level,
                    orjson.dumps(event.additional_data).decode()
                    if event.details is not None
                    else None,
                ],
            )

        await self.session.aexecute(
            self._update_heartbeat,
            [now, owner, video_lesson_id, viewing_session.id],
        )

        logger.info(
            "viewing_events_processed",
            session_id=str(viewing_session.id),
            count=len(events),
            risk_score=risk_score,
        )
        return await self.calculate_progress(owner, video_lesson_id, risk_score)

    # ==========================================================================
    # Progress
    # ==========================================================================

    async def get_all_events(
        self, user_id: UUID, video_lesson_id: UUID
    ) -> list[ViewingEvent]:
        """Every persisted event across all of the user's sessions on the video."""
        result = await self.session.aexecute(
            self._get_user_video_sessions, [user_id, video_lesson_id]
        )
        events: list[ViewingEvent] = []
        for row in result:
            rows = await self.session.aexecute(self._get_session_events, [row.id])
            events.extend(ViewingEvent.from_row(r) for r in rows)
        events.sort(key=lambda e: e.client_ms)
        return events

    async def calculate_progress(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        fraud_risk_score: float = 0,
    ) -> VideoProgress:
        """Recompute and upsert progress from the full event history.

        Raises:
            VideoLessonNotFoundError: If the lesson does not exist
        """
        lesson = await self.get_video_lesson(video_lesson_id)
        events = await self.get_all_events(user_id, video_lesson_id)

        calculation = self.calculator.calculate_progress(events, lesson.duration_seconds)
        suspicious_count = self.calculator.count_suspicious_activity(events)
        completion = round(calculation.completion_percentage, 2)

        progress = VideoProgress(
            user_id=user_id,
            video_lesson_id=video_lesson_id,
            total_watched_seconds=round(calculation.total_watched_seconds, 2),
            completion_percentage=completion,
            is_completed=completion >= lesson.required_completion_percentage,
            first_watch_started=events[0].client_timestamp if events else None,
            last_watch_updated=datetime.now(UTC),
            suspicious_activity_count=suspicious_count,
            grade_contribution=self.calculate_grade_contribution(
                completion,
                suspicious_count,
                lesson.required_completion_percentage,
                fraud_risk_score,
            ),
        )

        await self.session.aexecute(
            self._upsert_progress,
            [
                progress.user_id,
                progress.video_lesson_id,
                progress.total_watched_seconds,
                progress.completion_percentage,
                progress.is_completed,
                progress.first_watch_started,
                progress.last_watch_updated,
                progress.suspicious_activity_count,
                progress.grade_contribution,
            ],
        )

        self.cache.invalidate_user_cache(user_id)
        self.cache.cache_video_progress(user_id, video_lesson_id, progress)

        logger.info(
            "video_progress_updated",
            user_id=str(user_id),
            video_lesson_id=str(video_lesson_id),
            completion_percentage=progress.completion_percentage,
            grade_contribution=progress.grade_contribution,
            suspicious_activity_count=suspicious_count,
            quality_score=calculation.quality_score,
        )
        return progress

    def calculate_grade_contribution(
        self,
        completion_percentage: float,
        suspicious_count: int,
        required_completion_percentage: float,
        fraud_risk_score: float = 0,
    ) -> float:
        """Penalized completion used for grading (0-100, 2 decimals).

        Never exceeds the raw completion percentage.
        """
        t = self.thresholds.grade
        base = min(100.0, completion_percentage)
        base = max(0.0, base - min(t.suspicious_cap, suspicious_count * t.suspicious_points))
        base = max(0.0, base - min(t.risk_cap, fraud_risk_score * t.risk_weight))

        if 0 < required_completion_percentage and (
            completion_percentage < required_completion_percentage
        ):
            base = min(
                base, completion_percentage / required_completion_percentage * 100
            )
        return round(base, 2)

    async def get_user_progress(
        self, user_id: UUID, video_lesson_id: UUID | None = None
    ) -> list[VideoProgress]:
        """Progress rows of a user, most recently updated first. Cache first."""
        if video_lesson_id is not None:
            cached = self.cache.get_video_progress(user_id, video_lesson_id)
            if cached is not None:
                return [cached]
            result = await self.session.aexecute(
                self._get_progress, [user_id, video_lesson_id]
            )
            row = result.one()
            if not row:
                return []
            progress = VideoProgress.from_row(row)
            self.cache.cache_video_progress(user_id, video_lesson_id, progress)
            return [progress]

        cached_list = self.cache.get_user_progress(user_id)
        if cached_list is not None:
            return cached_list

        result = await self.session.aexecute(self._get_user_progress, [user_id])
        rows = [VideoProgress.from_row(row) for row in result]
        rows.sort(key=lambda p: p.last_watch_updated, reverse=True)
        self.cache.cache_user_progress(user_id, rows)
        return rows
