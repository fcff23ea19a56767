"""Fraud heuristics over client-reported playback telemetry.

Each check returns its own capped 0-100 risk contribution with violation
and recommendation strings. ``perform_comprehensive_fraud_check`` weights
and combines them so that no single heuristic saturates the score while
several weak signals together do.

Findings never raise. Callers log them, persist the events anyway and
escalate to a security alert above the configured threshold.
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from .alerts import AlertService
from .calculator import by_client_time
from .models import (
    AlertSeverity,
    AlertType,
    EventType,
    SecurityAlert,
    ViewingEvent,
    ViewingSession,
    to_epoch_ms,
)
from .thresholds import IntegrityThresholds


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


class RiskLevel(str, Enum):
    """Historical fraud risk level of a user."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertLevel(str, Enum):
    """Real-time monitor escalation level."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ==============================================================================
# Results
# ==============================================================================


@dataclass
class SecurityCheck:
    """Outcome of one check or of the comprehensive aggregation."""

    is_valid: bool = True
    violations: list[str] = field(default_factory=list)
    risk_score: float = 0
    recommendations: list[str] = field(default_factory=list)

    def flag(self, violation: str, points: float, recommendation: str) -> None:
        self.violations.append(violation)
        self.recommendations.append(recommendation)
        self.risk_score += points

    def finish(self) -> "SecurityCheck":
        """Derive validity and clamp the score to [0, 100]."""
        self.is_valid = not self.violations
        self.risk_score = max(0, min(100, self.risk_score))
        return self


@dataclass
class ConcurrentSessionCheck:
    has_concurrent_sessions: bool
    active_sessions: int
    session_details: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class RiskProfile:
    risk_level: RiskLevel
    reliability_score: float
    flag_count: int
    recommendations: list[str] = field(default_factory=list)


@dataclass
class RealTimeReport:
    should_alert: bool
    alert_level: AlertLevel
    patterns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class MaintenanceReport:
    sessions_cleaned: int = 0
    alerts_resolved: int = 0
    reliability_updated: int = 0
    log: list[str] = field(default_factory=list)


# ==============================================================================
# Pure helpers
# ==============================================================================


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _variance(values: list[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def _intervals_ms(events: list[ViewingEvent]) -> list[float]:
    return [b.client_ms - a.client_ms for a, b in zip(events, events[1:])]


def count_rapid_pairs(events: list[ViewingEvent], gap_ms: float) -> int:
    """Number of consecutive events (client-time order) closer than ``gap_ms``."""
    return sum(1 for gap in _intervals_ms(events) if gap < gap_ms)


def max_events_in_window(events: list[ViewingEvent], window_ms: float) -> int:
    """Most events (client-time order) falling inside any ``window_ms`` span."""
    best = 0
    start = 0
    for i, event in enumerate(events):
        while event.client_ms - events[start].client_ms >= window_ms:
            start += 1
        best = max(best, i - start + 1)
    return best


def longest_rapid_run(events: list[ViewingEvent], gap_ms: float) -> tuple[int, float]:
    """Longest chain of events each within ``gap_ms`` of the previous one.

    Returns:
        Tuple of (chain length, chain span in ms)
    """
    if len(events) < 2:
        return 0, 0.0
    best, best_span = 1, 0.0
    run_start = 0
    for i in range(1, len(events)):
        if events[i].client_ms - events[i - 1].client_ms >= gap_ms:
            run_start = i
        length = i - run_start + 1
        if length > best:
            best = length
            best_span = events[i].client_ms - events[run_start].client_ms
    return best, best_span


def _implied_speeds(events: list[ViewingEvent]) -> list[float]:
    """Video seconds per wall second between consecutive forward events."""
    speeds = []
    for previous, current in zip(events, events[1:]):
        elapsed_ms = current.client_ms - previous.client_ms
        advanced = current.timestamp_in_video - previous.timestamp_in_video
        if elapsed_ms > 0 and advanced > 0:
            speeds.append(advanced / (elapsed_ms / 1000))
    return speeds


class SecurityService:
    """Fraud and integrity checks for viewing sessions and events."""

    def __init__(
        self,
        session: "Session",
        keyspace: str,
        alert_service: AlertService,
        thresholds: IntegrityThresholds | None = None,
        fraud_alert_threshold: float = 70,
        session_stale_minutes: int = 30,
        session_max_age_hours: int = 8,
        reliability_refresh_limit: int = 50,
        alert_retention_days: int = 30,
    ):
        """Initialize with Cassandra session and collaborators."""
        self.session = session
        self.keyspace = keyspace
        self.alerts = alert_service
        self.thresholds = thresholds or IntegrityThresholds()
        self.fraud_alert_threshold = fraud_alert_threshold
        self.session_stale_minutes = session_stale_minutes
        self.session_max_age_hours = session_max_age_hours
        self.reliability_refresh_limit = reliability_refresh_limit
        self.alert_retention_days = alert_retention_days
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        self._get_user_video_sessions = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_sessions
            WHERE user_id = ? AND video_lesson_id = ?
        """)

        self._get_active_sessions = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_sessions
            WHERE is_active = true
        """)

        self._deactivate_session = self.session.prepare(f"""
            UPDATE {self.keyspace}.video_viewing_sessions
            SET is_active = false, last_heartbeat = ?
            WHERE user_id = ? AND video_lesson_id = ? AND id = ?
        """)

        self._get_session_by_token = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_sessions_by_token
            WHERE session_token = ?
        """)

        self._get_session = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_sessions
            WHERE user_id = ? AND video_lesson_id = ? AND id = ?
        """)

        self._get_session_events = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_viewing_events
            WHERE session_id = ?
        """)

        self._get_user_progress = self.session.prepare(f"""
            SELECT suspicious_activity_count, completion_percentage
            FROM {self.keyspace}.video_progress
            WHERE user_id = ?
        """)

        self._upsert_reliability = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.user_reliability_scores
            (user_id, score, updated_at)
            VALUES (?, ?, ?)
        """)

    # ==========================================================================
    # Concurrent sessions
    # ==========================================================================

    async def _active_sessions(
        self, user_id: UUID, video_lesson_id: UUID
    ) -> list[ViewingSession]:
        result = await self.session.aexecute(
            self._get_user_video_sessions, [user_id, video_lesson_id]
        )
        sessions = [ViewingSession.from_row(row) for row in result]
        return [s for s in sessions if s.is_active]

    async def check_concurrent_sessions(
        self, user_id: UUID, video_lesson_id: UUID
    ) -> ConcurrentSessionCheck:
        """Report whether the user has more than one active session on the video."""
        active = await self._active_sessions(user_id, video_lesson_id)
        return ConcurrentSessionCheck(
            has_concurrent_sessions=len(active) > 1,
            active_sessions=len(active),
            session_details=[
                {
                    "id": str(s.id),
                    "started_at": s.started_at.isoformat(),
                    "ip_address": s.ip_address,
                    "user_agent": s.user_agent,
                }
                for s in active
            ],
        )

    async def terminate_old_sessions(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        keep_token: str | None = None,
    ) -> int:
        """Deactivate the user's active sessions on the video except ``keep_token``.

        Returns:
            Number of sessions deactivated
        """
        now = datetime.now(UTC)
        terminated = 0
        for s in await self._active_sessions(user_id, video_lesson_id):
            if keep_token is not None and s.session_token == keep_token:
                continue
            await self.session.aexecute(
                self._deactivate_session, [now, s.user_id, s.video_lesson_id, s.id]
            )
            terminated += 1

        if terminated:
            logger.info(
                "viewing_sessions_terminated",
                user_id=str(user_id),
                video_lesson_id=str(video_lesson_id),
                count=terminated,
            )
        return terminated

    async def alert_concurrent_viewing(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        check: ConcurrentSessionCheck,
    ) -> SecurityAlert:
        return await self.flag_suspicious_user(
            user_id,
            video_lesson_id,
            "concurrent_viewing",
            {
                "active_sessions": check.active_sessions,
                "session_details": check.session_details,
                "detected_at": datetime.now(UTC).isoformat(),
            },
        )

    # ==========================================================================
    # Single event validation
    # ==========================================================================

    def validate_viewing_event(
        self, event: ViewingEvent, now: datetime | None = None
    ) -> SecurityCheck:
        t = self.thresholds.event
        check = SecurityCheck()
        server_ms = to_epoch_ms(now or datetime.now(UTC))

        if abs(server_ms - event.client_ms) > t.max_clock_drift_ms:
            check.flag(
                "Client timestamp significantly differs from server time",
                t.clock_drift_points,
                "Check client system clock",
            )
        if event.timestamp_in_video < 0:
            check.flag(
                "Negative video timestamp",
                t.negative_timestamp_points,
                "Reject event with invalid timestamp",
            )
        rate = event.playback_rate
        if rate is not None and (rate <= 0 or rate > t.max_playback_rate):
            check.flag(
                "Invalid playback rate",
                t.playback_rate_points,
                "Normalize playback rate to valid range",
            )
        volume = event.volume_level
        if volume is not None and (volume < 0 or volume > 1):
            check.flag(
                "Invalid volume level",
                t.volume_points,
                "Normalize volume to 0-1 range",
            )
        distance = event.seek_distance
        if (
            event.event_type == EventType.SEEK
            and distance is not None
            and abs(distance) > t.max_seek_distance
        ):
            check.flag(
                "Large seek distance detected",
                t.seek_distance_points,
                "Flag for manual review",
            )
        return check.finish()

    # ==========================================================================
    # Sequence analysis
    # ==========================================================================

    def analyze_event_sequence(self, events: list[ViewingEvent]) -> SecurityCheck:
        t = self.thresholds.sequence
        check = SecurityCheck()
        if not events:
            return check

        ordered = by_client_time(events)

        for speed in _implied_speeds(ordered):
            if speed > t.max_speed:
                check.flag(
                    "Impossible playback speed detected",
                    t.impossible_speed_points,
                    "Review event sequence for manipulation",
                )

        seeks = [e for e in ordered if e.event_type == EventType.SEEK]
        if len(seeks) / len(ordered) > t.seek_ratio:
            check.flag(
                "Excessive seeking behavior",
                t.seek_ratio_points,
                "Flag user for potential content skipping",
            )

        if (
            count_rapid_pairs(ordered, t.rapid_gap_ms) > t.rapid_max_pairs
            or max_events_in_window(ordered, t.rapid_window_ms) >= t.rapid_window_events
        ):
            check.flag(
                "Rapid-fire events detected",
                t.rapid_points,
                "Possible automated interaction",
            )

        plays = sum(1 for e in ordered if e.event_type == EventType.PLAY)
        heartbeats = sum(1 for e in ordered if e.event_type == EventType.HEARTBEAT)
        if plays > 0 and heartbeats == 0:
            check.flag(
                "No heartbeat events during playback",
                t.missing_heartbeat_points,
                "Possible client-side manipulation",
            )

        visibility = [e for e in ordered if e.is_tab_visible is not None]
        if len(visibility) > t.consistent_visibility_min_events and all(
            e.is_tab_visible for e in visibility
        ):
            check.flag(
                "Suspiciously consistent tab visibility",
                t.consistent_visibility_points,
                "Possible visibility API manipulation",
            )

        return check.finish()

    # ==========================================================================
    # Seek pattern analysis
    # ==========================================================================

    def analyze_seek_patterns(self, events: list[ViewingEvent]) -> SecurityCheck:
        t = self.thresholds.seek
        check = SecurityCheck()
        ordered = by_client_time(events)
        seeks = [e for e in ordered if e.event_type == EventType.SEEK]
        if not seeks:
            return check

        if len(seeks) / len(ordered) > t.excessive_ratio:
            check.flag(
                "Excessive seeking behavior detected",
                t.excessive_points,
                "Flag for content skipping review",
            )

        large = [s for s in seeks if abs(s.seek_distance or 0) > t.large_seek_seconds]
        if len(large) > t.large_seek_max_count:
            check.flag(
                "Multiple large seek jumps detected",
                t.large_seek_points,
                "Review for content skipping",
            )

        forward = [s for s in seeks if (s.seek_distance or 0) > t.forward_seek_seconds]
        if len(forward) / len(seeks) > t.forward_ratio:
            check.flag(
                "Predominantly forward seeking pattern",
                t.forward_points,
                "Possible content skipping behavior",
            )

        if (
            count_rapid_pairs(seeks, t.rapid_gap_ms) > t.rapid_max_pairs
            or max_events_in_window(seeks, t.rapid_window_ms) >= t.rapid_window_events
        ):
            check.flag(
                "Rapid sequential seeking detected",
                t.rapid_points,
                "Possible automated seeking behavior",
            )

        if self.calculate_seek_suspicion_score(events) > t.suspicion_limit:
            check.flag(
                "High suspicion score for seek patterns",
                t.suspicion_points,
                "Manual review required",
            )

        return check.finish()

    def calculate_seek_suspicion_score(self, events: list[ViewingEvent]) -> int:
        """Weighted 0-100 score over seek frequency, distance, direction and speed."""
        t = self.thresholds.seek
        seeks = [e for e in by_client_time(events) if e.event_type == EventType.SEEK]
        if not seeks:
            return 0

        distances = [abs(s.seek_distance or 0) for s in seeks]
        forward = [s for s in seeks if (s.seek_distance or 0) > t.score_forward_seconds]

        score = min(t.score_count_cap, len(seeks) * t.score_count_points)
        score += min(
            t.score_distance_cap,
            sum(distances) / len(distances) / t.score_distance_divisor,
        )
        score += len(forward) / len(seeks) * t.score_forward_weight
        score += min(
            t.score_rapid_cap,
            count_rapid_pairs(seeks, t.score_rapid_gap_ms) * t.score_rapid_points,
        )
        return min(100, round(score))

    # ==========================================================================
    # Timestamp validation
    # ==========================================================================

    def validate_timestamps(
        self, events: list[ViewingEvent], now: datetime | None = None
    ) -> SecurityCheck:
        t = self.thresholds.timestamps
        check = SecurityCheck()
        if not events:
            return check

        ordered = by_client_time(events)
        for previous, current in zip(ordered, ordered[1:]):
            elapsed_ms = current.client_ms - previous.client_ms
            advanced = current.timestamp_in_video - previous.timestamp_in_video
            if elapsed_ms > 0 and advanced < 0 and abs(advanced) > t.backward_seconds:
                check.flag(
                    "Backward video time progression detected",
                    t.backward_points,
                    "Check for timestamp manipulation",
                )
            if elapsed_ms > 0 and advanced > 0:
                if advanced / (elapsed_ms / 1000) > t.max_speed:
                    check.flag(
                        "Impossible playback speed detected",
                        t.speed_points,
                        "Possible timestamp manipulation",
                    )

        server_ms = to_epoch_ms(now or datetime.now(UTC))
        if any(abs(server_ms - e.client_ms) > t.max_clock_drift_ms for e in events):
            check.flag(
                "Significant client-server time drift detected",
                t.clock_drift_points,
                "Verify client system clock",
            )

        counts: dict[datetime, int] = {}
        for event in events:
            counts[event.client_timestamp] = counts.get(event.client_timestamp, 0) + 1
        duplicated = sum(1 for count in counts.values() if count > 1)
        if duplicated > t.max_duplicates:
            check.flag(
                "Multiple duplicate timestamps detected",
                t.duplicate_points,
                "Possible batch event manipulation",
            )

        return check.finish()

    # ==========================================================================
    # Historical reliability
    # ==========================================================================

    def score_reliability(self, records: list[tuple[int, float]]) -> float:
        """Reliability (0-100) from (suspicious_count, completion_pct) history."""
        t = self.thresholds.reliability
        if not records:
            return t.no_history_score

        total = len(records)
        score = 100.0
        average_suspicious = sum(r[0] for r in records) / total
        score -= min(t.suspicious_cap, average_suspicious * t.suspicious_weight)

        completions = [r[1] for r in records]
        completion_rate = (
            sum(1 for c in completions if c >= t.completed_percentage) / total
        )
        if completion_rate > t.high_completion_rate:
            score += t.high_completion_bonus
        elif completion_rate < t.low_completion_rate:
            score -= t.low_completion_penalty

        if total >= t.consistency_min_records:
            deviation = math.sqrt(_variance(completions))
            score += min(
                t.consistency_max_bonus,
                max(0.0, t.consistency_max_bonus - deviation / t.consistency_divisor),
            )

        engaged = sum(1 for c in completions if c >= t.engaged_percentage) / total
        score += min(t.engagement_max_bonus, engaged * t.engagement_max_bonus)

        return max(0, min(100, round(score)))

    async def calculate_user_reliability_score(self, user_id: UUID) -> float:
        result = await self.session.aexecute(self._get_user_progress, [user_id])
        records = [
            (row.suspicious_activity_count or 0, row.completion_percentage or 0.0)
            for row in result
        ]
        return self.score_reliability(records)

    async def get_user_fraud_risk_profile(self, user_id: UUID) -> RiskProfile:
        t = self.thresholds.reliability
        reliability = await self.calculate_user_reliability_score(user_id)
        flag_count = await self.alerts.count_active_alerts(user_id)

        level = RiskLevel.LOW
        recommendations: list[str] = []
        if reliability < t.low_score:
            level = RiskLevel.HIGH
            recommendations += [
                "Increase monitoring frequency",
                "Require manual review of submissions",
            ]
        elif reliability < t.medium_score:
            level = RiskLevel.MEDIUM
            recommendations.append("Monitor for suspicious patterns")

        if flag_count > t.max_active_alerts:
            level = RiskLevel.HIGH
            recommendations.append("Consider temporary restrictions")

        return RiskProfile(
            risk_level=level,
            reliability_score=reliability,
            flag_count=flag_count,
            recommendations=recommendations,
        )

    # ==========================================================================
    # Real-time monitor
    # ==========================================================================

    def detect_automation_patterns(self, events: list[ViewingEvent]) -> int:
        """0-100 likelihood that events come from a script rather than a person."""
        t = self.thresholds.realtime
        ordered = by_client_time(events)
        score = 0.0

        intervals = _intervals_ms(ordered)
        if intervals and _variance(intervals) < t.regular_interval_variance:
            score += t.regular_interval_points

        pauses = sum(1 for e in ordered if e.event_type == EventType.PAUSE)
        if len(ordered) > t.no_pause_min_events and pauses == 0:
            score += t.no_pause_points

        rates = [e.playback_rate for e in ordered if e.playback_rate is not None]
        if len(rates) > t.constant_rate_min_samples and len(set(rates)) == 1:
            score += t.constant_rate_points

        visibility = sum(1 for e in ordered if e.is_tab_visible is not None)
        if len(ordered) > t.no_visibility_min_events and visibility == 0:
            score += t.no_visibility_points

        return min(100, round(score))

    async def monitor_real_time_fraud_patterns(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        recent_events: list[ViewingEvent],
        risk_profile: RiskProfile | None = None,
    ) -> RealTimeReport:
        """Escalation level for a short window of recent events."""
        t = self.thresholds.realtime
        ordered = by_client_time(recent_events)
        patterns: list[str] = []
        recommendations: list[str] = []
        level = AlertLevel.INFO

        seeks = [e for e in ordered if e.event_type == EventType.SEEK]
        run, span = longest_rapid_run(seeks, t.rapid_seek_gap_ms)
        if run > t.rapid_seek_max:
            patterns.append(f"{run} rapid seeks in {round(span)}ms")
            recommendations.append("Monitor for content skipping behavior")
            level = AlertLevel.WARNING

        speeds = [s for s in _implied_speeds(ordered) if 0 < s < t.speed_outlier]
        max_speed = max(speeds, default=1.0)
        if max_speed > t.max_speed:
            patterns.append(f"Impossible viewing speed: {max_speed:.1f}x")
            recommendations.append("Investigate possible timestamp manipulation")
            level = AlertLevel.CRITICAL

        automation = self.detect_automation_patterns(ordered)
        if automation > t.automation_limit:
            patterns.append(f"High automation probability: {automation}%")
            recommendations.append("Flag for manual review")
            level = AlertLevel.CRITICAL

        if risk_profile is None:
            risk_profile = await self.get_user_fraud_risk_profile(user_id)
        if risk_profile.risk_level == RiskLevel.HIGH:
            patterns.append("User has high historical fraud risk")
            recommendations.append("Apply enhanced monitoring")
            if level == AlertLevel.INFO:
                level = AlertLevel.WARNING

        if patterns:
            logger.info(
                "realtime_fraud_patterns",
                user_id=str(user_id),
                video_lesson_id=str(video_lesson_id),
                alert_level=level.value,
                patterns=patterns,
            )

        return RealTimeReport(
            should_alert=bool(patterns),
            alert_level=level,
            patterns=patterns,
            recommendations=recommendations,
        )

    # ==========================================================================
    # Comprehensive check
    # ==========================================================================

    async def perform_comprehensive_fraud_check(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        events: list[ViewingEvent],
        now: datetime | None = None,
    ) -> SecurityCheck:
        """Run every check and combine the weighted contributions.

        Args:
            user_id: Viewer
            video_lesson_id: Video lesson
            events: Events of the incoming batch
            now: Server time reference (defaults to current time)

        Returns:
            SecurityCheck with de-duplicated violations and a 0-100 score
        """
        w = self.thresholds.weights
        result = SecurityCheck()

        concurrent = await self.check_concurrent_sessions(user_id, video_lesson_id)
        if concurrent.has_concurrent_sessions:
            result.flag(
                "Concurrent viewing sessions detected",
                w.concurrent_points,
                "Terminate duplicate sessions",
            )

        for check, weight in (
            (self.analyze_event_sequence(events), w.sequence),
            (self.analyze_seek_patterns(events), w.seek),
            (self.validate_timestamps(events, now=now), w.timestamp),
        ):
            result.violations += check.violations
            result.recommendations += check.recommendations
            result.risk_score += check.risk_score * weight

        profile = await self.get_user_fraud_risk_profile(user_id)
        if profile.reliability_score < self.thresholds.reliability.low_score:
            result.flag(
                "User has low reliability score",
                w.low_reliability_points,
                "Increase monitoring for this user",
            )

        realtime = await self.monitor_real_time_fraud_patterns(
            user_id, video_lesson_id, events, risk_profile=profile
        )
        if realtime.should_alert:
            result.violations += realtime.patterns
            result.recommendations += realtime.recommendations
            result.risk_score += {
                AlertLevel.CRITICAL: w.critical_points,
                AlertLevel.WARNING: w.warning_points,
                AlertLevel.INFO: w.info_points,
            }[realtime.alert_level]

        result.violations = _dedupe(result.violations)
        result.recommendations = _dedupe(result.recommendations)
        result.risk_score = round(result.risk_score)
        return result.finish()

    # ==========================================================================
    # Flagging
    # ==========================================================================

    async def flag_suspicious_user(
        self,
        user_id: UUID,
        video_lesson_id: UUID | None,
        reason: str,
        evidence: dict[str, Any] | None = None,
    ) -> SecurityAlert:
        """Persist a security alert and notify administrators when severe."""
        evidence = evidence or {}
        fraud_check = evidence.get("fraud_check") or {}
        risk_score = fraud_check.get("risk_score", 0)

        if risk_score > 80:
            severity = AlertSeverity.HIGH
        elif risk_score > 50:
            severity = AlertSeverity.MEDIUM
        else:
            severity = AlertSeverity.LOW

        lowered = reason.lower()
        if "concurrent" in lowered:
            alert_type = AlertType.CONCURRENT_VIEWING
        elif "seek" in lowered:
            alert_type = AlertType.RAPID_SEEKING
        elif "speed" in lowered:
            alert_type = AlertType.IMPOSSIBLE_SPEED
        elif "automation" in lowered:
            alert_type = AlertType.AUTOMATION_DETECTED
        else:
            alert_type = AlertType.HIGH_RISK_USER

        alert = await self.alerts.create_alert(
            user_id=user_id,
            video_lesson_id=video_lesson_id,
            alert_type=alert_type,
            severity=severity,
            description=f"Suspicious activity: {reason}",
            evidence=evidence,
        )
        await self.alerts.send_alert_notifications(alert)

        logger.warning(
            "user_flagged",
            user_id=str(user_id),
            video_lesson_id=str(video_lesson_id) if video_lesson_id else None,
            reason=reason,
            severity=severity.value,
        )
        return alert

    # ==========================================================================
    # Session integrity and maintenance
    # ==========================================================================

    async def validate_session_integrity(
        self, session_token: str, now: datetime | None = None
    ) -> SecurityCheck:
        t = self.thresholds.session
        now = now or datetime.now(UTC)

        result = await self.session.aexecute(self._get_session_by_token, [session_token])
        pointer = result.one()
        row = None
        if pointer:
            result = await self.session.aexecute(
                self._get_session,
                [pointer.user_id, pointer.video_lesson_id, pointer.id],
            )
            row = result.one()
        if not row:
            check = SecurityCheck()
            check.flag("Session not found", 100, "Reject all events for this session")
            return check.finish()

        viewing_session = ViewingSession.from_row(row)
        check = SecurityCheck()

        if now - viewing_session.started_at > timedelta(hours=t.max_age_hours):
            check.flag("Session too old", t.max_age_points, "Force session renewal")

        heartbeat_age = now - viewing_session.last_heartbeat
        if viewing_session.is_active and heartbeat_age > timedelta(
            minutes=t.stale_heartbeat_minutes
        ):
            check.flag(
                "Stale heartbeat",
                t.stale_heartbeat_points,
                "Mark session as inactive",
            )

        result = await self.session.aexecute(
            self._get_session_events, [viewing_session.id]
        )
        events = [ViewingEvent.from_row(r) for r in result]
        if events:
            analysis = self.analyze_event_sequence(events)
            check.violations += analysis.violations
            check.recommendations += analysis.recommendations
            check.risk_score += analysis.risk_score * t.sequence_weight

        return check.finish()

    async def cleanup_inactive_sessions(self, now: datetime | None = None) -> int:
        """Deactivate sessions with a stale heartbeat or past the maximum age.

        Returns:
            Number of sessions deactivated
        """
        now = now or datetime.now(UTC)
        stale_before = now - timedelta(minutes=self.session_stale_minutes)
        started_before = now - timedelta(hours=self.session_max_age_hours)

        result = await self.session.aexecute(self._get_active_sessions)
        cleaned = 0
        for row in result:
            s = ViewingSession.from_row(row)
            if s.last_heartbeat < stale_before or s.started_at < started_before:
                await self.session.aexecute(
                    self._deactivate_session,
                    [now, s.user_id, s.video_lesson_id, s.id],
                )
                cleaned += 1

        logger.info("inactive_sessions_cleaned", count=cleaned)
        return cleaned

    async def refresh_reliability_scores(self, limit: int | None = None) -> int:
        """Recompute stored reliability for users with active sessions."""
        limit = self.reliability_refresh_limit if limit is None else limit
        result = await self.session.aexecute(self._get_active_sessions)
        users: list[UUID] = list(dict.fromkeys(row.user_id for row in result))

        now = datetime.now(UTC)
        for user_id in users[:limit]:
            score = await self.calculate_user_reliability_score(user_id)
            await self.session.aexecute(self._upsert_reliability, [user_id, score, now])
        return min(len(users), limit)

    async def perform_scheduled_maintenance(self) -> MaintenanceReport:
        """Cleanup sessions, auto-resolve old alerts, refresh reliability scores."""
        report = MaintenanceReport()

        report.sessions_cleaned = await self.cleanup_inactive_sessions()
        report.log.append(f"Cleaned up {report.sessions_cleaned} inactive sessions")

        report.alerts_resolved = await self.alerts.auto_resolve_old_alerts(
            self.alert_retention_days
        )
        report.log.append(f"Auto-resolved {report.alerts_resolved} old alerts")

        report.reliability_updated = await self.refresh_reliability_scores()
        report.log.append(
            f"Updated reliability scores for {report.reliability_updated} users"
        )

        logger.info(
            "scheduled_maintenance_completed",
            sessions_cleaned=report.sessions_cleaned,
            alerts_resolved=report.alerts_resolved,
            reliability_updated=report.reliability_updated,
        )
        return report
