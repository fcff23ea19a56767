"""Database models for video viewing integrity.

Cassandra table definitions for:
- Video lessons: Duration and completion requirement per video
- Viewing sessions: One browser tab watching one video lesson
- Viewing events: Append-only playback telemetry per session
- Video progress: Recomputed watched time and grade contribution
- Security alerts: Persisted fraud flags for administrators

Every row read goes through an entity ``from_row`` so malformed data fails
at the persistence boundary instead of deep inside the heuristics.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

import orjson


class EventType(str, Enum):
    """Playback event types reported by the player."""

    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    HEARTBEAT = "heartbeat"
    END = "end"


class AlertType(str, Enum):
    """Security alert categories."""

    CONCURRENT_VIEWING = "concurrent_viewing"
    RAPID_SEEKING = "rapid_seeking"
    IMPOSSIBLE_SPEED = "impossible_speed"
    AUTOMATION_DETECTED = "automation_detected"
    HIGH_RISK_USER = "high_risk_user"


class AlertSeverity(str, Enum):
    """Security alert severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Security alert review status."""

    ACTIVE = "active"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


# ==============================================================================
# Helper Functions
# ==============================================================================


def ensure_utc_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is UTC-aware (Cassandra returns naive datetimes)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def to_epoch_ms(dt: datetime) -> float:
    """Convert a datetime to epoch milliseconds."""
    return dt.timestamp() * 1000


# ==============================================================================
# Event Details (additional_data variants)
# ==============================================================================


@dataclass(frozen=True)
class SeekDetails:
    """Where a seek started and how far it jumped (seconds, signed)."""

    previous_time: float | None = None
    seek_distance: float | None = None

    kind = "seek"


@dataclass(frozen=True)
class VisibilityDetails:
    """Tab visibility transition."""

    was_visible: bool | None = None
    now_visible: bool | None = None
    visibility_state: str | None = None

    kind = "visibility"


@dataclass(frozen=True)
class FocusDetails:
    """Window focus/blur transition."""

    focused: bool

    kind = "focus"


@dataclass(frozen=True)
class ActivityDetails:
    """Heuristic engagement signal (tab switch guess or mouse movement)."""

    signal: str
    inactive_duration_ms: float | None = None
    was_playing: bool | None = None
    movement_x: float | None = None
    movement_y: float | None = None

    kind = "activity"


@dataclass(frozen=True)
class OpaqueDetails:
    """Unrecognized payload kept verbatim for forward compatibility."""

    payload: dict[str, Any] = field(default_factory=dict)

    kind = "opaque"


EventDetails = (
    SeekDetails | VisibilityDetails | FocusDetails | ActivityDetails | OpaqueDetails
)


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


def parse_event_details(data: dict[str, Any] | None) -> EventDetails | None:
    """Build the typed variant for an ``additional_data`` mapping.

    Payloads carrying an explicit ``kind`` are decoded directly. Older
    payloads without one are recognized by their keys; anything else is
    kept as ``OpaqueDetails``.
    """
    if not data:
        return None

    kind = data.get("kind")
    if kind == SeekDetails.kind or (
        kind is None
        and ("seek_distance" in data or "seek_delta" in data or "previous_time" in data)
    ):
        distance = data.get("seek_distance", data.get("seek_delta"))
        return SeekDetails(
            previous_time=_opt_float(data.get("previous_time")),
            seek_distance=_opt_float(distance),
        )
    if kind == VisibilityDetails.kind or (
        kind is None and ("visibility_changed" in data or "now_visible" in data)
    ):
        return VisibilityDetails(
            was_visible=data.get("was_visible"),
            now_visible=data.get("now_visible"),
            visibility_state=data.get("visibility_state"),
        )
    if kind == FocusDetails.kind or (
        kind is None and ("window_focus_changed" in data or "focused" in data)
    ):
        return FocusDetails(focused=bool(data.get("focused")))
    if kind == ActivityDetails.kind or (
        kind is None and ("potential_tab_switch" in data or "user_activity" in data)
    ):
        if "signal" in data:
            signal = data["signal"]
        elif data.get("potential_tab_switch"):
            signal = "potential_tab_switch"
        else:
            signal = str(data.get("user_activity"))
        delta = data.get("movement_delta") or {}
        return ActivityDetails(
            signal=signal,
            inactive_duration_ms=_opt_float(
                data.get("inactive_duration_ms", data.get("inactive_duration"))
            ),
            was_playing=data.get("was_playing"),
            movement_x=_opt_float(data.get("movement_x", delta.get("x"))),
            movement_y=_opt_float(data.get("movement_y", delta.get("y"))),
        )

    payload = data.get("payload", data) if kind == OpaqueDetails.kind else data
    return OpaqueDetails(payload=dict(payload))


def details_to_dict(details: EventDetails | None) -> dict[str, Any]:
    """Serialize a details variant, tagging it with its ``kind``."""
    if details is None:
        return {}
    if isinstance(details, OpaqueDetails):
        return dict(details.payload)
    data = {k: v for k, v in details.__dict__.items() if v is not None}
    data["kind"] = details.kind
    return data


# ==============================================================================
# Compressed Wire Format
# ==============================================================================

# Short key -> verbose field of the event batch payload
COMPRESSED_KEYS: dict[str, str] = {
    "t": "event_type",
    "ts": "timestamp_in_video",
    "ct": "client_timestamp",
    "v": "is_tab_visible",
    "r": "playback_rate",
    "vol": "volume_level",
    "d": "additional_data",
}

# Values omitted from a compressed event when equal to these
COMPRESSED_DEFAULTS: dict[str, Any] = {
    "is_tab_visible": True,
    "playback_rate": 1.0,
    "volume_level": 1.0,
    "additional_data": {},
}


def is_compressed_event(data: dict[str, Any]) -> bool:
    """True when the mapping uses the short-keyed event form."""
    return "t" in data and "event_type" not in data


def expand_event(data: dict[str, Any]) -> dict[str, Any]:
    """Rewrite a short-keyed event to verbose keys, filling omitted defaults."""
    expanded = {COMPRESSED_KEYS.get(key, key): value for key, value in data.items()}
    for name, default in COMPRESSED_DEFAULTS.items():
        expanded.setdefault(name, dict(default) if isinstance(default, dict) else default)
    return expanded


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

VIDEO_LESSONS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_lessons (
    id UUID PRIMARY KEY,
    lesson_id UUID,
    title TEXT,
    video_provider_id TEXT,
    duration_seconds DOUBLE,
    required_completion_percentage DOUBLE,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
)
"""

# Partition by (user, video) so the concurrent-session check and the
# progress recomputation read a single partition
VIEWING_SESSIONS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_viewing_sessions (
    user_id UUID,
    video_lesson_id UUID,
    id UUID,
    session_token TEXT,
    started_at TIMESTAMP,
    last_heartbeat TIMESTAMP,
    is_active BOOLEAN,
    browser_tab_id TEXT,
    user_agent TEXT,
    ip_address TEXT,
    PRIMARY KEY ((user_id, video_lesson_id), id)
)
"""

# Index for the cleanup sweep (maintenance only)
VIEWING_SESSIONS_ACTIVE_INDEX_CQL = """
CREATE INDEX IF NOT EXISTS video_viewing_sessions_active_idx
ON {keyspace}.video_viewing_sessions (is_active)
"""

# Lookup: session by token (event ingestion entry point)
SESSIONS_BY_TOKEN_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_sessions_by_token (
    session_token TEXT PRIMARY KEY,
    id UUID,
    user_id UUID,
    video_lesson_id UUID
)
"""

# Append-only, clustered by client time within a session
VIEWING_EVENTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_viewing_events (
    session_id UUID,
    client_timestamp TIMESTAMP,
    id UUID,
    event_type TEXT,
    timestamp_in_video DOUBLE,
    server_timestamp TIMESTAMP,
    is_tab_visible BOOLEAN,
    playback_rate DOUBLE,
    volume_level DOUBLE,
    additional_data TEXT,
    PRIMARY KEY (session_id, client_timestamp, id)
) WITH CLUSTERING ORDER BY (client_timestamp ASC, id ASC)
"""

VIDEO_PROGRESS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_progress (
    user_id UUID,
    video_lesson_id UUID,
    total_watched_seconds DOUBLE,
    completion_percentage DOUBLE,
    is_completed BOOLEAN,
    first_watch_started TIMESTAMP,
    last_watch_updated TIMESTAMP,
    suspicious_activity_count INT,
    grade_contribution DOUBLE,
    PRIMARY KEY (user_id, video_lesson_id)
)
"""

SECURITY_ALERTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.video_security_alerts (
    user_id UUID,
    id TIMEUUID,
    video_lesson_id UUID,
    alert_type TEXT,
    severity TEXT,
    description TEXT,
    evidence TEXT,
    status TEXT,
    created_at TIMESTAMP,
    reviewed_at TIMESTAMP,
    reviewed_by UUID,
    notes TEXT,
    PRIMARY KEY (user_id, id)
) WITH CLUSTERING ORDER BY (id DESC)
"""

SECURITY_ALERTS_STATUS_INDEX_CQL = """
CREATE INDEX IF NOT EXISTS video_security_alerts_status_idx
ON {keyspace}.video_security_alerts (status)
"""

USER_RELIABILITY_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.user_reliability_scores (
    user_id UUID PRIMARY KEY,
    score DOUBLE,
    updated_at TIMESTAMP
)
"""

# All CQL statements for table setup
TRACKING_TABLES_CQL = [
    VIDEO_LESSONS_TABLE_CQL,
    VIEWING_SESSIONS_TABLE_CQL,
    VIEWING_SESSIONS_ACTIVE_INDEX_CQL,
    SESSIONS_BY_TOKEN_TABLE_CQL,
    VIEWING_EVENTS_TABLE_CQL,
    VIDEO_PROGRESS_TABLE_CQL,
    SECURITY_ALERTS_TABLE_CQL,
    SECURITY_ALERTS_STATUS_INDEX_CQL,
    USER_RELIABILITY_TABLE_CQL,
]


# ==============================================================================
# Entity Classes
# ==============================================================================


@dataclass(frozen=True)
class TimeSegment:
    """A watched ``[start, end)`` interval in video seconds (derived, not stored)."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


class VideoLesson:
    """Video lesson metadata.

    Attributes:
        id: Video lesson UUID
        lesson_id: Owning course lesson UUID
        title: Display title
        video_provider_id: Identifier at the video host
        duration_seconds: Video length
        required_completion_percentage: Completion needed for full credit
    """

    def __init__(
        self,
        id: UUID,
        title: str,
        duration_seconds: float,
        lesson_id: UUID | None = None,
        video_provider_id: str | None = None,
        required_completion_percentage: float = 80.0,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ):
        self.id = id
        self.lesson_id = lesson_id
        self.title = title
        self.video_provider_id = video_provider_id
        self.duration_seconds = float(duration_seconds)
        self.required_completion_percentage = float(required_completion_percentage)
        self.created_at = ensure_utc_aware(created_at) or datetime.now(UTC)
        self.updated_at = ensure_utc_aware(updated_at) or self.created_at

    @classmethod
    def from_row(cls, row: Any) -> "VideoLesson":
        """Create VideoLesson instance from Cassandra row."""
        required = row.required_completion_percentage
        return cls(
            id=row.id,
            lesson_id=row.lesson_id,
            title=row.title or "",
            video_provider_id=row.video_provider_id,
            duration_seconds=row.duration_seconds or 0.0,
            required_completion_percentage=80.0 if required is None else required,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "lesson_id": self.lesson_id,
            "title": self.title,
            "video_provider_id": self.video_provider_id,
            "duration_seconds": self.duration_seconds,
            "required_completion_percentage": self.required_completion_percentage,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"<VideoLesson {self.id} {self.title!r} {self.duration_seconds}s>"


class ViewingSession:
    """One browser tab's attempt to watch one video lesson.

    Attributes:
        id: Session UUID
        user_id: Viewer UUID
        video_lesson_id: Video lesson UUID
        session_token: Opaque handle used to submit events
        started_at: Creation time
        last_heartbeat: Last batch flush time
        is_active: False once ended or reaped
        browser_tab_id: Client tab identifier
        user_agent: Client user agent
        ip_address: Client IP
    """

    def __init__(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        session_token: str,
        id: UUID | None = None,
        started_at: datetime | None = None,
        last_heartbeat: datetime | None = None,
        is_active: bool = True,
        browser_tab_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ):
        self.id = id or uuid4()
        self.user_id = user_id
        self.video_lesson_id = video_lesson_id
        self.session_token = session_token
        self.started_at = ensure_utc_aware(started_at) or datetime.now(UTC)
        self.last_heartbeat = ensure_utc_aware(last_heartbeat) or self.started_at
        self.is_active = is_active
        self.browser_tab_id = browser_tab_id
        self.user_agent = user_agent
        self.ip_address = ip_address

    @classmethod
    def from_row(cls, row: Any) -> "ViewingSession":
        """Create ViewingSession instance from Cassandra row."""
        return cls(
            id=row.id,
            user_id=row.user_id,
            video_lesson_id=row.video_lesson_id,
            session_token=row.session_token,
            started_at=row.started_at,
            last_heartbeat=row.last_heartbeat,
            is_active=bool(row.is_active),
            browser_tab_id=row.browser_tab_id,
            user_agent=row.user_agent,
            ip_address=row.ip_address,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (token excluded)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "video_lesson_id": self.video_lesson_id,
            "started_at": self.started_at,
            "last_heartbeat": self.last_heartbeat,
            "is_active": self.is_active,
            "browser_tab_id": self.browser_tab_id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
        }

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return f"<ViewingSession {self.id} user={self.user_id} {state}>"


class ViewingEvent:
    """One discrete playback occurrence. Immutable once stored.

    ``is_tab_visible``, ``playback_rate`` and ``volume_level`` stay ``None``
    when the client did not report them; some heuristics count only the
    events that carry a value.
    """

    def __init__(
        self,
        event_type: EventType | str,
        timestamp_in_video: float,
        client_timestamp: datetime | None = None,
        session_id: UUID | None = None,
        id: UUID | None = None,
        server_timestamp: datetime | None = None,
        is_tab_visible: bool | None = None,
        playback_rate: float | None = None,
        volume_level: float | None = None,
        details: EventDetails | None = None,
    ):
        self.id = id or uuid4()
        self.session_id = session_id
        self.event_type = EventType(event_type)
        self.timestamp_in_video = float(timestamp_in_video)
        self.client_timestamp = ensure_utc_aware(client_timestamp) or datetime.now(UTC)
        self.server_timestamp = ensure_utc_aware(server_timestamp)
        self.is_tab_visible = is_tab_visible
        self.playback_rate = playback_rate
        self.volume_level = volume_level
        self.details = details

    @property
    def client_ms(self) -> float:
        """Client timestamp in epoch milliseconds."""
        return to_epoch_ms(self.client_timestamp)

    @property
    def seek_distance(self) -> float | None:
        """Signed seek distance when the event carries seek details."""
        if isinstance(self.details, SeekDetails):
            return self.details.seek_distance
        return None

    @property
    def additional_data(self) -> dict[str, Any]:
        return details_to_dict(self.details)

    @classmethod
    def from_row(cls, row: Any) -> "ViewingEvent":
        """Create ViewingEvent instance from Cassandra row."""
        raw = orjson.loads(row.additional_data) if row.additional_data else None
        return cls(
            id=row.id,
            session_id=row.session_id,
            event_type=row.event_type,
            timestamp_in_video=row.timestamp_in_video,
            client_timestamp=row.client_timestamp,
            server_timestamp=row.server_timestamp,
            is_tab_visible=row.is_tab_visible,
            playback_rate=row.playback_rate,
            volume_level=row.volume_level,
            details=parse_event_details(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (verbose event schema)."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "timestamp_in_video": self.timestamp_in_video,
            "client_timestamp": self.client_timestamp,
            "server_timestamp": self.server_timestamp,
            "is_tab_visible": self.is_tab_visible,
            "playback_rate": self.playback_rate,
            "volume_level": self.volume_level,
            "additional_data": self.additional_data,
        }

    def __repr__(self) -> str:
        return f"<ViewingEvent {self.event_type.value}@{self.timestamp_in_video}>"


class VideoProgress:
    """Recomputed progress for one (user, video lesson).

    Attributes:
        user_id: Viewer UUID
        video_lesson_id: Video lesson UUID
        total_watched_seconds: Sum of merged watched segments
        completion_percentage: Watched share of the video (0-100)
        is_completed: Completion reached the lesson requirement
        first_watch_started: Earliest reported event time
        last_watch_updated: Last recomputation time
        suspicious_activity_count: Integer count of suspicious patterns
        grade_contribution: Penalized completion used for grading (0-100)
    """

    def __init__(
        self,
        user_id: UUID,
        video_lesson_id: UUID,
        total_watched_seconds: float = 0.0,
        completion_percentage: float = 0.0,
        is_completed: bool = False,
        first_watch_started: datetime | None = None,
        last_watch_updated: datetime | None = None,
        suspicious_activity_count: int = 0,
        grade_contribution: float = 0.0,
    ):
        self.user_id = user_id
        self.video_lesson_id = video_lesson_id
        self.total_watched_seconds = float(total_watched_seconds)
        self.completion_percentage = float(completion_percentage)
        self.is_completed = is_completed
        self.first_watch_started = ensure_utc_aware(first_watch_started)
        self.last_watch_updated = ensure_utc_aware(last_watch_updated) or datetime.now(
            UTC
        )
        self.suspicious_activity_count = suspicious_activity_count
        self.grade_contribution = float(grade_contribution)

    @classmethod
    def from_row(cls, row: Any) -> "VideoProgress":
        """Create VideoProgress instance from Cassandra row."""
        return cls(
            user_id=row.user_id,
            video_lesson_id=row.video_lesson_id,
            total_watched_seconds=row.total_watched_seconds or 0.0,
            completion_percentage=row.completion_percentage or 0.0,
            is_completed=bool(row.is_completed),
            first_watch_started=row.first_watch_started,
            last_watch_updated=row.last_watch_updated,
            suspicious_activity_count=row.suspicious_activity_count or 0,
            grade_contribution=row.grade_contribution or 0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "video_lesson_id": self.video_lesson_id,
            "total_watched_seconds": self.total_watched_seconds,
            "completion_percentage": self.completion_percentage,
            "is_completed": self.is_completed,
            "first_watch_started": self.first_watch_started,
            "last_watch_updated": self.last_watch_updated,
            "suspicious_activity_count": self.suspicious_activity_count,
            "grade_contribution": self.grade_contribution,
        }

    def __repr__(self) -> str:
        return (
            f"<VideoProgress user={self.user_id} video={self.video_lesson_id} "
            f"{self.completion_percentage}% grade={self.grade_contribution}>"
        )


class SecurityAlert:
    """Persisted fraud flag awaiting administrator review."""

    def __init__(
        self,
        id: UUID,
        user_id: UUID,
        alert_type: AlertType | str,
        severity: AlertSeverity | str,
        description: str,
        video_lesson_id: UUID | None = None,
        evidence: dict[str, Any] | None = None,
        status: AlertStatus | str = AlertStatus.ACTIVE,
        created_at: datetime | None = None,
        reviewed_at: datetime | None = None,
        reviewed_by: UUID | None = None,
        notes: str | None = None,
    ):
        self.id = id
        self.user_id = user_id
        self.video_lesson_id = video_lesson_id
        self.alert_type = AlertType(alert_type)
        self.severity = AlertSeverity(severity)
        self.description = description
        self.evidence = evidence or {}
        self.status = AlertStatus(status)
        self.created_at = ensure_utc_aware(created_at) or datetime.now(UTC)
        self.reviewed_at = ensure_utc_aware(reviewed_at)
        self.reviewed_by = reviewed_by
        self.notes = notes

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Any) -> "SecurityAlert":
        """Create SecurityAlert instance from Cassandra row."""
        return cls(
            id=row.id,
            user_id=row.user_id,
            video_lesson_id=row.video_lesson_id,
            alert_type=row.alert_type,
            severity=row.severity,
            description=row.description or "",
            evidence=orjson.loads(row.evidence) if row.evidence else {},
            status=row.status or AlertStatus.ACTIVE,
            created_at=row.created_at,
            reviewed_at=row.reviewed_at,
            reviewed_by=row.reviewed_by,
            notes=row.notes,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "video_lesson_id": self.video_lesson_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "evidence": self.evidence,
            "status": self.status.value,
            "created_at": self.created_at,
            "reviewed_at": self.reviewed_at,
            "reviewed_by": self.reviewed_by,
            "notes": self.notes,
        }

    def __repr__(self) -> str:
        return (
            f"<SecurityAlert {self.alert_type.value} {self.severity.value} "
            f"user={self.user_id} {self.status.value}>"
        )
