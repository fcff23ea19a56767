"""Heuristic thresholds, weights and caps for viewing integrity checks.

Every tunable number used by the progress calculator, the fraud service and
the grade formula lives here. The application builds one instance from
settings and injects it; tests override single values with ``model_copy``.

None of the weights are derived from a statistical model. They are tuning
knobs, grouped by the check that reads them.
"""

from pydantic import BaseModel, ConfigDict


class _Group(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ==============================================================================
# Progress Calculator
# ==============================================================================


class SegmentThresholds(_Group):
    """Watched-segment reconstruction."""

    min_duration_seconds: float = 0.1
    merge_gap_seconds: float = 2.0


class SuspicionThresholds(_Group):
    """Additive suspicious-activity score (0-100)."""

    rapid_seek_window_ms: float = 10_000
    rapid_seek_min_count: int = 3
    rapid_seek_points: float = 2
    rapid_seek_cap: float = 30

    large_jump_seconds: float = 30
    large_jump_divisor: float = 10
    large_jump_max_points: float = 10
    large_jump_cap: float = 25

    toggle_threshold: int = 20
    toggle_points: float = 0.5
    toggle_inner_cap: float = 15
    toggle_cap: float = 20

    heartbeat_weight: float = 10
    invisible_ratio: float = 0.3
    invisible_weight: float = 25
    invisible_cap: float = 25


class QualityThresholds(_Group):
    """Quality score deductions."""

    suspicion_weight: float = 0.5
    expected_segments: int = 5
    fragmentation_ratio: float = 0.3
    fragmentation_points: float = 0.5
    fragmentation_cap: float = 20
    complete_ratio: float = 0.8
    incomplete_weight: float = 50


class ActivityCountThresholds(_Group):
    """Integer suspicious-activity count stored on progress rows."""

    seek_window_seconds: float = 10
    seek_window_size: int = 3
    large_jump_seconds: float = 30
    forward_seek_seconds: float = 10
    forward_seek_event_ratio: float = 0.3
    forward_seek_points: int = 2
    max_play_to_pause_speed: float = 5
    speed_points: int = 3
    heartbeat_without_pause: int = 20
    always_visible_events: int = 10


class GradeThresholds(_Group):
    """Grade contribution penalties."""

    suspicious_points: float = 2
    suspicious_cap: float = 20
    risk_weight: float = 0.3
    risk_cap: float = 30


# ==============================================================================
# Fraud Service
# ==============================================================================


class EventValidationThresholds(_Group):
    """Single-event validation."""

    max_clock_drift_ms: float = 5 * 60 * 1000
    clock_drift_points: float = 20
    negative_timestamp_points: float = 30
    max_playback_rate: float = 16
    playback_rate_points: float = 15
    volume_points: float = 5
    max_seek_distance: float = 300
    seek_distance_points: float = 10


class SequenceThresholds(_Group):
    """Event-sequence analysis."""

    max_speed: float = 20
    impossible_speed_points: float = 25
    seek_ratio: float = 0.5
    seek_ratio_points: float = 20
    rapid_gap_ms: float = 1000
    rapid_max_pairs: int = 5
    rapid_window_ms: float = 1000
    rapid_window_events: int = 6
    rapid_points: float = 15
    missing_heartbeat_points: float = 30
    consistent_visibility_min_events: int = 10
    consistent_visibility_points: float = 10


class SeekThresholds(_Group):
    """Seek-pattern analysis and the internal seek suspicion score."""

    excessive_ratio: float = 0.4
    excessive_points: float = 25
    large_seek_seconds: float = 60
    large_seek_max_count: int = 3
    large_seek_points: float = 20
    forward_seek_seconds: float = 10
    forward_ratio: float = 0.8
    forward_points: float = 15
    rapid_gap_ms: float = 5000
    rapid_max_pairs: int = 5
    rapid_window_ms: float = 3000
    rapid_window_events: int = 6
    rapid_points: float = 20
    suspicion_limit: float = 70
    suspicion_points: float = 30

    score_count_points: float = 2
    score_count_cap: float = 30
    score_distance_divisor: float = 10
    score_distance_cap: float = 25
    score_forward_seconds: float = 5
    score_forward_weight: float = 20
    score_rapid_gap_ms: float = 3000
    score_rapid_points: float = 5
    score_rapid_cap: float = 25


class TimestampThresholds(_Group):
    """Timestamp consistency."""

    backward_seconds: float = 5
    backward_points: float = 15
    max_speed: float = 10
    speed_points: float = 25
    max_clock_drift_ms: float = 10 * 60 * 1000
    clock_drift_points: float = 10
    max_duplicates: int = 2
    duplicate_points: float = 20


class ReliabilityThresholds(_Group):
    """Historical per-user reliability score."""

    no_history_score: float = 50
    suspicious_weight: float = 5
    suspicious_cap: float = 40
    completed_percentage: float = 80
    high_completion_rate: float = 0.8
    high_completion_bonus: float = 10
    low_completion_rate: float = 0.3
    low_completion_penalty: float = 20
    consistency_min_records: int = 3
    consistency_max_bonus: float = 10
    consistency_divisor: float = 10
    engaged_percentage: float = 95
    engagement_max_bonus: float = 10
    low_score: float = 30
    medium_score: float = 60
    max_active_alerts: int = 3


class RealTimeThresholds(_Group):
    """Real-time pattern monitor and automation score."""

    rapid_seek_gap_ms: float = 2000
    rapid_seek_max: int = 5
    max_speed: float = 10
    speed_outlier: float = 50
    automation_limit: float = 70
    regular_interval_variance: float = 100
    regular_interval_points: float = 30
    no_pause_min_events: int = 20
    no_pause_points: float = 25
    constant_rate_min_samples: int = 5
    constant_rate_points: float = 20
    no_visibility_min_events: int = 10
    no_visibility_points: float = 25


class RiskWeights(_Group):
    """Weights combining each check into the comprehensive risk score."""

    concurrent_points: float = 30
    sequence: float = 0.7
    seek: float = 0.5
    timestamp: float = 0.6
    low_reliability_points: float = 20
    info_points: float = 5
    warning_points: float = 15
    critical_points: float = 25


class SessionIntegrityThresholds(_Group):
    """Session integrity validation."""

    max_age_hours: float = 8
    max_age_points: float = 30
    stale_heartbeat_minutes: float = 5
    stale_heartbeat_points: float = 20
    sequence_weight: float = 0.5


class IntegrityThresholds(_Group):
    """All viewing-integrity heuristics in one injectable object."""

    segments: SegmentThresholds = SegmentThresholds()
    suspicion: SuspicionThresholds = SuspicionThresholds()
    quality: QualityThresholds = QualityThresholds()
    activity: ActivityCountThresholds = ActivityCountThresholds()
    grade: GradeThresholds = GradeThresholds()
    event: EventValidationThresholds = EventValidationThresholds()
    sequence: SequenceThresholds = SequenceThresholds()
    seek: SeekThresholds = SeekThresholds()
    timestamps: TimestampThresholds = TimestampThresholds()
    reliability: ReliabilityThresholds = ReliabilityThresholds()
    realtime: RealTimeThresholds = RealTimeThresholds()
    weights: RiskWeights = RiskWeights()
    session: SessionIntegrityThresholds = SessionIntegrityThresholds()
