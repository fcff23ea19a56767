"""Watched-time reconstruction from untrusted playback events.

Pure and deterministic: the same event list always yields the same
segments and scores, which is what lets progress be recomputed from the
full history and upserted on every batch.
"""

from dataclasses import dataclass, field

from .models import EventType, TimeSegment, ViewingEvent
from .thresholds import IntegrityThresholds


@dataclass
class ProgressCalculation:
    """Result of a full progress recomputation."""

    watched_segments: list[TimeSegment]
    total_watched_seconds: float
    completion_percentage: float
    suspicious_activity_score: int
    quality_score: int


@dataclass
class ViewingPattern:
    """Aggregate counters over an event list (analytics only)."""

    play_count: int = 0
    pause_count: int = 0
    seek_count: int = 0
    heartbeat_count: int = 0
    average_playback_rate: float = 1.0
    tab_invisible_percentage: float = 0.0
    event_counts: dict[str, int] = field(default_factory=dict)


def by_client_time(events: list[ViewingEvent]) -> list[ViewingEvent]:
    return sorted(events, key=lambda e: e.client_ms)


class ProgressCalculator:
    """Segment reconstruction, suspicious-activity and quality scoring."""

    def __init__(self, thresholds: IntegrityThresholds | None = None):
        self.thresholds = thresholds or IntegrityThresholds()

    def calculate_progress(
        self, events: list[ViewingEvent], video_duration_seconds: float
    ) -> ProgressCalculation:
        """Recompute watched segments, completion and scores.

        Args:
            events: Every event for the (user, video) pair, any order
            video_duration_seconds: Video length

        Returns:
            ProgressCalculation
        """
        segments = self.calculate_watched_segments(events)
        total = self.total_watched_time(segments)
        completion = (
            min(100.0, total / video_duration_seconds * 100)
            if video_duration_seconds > 0
            else 0.0
        )
        suspicious = self.suspicious_activity_score(events)
        quality = self.quality_score(
            events, segments, video_duration_seconds, suspicious_score=suspicious
        )
        return ProgressCalculation(
            watched_segments=segments,
            total_watched_seconds=total,
            completion_percentage=completion,
            suspicious_activity_score=suspicious,
            quality_score=quality,
        )

    # ==========================================================================
    # Segments
    # ==========================================================================

    def calculate_watched_segments(
        self, events: list[ViewingEvent]
    ) -> list[TimeSegment]:
        """Walk events in video-time order and build merged watched segments.

        Video time orders the walk because client clocks are untrusted; the
        client timestamp only breaks ties.
        """
        ordered = sorted(events, key=lambda e: (e.timestamp_in_video, e.client_ms))
        raw: list[TimeSegment] = []
        start: float | None = None

        for event in ordered:
            position = event.timestamp_in_video
            kind = event.event_type

            if kind == EventType.PLAY:
                if event.is_tab_visible is False:
                    continue
                if start is not None:
                    raw.append(TimeSegment(start, position))
                start = position
            elif kind in (EventType.PAUSE, EventType.END):
                if start is not None:
                    raw.append(TimeSegment(start, position))
                    start = None
            elif kind == EventType.SEEK:
                # A seek never credits time past where playback had reached
                if start is not None:
                    raw.append(TimeSegment(start, min(start, position)))
                    start = None
            elif kind == EventType.HEARTBEAT and event.is_tab_visible is False:
                if start is not None:
                    raw.append(TimeSegment(start, position))
                    start = None

        minimum = self.thresholds.segments.min_duration_seconds
        valid = [s for s in raw if s.end > s.start and s.duration >= minimum]
        return self.merge_segments(valid)

    def merge_segments(self, segments: list[TimeSegment]) -> list[TimeSegment]:
        """Coalesce overlapping segments and those within the gap tolerance."""
        if not segments:
            return []

        gap = self.thresholds.segments.merge_gap_seconds
        ordered = sorted(segments, key=lambda s: s.start)
        merged = [ordered[0]]
        for segment in ordered[1:]:
            last = merged[-1]
            if segment.start <= last.end + gap:
                merged[-1] = TimeSegment(last.start, max(last.end, segment.end))
            else:
                merged.append(segment)
        return merged

    @staticmethod
    def total_watched_time(segments: list[TimeSegment]) -> float:
        return sum(s.duration for s in segments)

    # ==========================================================================
    # Suspicious activity score (0-100)
    # ==========================================================================

    def suspicious_activity_score(self, events: list[ViewingEvent]) -> int:
        seeks = [e for e in by_client_time(events) if e.event_type == EventType.SEEK]
        score = (
            self._rapid_seek_penalty(seeks)
            + self._large_jump_penalty(seeks)
            + self._playback_pattern_penalty(events)
            + self._tab_visibility_penalty(events)
        )
        return min(100, round(score))

    def _rapid_seek_penalty(self, seeks: list[ViewingEvent]) -> float:
        t = self.thresholds.suspicion
        penalty = 0.0
        for i in range(len(seeks) - 2):
            origin = seeks[i].client_ms
            in_window = 0
            for seek in seeks[i:]:
                if seek.client_ms - origin > t.rapid_seek_window_ms:
                    break
                in_window += 1
            if in_window >= t.rapid_seek_min_count:
                penalty += in_window * t.rapid_seek_points
        return min(t.rapid_seek_cap, penalty)

    def _large_jump_penalty(self, seeks: list[ViewingEvent]) -> float:
        t = self.thresholds.suspicion
        penalty = 0.0
        for previous, current in zip(seeks, seeks[1:]):
            jump = abs(current.timestamp_in_video - previous.timestamp_in_video)
            if jump > t.large_jump_seconds:
                penalty += min(t.large_jump_max_points, jump / t.large_jump_divisor)
        return min(t.large_jump_cap, penalty)

    def _playback_pattern_penalty(self, events: list[ViewingEvent]) -> float:
        t = self.thresholds.suspicion
        toggles = sum(
            1 for e in events if e.event_type in (EventType.PLAY, EventType.PAUSE)
        )
        penalty = 0.0
        if toggles > t.toggle_threshold:
            penalty += min(
                t.toggle_inner_cap, (toggles - t.toggle_threshold) * t.toggle_points
            )
        return min(t.toggle_cap, penalty)

    def _tab_visibility_penalty(self, events: list[ViewingEvent]) -> float:
        t = self.thresholds.suspicion
        heartbeats = [e for e in events if e.event_type == EventType.HEARTBEAT]
        if not heartbeats:
            return 0.0
        total = len(heartbeats) * t.heartbeat_weight
        invisible = (
            sum(1 for e in heartbeats if e.is_tab_visible is False) * t.heartbeat_weight
        )
        ratio = invisible / total
        penalty = ratio * t.invisible_weight if ratio > t.invisible_ratio else 0.0
        return min(t.invisible_cap, penalty)

    # ==========================================================================
    # Quality score (0-100)
    # ==========================================================================

    def quality_score(
        self,
        events: list[ViewingEvent],
        segments: list[TimeSegment],
        video_duration_seconds: float,
        suspicious_score: int | None = None,
    ) -> int:
        t = self.thresholds.quality
        if suspicious_score is None:
            suspicious_score = self.suspicious_activity_score(events)

        score = 100.0 - suspicious_score * t.suspicion_weight
        score -= self._fragmentation_penalty(segments, video_duration_seconds)

        if video_duration_seconds > 0:
            ratio = self.total_watched_time(segments) / video_duration_seconds
            if ratio < t.complete_ratio:
                score -= (t.complete_ratio - ratio) * t.incomplete_weight

        return max(0, min(100, round(score)))

    def _fragmentation_penalty(
        self, segments: list[TimeSegment], video_duration_seconds: float
    ) -> float:
        t = self.thresholds.quality
        if len(segments) <= 1:
            return 0.0
        average = self.total_watched_time(segments) / len(segments)
        expected = video_duration_seconds / t.expected_segments
        if average < expected * t.fragmentation_ratio:
            return min(t.fragmentation_cap, len(segments) * t.fragmentation_points)
        return 0.0

    # ==========================================================================
    # Suspicious activity count (stored on progress rows)
    # ==========================================================================

    def count_suspicious_activity(self, events: list[ViewingEvent]) -> int:
        """Integer count of suspicious patterns used by the grade formula."""
        t = self.thresholds.activity
        ordered = by_client_time(events)
        seeks = [e for e in ordered if e.event_type == EventType.SEEK]
        count = 0

        size = t.seek_window_size
        for i in range(len(seeks) - size + 1):
            span = seeks[i + size - 1].client_ms - seeks[i].client_ms
            if span < t.seek_window_seconds * 1000:
                count += 1

        for previous, current in zip(seeks, seeks[1:]):
            if abs(current.timestamp_in_video - previous.timestamp_in_video) > (
                t.large_jump_seconds
            ):
                count += 1

        forward = [
            e for e in seeks if (e.seek_distance or 0) > t.forward_seek_seconds
        ]
        if len(forward) > len(ordered) * t.forward_seek_event_ratio:
            count += t.forward_seek_points

        plays = [e for e in ordered if e.event_type == EventType.PLAY]
        pauses = [e for e in ordered if e.event_type == EventType.PAUSE]
        if plays and pauses:
            elapsed_ms = pauses[-1].client_ms - plays[0].client_ms
            video_seconds = pauses[-1].timestamp_in_video - plays[0].timestamp_in_video
            if elapsed_ms > 0 and video_seconds > 0:
                if video_seconds * 1000 / elapsed_ms > t.max_play_to_pause_speed:
                    count += t.speed_points

        heartbeats = [e for e in ordered if e.event_type == EventType.HEARTBEAT]
        if len(heartbeats) > t.heartbeat_without_pause and not pauses:
            count += 1

        visibility = [e for e in ordered if e.is_tab_visible is not None]
        if len(visibility) > t.always_visible_events and all(
            e.is_tab_visible for e in visibility
        ):
            count += 1

        return count

    # ==========================================================================
    # Viewing pattern analytics
    # ==========================================================================

    def analyze_viewing_pattern(self, events: list[ViewingEvent]) -> ViewingPattern:
        counts: dict[str, int] = {}
        for event in events:
            counts[event.event_type.value] = counts.get(event.event_type.value, 0) + 1

        rates = [e.playback_rate for e in events if e.playback_rate and e.playback_rate > 0]
        average_rate = round(sum(rates) / len(rates), 2) if rates else 1.0

        heartbeats = [e for e in events if e.event_type == EventType.HEARTBEAT]
        invisible = sum(1 for e in heartbeats if e.is_tab_visible is False)
        invisible_pct = round(invisible / len(heartbeats) * 100, 2) if heartbeats else 0.0

        return ViewingPattern(
            play_count=counts.get(EventType.PLAY.value, 0),
            pause_count=counts.get(EventType.PAUSE.value, 0),
            seek_count=counts.get(EventType.SEEK.value, 0),
            heartbeat_count=counts.get(EventType.HEARTBEAT.value, 0),
            average_playback_rate=average_rate,
            tab_invisible_percentage=invisible_pct,
            event_counts=counts,
        )
