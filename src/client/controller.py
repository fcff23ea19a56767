"""Tracking session controller.

Binds one video player to a server-tracked viewing session. The embedding
player calls the ``update_*`` and ``on_*`` methods; the controller turns
them into events and delivers them through the event optimizer.

Background timers (batch flush, heartbeat, inactivity check) are asyncio
tasks that live between ``start_session`` and ``end_session``/``aclose``.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import string
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import httpx
import structlog

from src.tracking.models import (
    ActivityDetails,
    EventDetails,
    EventType,
    FocusDetails,
    SeekDetails,
    ViewingEvent,
    VisibilityDetails,
)

from .optimizer import (
    DebouncedSender,
    EventOptimizer,
    calculate_optimal_batch_size,
    compress_events,
    response_error_message,
)


logger = structlog.get_logger(__name__)

CRITICAL_EVENTS = frozenset({EventType.PLAY, EventType.PAUSE, EventType.END})
ESTIMATED_EVENT_SIZE = 500  # bytes

START_ERROR_MESSAGES = {
    401: "Authentication required. Please log in again.",
    403: "Access denied. You may not have permission to view this video.",
    404: "Video lesson not found.",
}
DEFAULT_START_ERROR = "Failed to start viewing session"


class SessionPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"


class SessionStartError(Exception):
    """Session could not be started; ``message`` is safe to show the viewer."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ControllerOptions:
    """Timer intervals are in seconds."""

    batch_size: int = 10
    batch_interval: float = 5.0
    heartbeat_interval: float = 10.0
    inactivity_check_interval: float = 5.0
    tab_switch_inactivity: float = 3.0
    mouse_engagement_delta: float = 50.0
    enable_optimization: bool = True
    sessions_endpoint: str = "/v1/video/sessions"


@dataclass
class ControllerState:
    session_token: str | None = None
    is_active: bool = False
    is_tab_visible: bool = True
    current_time: float = 0.0
    duration: float = 0.0
    is_playing: bool = False
    playback_rate: float = 1.0
    volume: float = 1.0
    error: str | None = None
    network_latency: float = 0.0
    compression_ratio: float = 1.0
    phase: SessionPhase = SessionPhase.IDLE
    video_data: dict[str, Any] = field(default_factory=dict)


def generate_tab_id() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"tab_{int(time.time() * 1000)}_{suffix}"


class TrackingSessionController:
    """Owns a single viewing session's lifecycle.

    Phases go ``idle -> starting -> active -> ending -> idle``. Events are
    only recorded while a session token is held.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        video_lesson_id: UUID | str,
        options: ControllerOptions | None = None,
        optimizer: EventOptimizer | None = None,
    ):
        """Initialize controller.

        Args:
            client: HTTP client with base URL and Authorization header set
            video_lesson_id: Video lesson being watched
            options: Batching and timer settings
            optimizer: Event optimizer (defaults to one sharing ``client``)
        """
        self.client = client
        self.video_lesson_id = str(video_lesson_id)
        self.options = options or ControllerOptions()
        self.optimizer = optimizer or EventOptimizer(client)
        self.browser_tab_id = generate_tab_id()
        self.state = ControllerState()
        self.batch_size = self.options.batch_size

        self._queue: list[ViewingEvent] = []
        self._debounced: DebouncedSender | None = None
        self._tasks: list[asyncio.Task] = []
        self._last_activity = time.monotonic()

    @property
    def queued(self) -> list[ViewingEvent]:
        """Events waiting for the next flush."""
        return list(self._queue)

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start_session(self) -> str:
        """Request a session token and start the timers.

        Returns:
            Session token

        Raises:
            SessionStartError: Server refused or could not be reached
        """
        if self.state.session_token and self.state.is_active:
            return self.state.session_token

        self.state.phase = SessionPhase.STARTING
        self.state.error = None

        try:
            token, video_data = await self._request_session()
        except SessionStartError as e:
            self.state.error = e.message
            self.state.phase = SessionPhase.IDLE
            logger.warning(
                "viewing_session_start_failed",
                video_lesson_id=self.video_lesson_id,
                status_code=e.status_code,
                error=e.message,
            )
            raise

        self.state.session_token = token
        self.state.video_data = video_data
        self.state.duration = float(video_data.get("duration_seconds") or 0.0)

        if self.options.enable_optimization:
            latency = await self.optimizer.estimate_network_latency()
            self.state.network_latency = latency
            self.batch_size = calculate_optimal_batch_size(
                ESTIMATED_EVENT_SIZE, latency
            )
            self._debounced = self.optimizer.create_debounced_sender(
                token,
                delay=max(1.0, 2 * latency / 1000),
                on_failure=self._requeue,
            )

        self.state.is_active = True
        self.state.phase = SessionPhase.ACTIVE
        self._last_activity = time.monotonic()
        self._start_timers()

        logger.info(
            "viewing_session_started",
            video_lesson_id=self.video_lesson_id,
            browser_tab_id=self.browser_tab_id,
            batch_size=self.batch_size,
            network_latency_ms=round(self.state.network_latency, 2),
        )
        return token

    async def _request_session(self) -> tuple[str, dict[str, Any]]:
        try:
            response = await self.client.post(
                self.options.sessions_endpoint,
                json={
                    "video_lesson_id": self.video_lesson_id,
                    "browser_tab_id": self.browser_tab_id,
                },
            )
        except httpx.HTTPError as e:
            raise SessionStartError(DEFAULT_START_ERROR) from e

        if not response.is_success:
            message = START_ERROR_MESSAGES.get(response.status_code)
            if message is None:
                message = response_error_message(response, DEFAULT_START_ERROR)
            raise SessionStartError(message, response.status_code)

        data = response.json()
        return data["session_token"], data.get("video_data") or {}

    async def end_session(self) -> None:
        """Stop the timers, then send the terminal ``end`` event and flush."""
        token = self.state.session_token
        if not token:
            return

        self.state.phase = SessionPhase.ENDING
        await self._stop_timers()
        await self.track_event(EventType.END)
        await self._drain()

        try:
            await self.client.post(f"{self.options.sessions_endpoint}/{token}/end")
        except httpx.HTTPError as e:
            logger.warning("viewing_session_end_failed", error=str(e))

        pending = len(self._queue)
        self._reset()
        logger.info(
            "viewing_session_ended",
            video_lesson_id=self.video_lesson_id,
            undelivered_events=pending,
        )

    async def aclose(self) -> None:
        """Best-effort flush and timer teardown when the player goes away."""
        await self._stop_timers()
        if self.state.session_token:
            await self._drain()
        self._reset()

    def _reset(self) -> None:
        self.state.session_token = None
        self.state.is_active = False
        self.state.is_playing = False
        self.state.phase = SessionPhase.IDLE
        self._queue = []
        self._debounced = None

    # ==========================================================================
    # Player callbacks
    # ==========================================================================

    def update_time(self, current_time: float, duration: float | None = None) -> None:
        self.state.current_time = current_time
        if duration is not None:
            self.state.duration = duration

    async def update_play_state(self, is_playing: bool) -> None:
        self.state.is_playing = is_playing
        self._last_activity = time.monotonic()
        await self.track_event(EventType.PLAY if is_playing else EventType.PAUSE)

    async def update_seek(self, from_time: float, to_time: float) -> None:
        self.state.current_time = to_time
        await self.track_event(
            EventType.SEEK,
            SeekDetails(previous_time=from_time, seek_distance=to_time - from_time),
        )

    def update_playback_rate(self, rate: float) -> None:
        self.state.playback_rate = rate

    def update_volume(self, volume: float) -> None:
        self.state.volume = volume

    async def on_visibility_change(self, is_visible: bool) -> None:
        was_visible = self.state.is_tab_visible
        self.state.is_tab_visible = is_visible
        await self.track_event(
            EventType.HEARTBEAT,
            VisibilityDetails(
                was_visible=was_visible,
                now_visible=is_visible,
                visibility_state="visible" if is_visible else "hidden",
            ),
        )

    async def on_focus(self) -> None:
        self._last_activity = time.monotonic()
        await self.track_event(EventType.HEARTBEAT, FocusDetails(focused=True))

    async def on_blur(self) -> None:
        await self.track_event(EventType.HEARTBEAT, FocusDetails(focused=False))

    def on_user_activity(self) -> None:
        """Keyboard, click or scroll activity."""
        self._last_activity = time.monotonic()

    async def on_mouse_move(self, movement_x: float, movement_y: float) -> None:
        """Large pointer movement while playing counts as engagement."""
        self.on_user_activity()
        threshold = self.options.mouse_engagement_delta
        if self.state.is_playing and (
            abs(movement_x) > threshold or abs(movement_y) > threshold
        ):
            await self.track_event(
                EventType.HEARTBEAT,
                ActivityDetails(
                    signal="user_activity",
                    movement_x=movement_x,
                    movement_y=movement_y,
                ),
            )

    async def check_inactivity(self) -> bool:
        """Emit a tab-switch signal after a quiet period during playback.

        Returns:
            True if a signal was emitted
        """
        inactive = time.monotonic() - self._last_activity
        if not self.state.is_playing or inactive <= self.options.tab_switch_inactivity:
            return False

        await self.track_event(
            EventType.HEARTBEAT,
            ActivityDetails(
                signal="potential_tab_switch",
                inactive_duration_ms=round(inactive * 1000, 2),
                was_playing=True,
            ),
        )
        return True

    # ==========================================================================
    # Event queue
    # ==========================================================================

    def _make_event(
        self, event_type: EventType, details: EventDetails | None = None
    ) -> ViewingEvent:
        return ViewingEvent(
            event_type=event_type,
            timestamp_in_video=self.state.current_time,
            client_timestamp=datetime.now(UTC),
            is_tab_visible=self.state.is_tab_visible,
            playback_rate=self.state.playback_rate,
            volume_level=self.state.volume,
            details=details,
        )

    async def track_event(
        self, event_type: EventType, details: EventDetails | None = None
    ) -> ViewingEvent | None:
        """Record an event for delivery.

        Play, pause and end are flushed immediately. Other events go to the
        debounced sender when optimization is on, otherwise to the batch
        queue.
        """
        if not self.state.session_token:
            return None

        event = self._make_event(event_type, details)

        if event_type in CRITICAL_EVENTS:
            self._queue.append(event)
            await self.flush()
        elif self._debounced is not None:
            self._debounced([event])
        else:
            self._queue.append(event)
            if len(self._queue) >= self.batch_size:
                await self.flush()
        return event

    def _requeue(self, events: list[ViewingEvent]) -> None:
        self._queue[:0] = events

    async def flush(self) -> bool:
        """Send the current queue snapshot.

        The snapshot is taken before awaiting, so concurrent flushes never
        send the same event twice. Undelivered events go back to the front
        of the queue.

        Returns:
            True if the snapshot was delivered (or nothing was queued)
        """
        token = self.state.session_token
        if not token or not self._queue:
            return True

        events, self._queue = self._queue, []
        try:
            result = await self.optimizer.send_events_with_retry(token, events)
        except asyncio.CancelledError:
            self._requeue(events)
            raise

        if not result.success:
            self._requeue(events)
            logger.error(
                "viewing_events_requeued",
                events=len(events),
                error=result.error,
            )
            return False

        self.state.compression_ratio = compress_events(events).compression_ratio
        logger.debug(
            "viewing_events_flushed",
            events=len(events),
            retry_count=result.retry_count,
        )
        return True

    async def _drain(self) -> None:
        if self._debounced is not None:
            await self._debounced.aclose(flush=True)
        await self.flush()

    # ==========================================================================
    # Timers
    # ==========================================================================

    def _start_timers(self) -> None:
        self._spawn(self._batch_loop(), "tracking_batch_timer")
        self._spawn(self._heartbeat_loop(), "tracking_heartbeat_timer")
        self._spawn(self._inactivity_loop(), "tracking_inactivity_timer")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def _stop_timers(self) -> None:
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _batch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.batch_interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("tracking_batch_timer_error")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.heartbeat_interval)
            if not (self.state.is_playing and self.state.is_tab_visible):
                continue
            try:
                await self.track_event(EventType.HEARTBEAT)
            except Exception:
                logger.exception("tracking_heartbeat_timer_error")

    async def _inactivity_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.inactivity_check_interval)
            try:
                await self.check_inactivity()
            except Exception:
                logger.exception("tracking_inactivity_timer_error")
