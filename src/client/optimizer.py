"""Client-side event optimizer.

Shrinks and delivers player telemetry over an unreliable network:
- Compression to the short-keyed wire form (defaults omitted)
- Fixed-size batching and redundant event pruning
- Delivery with bounded exponential backoff that never raises
- Latency-aware batch sizing and a debounced sender

All I/O goes through an injected ``httpx.AsyncClient`` carrying the base
URL and the viewer's Authorization header.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import orjson
import structlog

from src.tracking.models import (
    COMPRESSED_DEFAULTS,
    COMPRESSED_KEYS,
    EventType,
    ViewingEvent,
    expand_event,
)


logger = structlog.get_logger(__name__)

MAX_BATCH_SIZE = 50
MIN_BATCH_SIZE = 5
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY_BASE = 1.0  # seconds, doubled per attempt
DEFAULT_LATENCY_MS = 300.0
HEARTBEAT_MIN_GAP_MS = 5000
SEEK_COLLAPSE_SECONDS = 1.0

DEFAULT_EVENTS_ENDPOINT = "/v1/video/events/batch"
DEFAULT_PING_ENDPOINT = "/v1/video/ping"

_VERBOSE_TO_SHORT = {verbose: short for short, verbose in COMPRESSED_KEYS.items()}


@dataclass
class CompressedBatch:
    events: list[dict[str, Any]]
    original_size: int
    compressed_size: int
    compression_ratio: float


@dataclass
class SendResult:
    """Outcome of ``send_events_with_retry``."""

    success: bool
    retry_count: int
    error: str | None = None


# ==============================================================================
# Pure transforms
# ==============================================================================


def event_to_payload(event: ViewingEvent) -> dict[str, Any]:
    """Verbose wire form of an event, with defaults filled in."""
    return {
        "event_type": event.event_type.value,
        "timestamp_in_video": event.timestamp_in_video,
        "client_timestamp": event.client_timestamp.isoformat(),
        "is_tab_visible": True if event.is_tab_visible is None else event.is_tab_visible,
        "playback_rate": 1.0 if event.playback_rate is None else event.playback_rate,
        "volume_level": 1.0 if event.volume_level is None else event.volume_level,
        "additional_data": event.additional_data,
    }


def _compress_payload(payload: dict[str, Any]) -> dict[str, Any]:
    compressed = {}
    for name, value in payload.items():
        if name in COMPRESSED_DEFAULTS and value == COMPRESSED_DEFAULTS[name]:
            continue
        compressed[_VERBOSE_TO_SHORT[name]] = value
    return compressed


def _json_size(data: Any) -> int:
    return len(orjson.dumps(data))


def compress_events(events: list[ViewingEvent]) -> CompressedBatch:
    """Rewrite events to short keys, dropping fields equal to their default.

    Sizes are UTF-8 JSON byte lengths; the ratio is 1.0 for empty input.
    """
    payloads = [event_to_payload(e) for e in events]
    compressed = [_compress_payload(p) for p in payloads]

    original_size = _json_size(payloads)
    compressed_size = _json_size(compressed)
    return CompressedBatch(
        events=compressed,
        original_size=original_size,
        compressed_size=compressed_size,
        compression_ratio=compressed_size / original_size if events else 1.0,
    )


def decompress_events(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Inverse of ``compress_events``: verbose payloads with defaults restored."""
    return [expand_event(event) for event in events]


def batch_events(
    events: list[ViewingEvent], max_batch_size: int = MAX_BATCH_SIZE
) -> list[list[ViewingEvent]]:
    """Chunk events in order into batches of at most ``max_batch_size``."""
    return [
        events[i : i + max_batch_size] for i in range(0, len(events), max_batch_size)
    ]


def optimize_event_queue(events: list[ViewingEvent]) -> list[ViewingEvent]:
    """Drop redundant events from a queue.

    Events are ordered by client time. A heartbeat less than 5s after the
    preceding heartbeat is dropped; consecutive seeks landing within one
    video second of each other collapse into the latest one.
    """
    optimized: list[ViewingEvent] = []
    last: ViewingEvent | None = None

    for event in sorted(events, key=lambda e: e.client_ms):
        if (
            last is not None
            and event.event_type == EventType.HEARTBEAT
            and last.event_type == EventType.HEARTBEAT
            and event.client_ms - last.client_ms < HEARTBEAT_MIN_GAP_MS
        ):
            continue

        if (
            last is not None
            and event.event_type == EventType.SEEK
            and last.event_type == EventType.SEEK
            and abs(event.timestamp_in_video - last.timestamp_in_video)
            < SEEK_COLLAPSE_SECONDS
        ):
            optimized[-1] = event
            last = event
            continue

        optimized.append(event)
        last = event

    return optimized


def calculate_optimal_batch_size(
    average_event_size: float,
    network_latency_ms: float,
    max_payload_size: int = 64 * 1024,
) -> int:
    """Batch size for the payload budget, shrunk on slow networks.

    Above 500ms latency the size is scaled by 0.7, above 200ms by 0.85.
    The result is clamped to [5, 50].
    """
    size = int(max_payload_size // max(average_event_size, 1))
    if network_latency_ms > 500:
        size = int(size * 0.7)
    elif network_latency_ms > 200:
        size = int(size * 0.85)
    return max(MIN_BATCH_SIZE, min(size, MAX_BATCH_SIZE))


def response_error_message(
    response: httpx.Response, default: str | None = None
) -> str:
    """User-facing error text from an API error body."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if isinstance(body.get(key), str):
                return body[key]
    return default or f"Client error: {response.status_code}"


# ==============================================================================
# Network
# ==============================================================================


class EventOptimizer:
    """Delivers event batches to the tracking API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str = DEFAULT_EVENTS_ENDPOINT,
        ping_endpoint: str = DEFAULT_PING_ENDPOINT,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
        retry_delay_base: float = RETRY_DELAY_BASE,
    ):
        self.client = client
        self.endpoint = endpoint
        self.ping_endpoint = ping_endpoint
        self.max_retry_attempts = max_retry_attempts
        self.retry_delay_base = retry_delay_base

    async def send_events_with_retry(
        self,
        session_token: str,
        events: list[ViewingEvent],
        endpoint: str | None = None,
    ) -> SendResult:
        """POST a compressed batch, retrying 5xx and network failures.

        4xx responses are terminal. Backoff sleeps (1s, 2s, ...) happen only
        between attempts. Never raises.
        """
        compressed = compress_events(events)
        body = {
            "session_token": session_token,
            "events": compressed.events,
            "compression_info": {
                "original_size": compressed.original_size,
                "compressed_size": compressed.compressed_size,
                "ratio": compressed.compression_ratio,
            },
        }
        url = endpoint or self.endpoint
        last_error = "Failed after all retry attempts"

        for attempt in range(self.max_retry_attempts):
            try:
                response = await self.client.post(
                    url,
                    content=orjson.dumps(body),
                    headers={"Content-Type": "application/json"},
                )
                if response.is_success:
                    return SendResult(success=True, retry_count=attempt)
                if response.is_client_error:
                    error = response_error_message(response)
                    logger.warning(
                        "event_batch_rejected",
                        status_code=response.status_code,
                        error=error,
                        events=len(events),
                    )
                    return SendResult(success=False, retry_count=attempt, error=error)
                last_error = f"Server error: {response.status_code}"
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__

            if attempt < self.max_retry_attempts - 1:
                delay = self.retry_delay_base * 2**attempt
                logger.warning(
                    "event_batch_retry",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=last_error,
                )
                await asyncio.sleep(delay)

        logger.error(
            "event_batch_delivery_failed",
            attempts=self.max_retry_attempts,
            error=last_error,
            events=len(events),
        )
        return SendResult(
            success=False, retry_count=self.max_retry_attempts, error=last_error
        )

    async def estimate_network_latency(self) -> float:
        """Round-trip time of a HEAD ping in ms; 300ms when the ping fails."""
        start = time.perf_counter()
        try:
            await self.client.head(
                self.ping_endpoint, headers={"Cache-Control": "no-cache"}
            )
        except httpx.HTTPError as e:
            logger.debug("latency_probe_failed", error=str(e))
            return DEFAULT_LATENCY_MS
        return (time.perf_counter() - start) * 1000

    def create_debounced_sender(
        self,
        session_token: str,
        delay: float = 2.0,
        on_failure: Callable[[list[ViewingEvent]], None] | None = None,
    ) -> "DebouncedSender":
        return DebouncedSender(self, session_token, delay, on_failure)


class DebouncedSender:
    """Accumulates events and sends them once after ``delay`` seconds of quiet.

    Every call restarts the quiet timer, so a burst of calls becomes one
    optimized send. A send already in progress is never cancelled by a new
    call. Undelivered events are handed to ``on_failure``.
    """

    def __init__(
        self,
        optimizer: EventOptimizer,
        session_token: str,
        delay: float = 2.0,
        on_failure: Callable[[list[ViewingEvent]], None] | None = None,
    ):
        self.optimizer = optimizer
        self.session_token = session_token
        self.delay = delay
        self.on_failure = on_failure
        self._pending: list[ViewingEvent] = []
        self._timer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def __call__(self, events: list[ViewingEvent]) -> None:
        self._pending.extend(events)
        self._cancel_timer()
        self._timer = asyncio.create_task(self._send_later(), name="debounced_sender")
        self._tasks.add(self._timer)
        self._timer.add_done_callback(self._tasks.discard)

    def _cancel_timer(self) -> None:
        # Only a task still waiting out the quiet period is cancelled
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _send_later(self) -> None:
        await asyncio.sleep(self.delay)
        if self._timer is asyncio.current_task():
            self._timer = None
        await self.flush()

    async def flush(self) -> SendResult | None:
        """Send everything pending now."""
        if not self._pending:
            return None
        events, self._pending = self._pending, []
        try:
            result = await self.optimizer.send_events_with_retry(
                self.session_token, optimize_event_queue(events)
            )
        except asyncio.CancelledError:
            self._fail(events)
            raise
        if not result.success:
            self._fail(events)
        return result

    def _fail(self, events: list[ViewingEvent]) -> None:
        if self.on_failure is not None:
            self.on_failure(events)
        else:
            self._pending[:0] = events

    async def join(self) -> None:
        """Wait for the quiet timer and every send in progress."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self, flush: bool = True) -> None:
        """Stop the timer, wait for sends in progress, optionally send the rest."""
        self._cancel_timer()
        await self.join()
        if flush:
            await self.flush()
