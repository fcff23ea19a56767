"""Player-side tracking client.

Provides:
- Event compression, batching and delivery with retry
- Viewing session lifecycle bound to a video player
"""

from .controller import (
    ControllerOptions,
    ControllerState,
    SessionPhase,
    SessionStartError,
    TrackingSessionController,
)
from .optimizer import DebouncedSender, EventOptimizer, SendResult


__all__ = [
    "ControllerOptions",
    "ControllerState",
    "DebouncedSender",
    "EventOptimizer",
    "SendResult",
    "SessionPhase",
    "SessionStartError",
    "TrackingSessionController",
]
