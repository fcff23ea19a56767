"""Video viewing integrity.

Session tracking, fraud detection and grade-relevant progress for video
lessons.
"""

from .models import EventType, ViewingEvent
from .thresholds import IntegrityThresholds


__all__ = ["EventType", "IntegrityThresholds", "ViewingEvent"]
