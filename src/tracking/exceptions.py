"""Tracking domain errors.

Hard failures only. Fraud findings are never raised; they travel as risk
scores and alerts.
"""


class TrackingError(Exception):
    """Base tracking error."""

    def __init__(self, message: str, code: str = "tracking_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class SessionNotFoundError(TrackingError):
    """Unknown or expired session token."""

    def __init__(self, message: str = "Session not found"):
        super().__init__(message, "session_not_found")


class SessionForbiddenError(TrackingError):
    """Session belongs to another user."""

    def __init__(self, message: str = "Session belongs to another user"):
        super().__init__(message, "session_forbidden")


class SessionInactiveError(TrackingError):
    """Session was ended or reaped."""

    def __init__(self, message: str = "Session is not active"):
        super().__init__(message, "session_inactive")


class VideoLessonNotFoundError(TrackingError):
    """Unknown video lesson."""

    def __init__(self, message: str = "Video lesson not found"):
        super().__init__(message, "video_lesson_not_found")


class InvalidEventBatchError(TrackingError):
    """Batch is empty, too large or malformed."""

    def __init__(self, message: str = "Invalid event batch"):
        super().__init__(message, "invalid_event_batch")


class AlertNotFoundError(TrackingError):
    """Unknown security alert."""

    def __init__(self, message: str = "Security alert not found"):
        super().__init__(message, "alert_not_found")
