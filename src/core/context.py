"""Request context management using contextvars.

Each request gets an ID plus optional user, trace and viewing-session
identifiers that are merged into every log line without being passed
through the call stack.
"""

from contextvars import ContextVar
from typing import Any
from uuid import UUID, uuid4


request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
viewing_session_id_var: ContextVar[str | None] = ContextVar(
    "viewing_session_id", default=None
)


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid4())


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID for the current context.

    Args:
        request_id: Optional request ID. If not provided, generates a new one.

    Returns:
        The request ID that was set.
    """
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def get_user_id() -> str | None:
    return user_id_var.get()


def set_user_id(user_id: str | UUID | None) -> None:
    user_id_var.set(None if user_id is None else str(user_id))


def get_trace_id() -> str | None:
    return trace_id_var.get()


def set_trace_id(trace_id: str | None) -> None:
    """Set the trace ID taken from distributed tracing headers."""
    trace_id_var.set(trace_id)


def set_viewing_session_id(session_id: str | UUID | None) -> None:
    """Tag subsequent log lines with the viewing session being processed."""
    viewing_session_id_var.set(None if session_id is None else str(session_id))


def get_context() -> dict[str, Any]:
    """Get all non-empty context variables as a dictionary."""
    values = {
        "request_id": request_id_var.get(),
        "user_id": user_id_var.get(),
        "trace_id": trace_id_var.get(),
        "viewing_session_id": viewing_session_id_var.get(),
    }
    return {key: value for key, value in values.items() if value}


def clear_context() -> None:
    """Clear all context variables.

    Called at the end of each request to prevent leakage between requests.
    """
    request_id_var.set("")
    user_id_var.set(None)
    trace_id_var.set(None)
    viewing_session_id_var.set(None)
