"""Request middleware for context management and logging.

Provides:
- Request context injection (request_id, trace_id)
- Request/response logging with timing
- Response headers echoing the request ID and server processing time
"""

import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from src.core.context import clear_context, set_request_id, set_trace_id


logger = structlog.get_logger(__name__)

_SLOW_REQUEST_MS = 1000


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware that sets up request context for logging.

    1. Generates or extracts the request ID
    2. Extracts the trace ID from distributed tracing headers
    3. Logs request start/finish with timing (except excluded paths)
    4. Clears context after the request completes
    """

    REQUEST_ID_HEADER = "X-Request-ID"
    TRACE_ID_HEADER = "X-Trace-ID"
    B3_TRACE_HEADER = "X-B3-TraceId"
    TRACEPARENT_HEADER = "traceparent"
    PROCESS_TIME_HEADER = "X-Process-Time-Ms"

    def __init__(
        self,
        app: ASGIApp,
        log_requests: bool = True,
        exclude_paths: list[str] | None = None,
    ) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application.
            log_requests: Whether to log request start/finish.
            exclude_paths: Path prefixes not logged (health checks, latency probe).
        """
        super().__init__(app)
        self.log_requests = log_requests
        self.exclude_paths = exclude_paths or ["/health"]

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process the request and set up context."""
        start_time = time.perf_counter()

        request_id = set_request_id(request.headers.get(self.REQUEST_ID_HEADER))
        trace_id = (
            request.headers.get(self.TRACE_ID_HEADER)
            or request.headers.get(self.B3_TRACE_HEADER)
            or self._extract_traceparent(request.headers.get(self.TRACEPARENT_HEADER))
        )
        if trace_id:
            set_trace_id(trace_id)

        request.state.request_id = request_id
        should_log = self.log_requests and not self._should_exclude(request.url.path)

        if should_log:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                query=str(request.query_params) if request.query_params else None,
            )

        try:
            response = await call_next(request)
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

            if should_log:
                log_method = (
                    logger.warning
                    if response.status_code >= 400 or duration_ms > _SLOW_REQUEST_MS
                    else logger.info
                )
                log_method(
                    "request_completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )

            response.headers[self.REQUEST_ID_HEADER] = request_id
            response.headers[self.PROCESS_TIME_HEADER] = str(duration_ms)
            return response

        except Exception as e:
            logger.exception(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise

        finally:
            clear_context()

    def _should_exclude(self, path: str) -> bool:
        return any(path.startswith(excluded) for excluded in self.exclude_paths)

    @staticmethod
    def _extract_traceparent(traceparent: str | None) -> str | None:
        """Extract trace ID from a W3C traceparent header.

        Format: {version}-{trace-id}-{parent-id}-{trace-flags}
        """
        if not traceparent:
            return None
        parts = traceparent.split("-")
        return parts[1] if len(parts) >= 2 else None
