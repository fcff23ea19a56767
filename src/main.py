"""Video Integrity API - Main Application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import Settings, get_settings
from src.core.context import get_request_id
from src.core.database import init_async_cassandra, shutdown_async_cassandra
from src.core.logging import configure_structlog, get_logger
from src.core.middleware import RequestContextMiddleware
from src.core.redis import init_redis, shutdown_redis
from src.health import router as health_router
from src.tracking.alerts import AlertService
from src.tracking.cache import CacheTTLs, VideoCache
from src.tracking.calculator import ProgressCalculator
from src.tracking.router import router as tracking_router
from src.tracking.security import SecurityService
from src.tracking.service import TrackingService


# Configure logging early (before creating logger)
settings = get_settings()
configure_structlog(settings)

logger = get_logger(__name__)


def build_video_cache(settings: Settings) -> VideoCache:
    """Process-wide cache with TTLs taken from settings."""
    return VideoCache(
        CacheTTLs(
            progress=settings.cache_progress_ttl_seconds,
            lessons=settings.cache_lesson_ttl_seconds,
            sessions=settings.cache_session_ttl_seconds,
            analytics=settings.cache_analytics_ttl_seconds,
            security_alerts=settings.cache_security_alerts_ttl_seconds,
        )
    )


def build_services(app: FastAPI, session, settings: Settings, redis_client=None) -> None:
    """Wire alert, security and tracking services onto ``app.state``."""
    keyspace = settings.cassandra_keyspace
    thresholds = settings.integrity
    cache = app.state.video_cache

    alert_service = AlertService(
        session=session,
        keyspace=keyspace,
        redis=redis_client,
        cache=cache,
    )
    security_service = SecurityService(
        session=session,
        keyspace=keyspace,
        alert_service=alert_service,
        thresholds=thresholds,
        fraud_alert_threshold=settings.tracking_fraud_alert_threshold,
        session_stale_minutes=settings.tracking_session_stale_minutes,
        session_max_age_hours=settings.tracking_session_max_age_hours,
        reliability_refresh_limit=settings.tracking_reliability_refresh_limit,
        alert_retention_days=settings.tracking_alert_retention_days,
    )
    tracking_service = TrackingService(
        session=session,
        keyspace=keyspace,
        security=security_service,
        cache=cache,
        calculator=ProgressCalculator(thresholds),
        thresholds=thresholds,
        fraud_alert_threshold=settings.tracking_fraud_alert_threshold,
        max_events_per_batch=settings.tracking_max_events_per_batch,
    )

    app.state.alert_service = alert_service
    app.state.security_service = security_service
    app.state.tracking_service = tracking_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "starting_application",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    app.state.video_cache = build_video_cache(settings)

    # Initialize Redis (non-critical - alerts are still stored and logged)
    redis_client = None
    try:
        redis_client = await init_redis()
    except Exception as e:
        logger.warning(
            "redis_init_skipped",
            error=str(e),
            message="Running without Redis - admin alert fan-out disabled",
        )

    # Initialize Cassandra (async)
    try:
        cassandra_session = await init_async_cassandra()
        build_services(app, cassandra_session, settings, redis_client)
        logger.info(
            "tracking_services_initialized",
            redis_enabled=redis_client is not None,
        )
    except Exception as e:
        logger.warning(
            "database_init_skipped",
            error=str(e),
            message="Running without database connection",
        )

    yield

    # Shutdown
    logger.info("shutting_down_application", cache=app.state.video_cache.get_stats())
    app.state.video_cache.clear()
    await shutdown_redis()
    await shutdown_async_cassandra()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Starlette debug stays off so stack traces never reach responses
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Video viewing integrity - sessions, fraud checks and progress",
        debug=False,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )

    # Request context middleware (must be added first - outermost)
    app.add_middleware(
        RequestContextMiddleware,
        log_requests=settings.log_requests,
        exclude_paths=settings.log_exclude_paths,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age,
    )

    def _get_request_id_safe(request: Request) -> str | None:
        if hasattr(request.state, "request_id"):
            return request.state.request_id
        return get_request_id()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> ORJSONResponse:
        """Handle HTTP exceptions with safe error messages."""
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=str(exc.detail),
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=exc.status_code,
            content={
                "error": True,
                "message": str(exc.detail)
                if exc.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR
                else "Internal server error",
                "status_code": exc.status_code,
                "request_id": _get_request_id_safe(request),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> ORJSONResponse:
        """Handle validation errors (unknown event types, malformed batches)."""
        logger.warning(
            "validation_error",
            errors=len(exc.errors()),
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": True,
                "message": "Validation error",
                "status_code": 422,
                "request_id": _get_request_id_safe(request),
                "details": [
                    {
                        "field": ".".join(str(loc) for loc in err.get("loc", [])),
                        "message": err.get("msg", "Invalid value"),
                    }
                    for err in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> ORJSONResponse:
        """Catch-all handler: details are logged, never returned."""
        logger.exception(
            "unhandled_exception",
            error_type=type(exc).__name__,
            error_message=str(exc),
            path=request.url.path,
            method=request.method,
        )

        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": True,
                "message": "An unexpected error occurred. Please try again later.",
                "status_code": 500,
                "request_id": _get_request_id_safe(request),
            },
        )

    app.include_router(health_router)
    app.include_router(tracking_router)

    @app.get("/", include_in_schema=False)
    async def root(request: Request) -> dict[str, str]:
        """Root endpoint."""
        return {
            "message": "Video Integrity API",
            "version": settings.app_version,
            "docs": f"{request.url}docs",
        }

    return app


app = create_app()
