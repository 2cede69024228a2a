"""
Rendezvous — FastAPI Application Entry Point

Production-ready application with:
- Async lifespan management (DB pool, Redis, presence registry, realtime
  channel, background heartbeat and match sweeper)
- CORS, timeout, rate-limit and structured-logging middleware
- Domain error mapping to ``{"error": ...}`` bodies
- Health-check endpoints (liveness + deep readiness)
- Active-request tracking for graceful shutdown
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app import database
from app.api.rate_limit import VerificationRateGate, limiter, rate_limit_exceeded_handler
from app.config import get_settings
from app.errors import RendezvousError
from app.services.map_service import MapService
from app.services.matching_service import MatchCoordinator
from app.services.notifier_service import build_notifier
from app.services.presence_service import PresenceRegistry
from app.services.realtime_service import RealtimeChannel
from app.services.verification_service import VerificationGate

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------

_REDACTED_KEYS = ("code", "sms_code")


def redact_sensitive(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Drop verification codes and mask phone numbers to their last 4 digits."""
    for key in _REDACTED_KEYS:
        if key in event_dict:
            event_dict[key] = "[redacted]"
    if get_settings().is_production:
        event_dict.pop("dev_code", None)

    phone = event_dict.get("phone_number")
    if isinstance(phone, str) and len(phone) > 4:
        event_dict["phone_number"] = "*" * (len(phone) - 4) + phone[-4:]
    return event_dict


structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(get_settings().LOG_LEVEL.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("rendezvous")

# ---------------------------------------------------------------------------
# Active request counter for graceful shutdown
# ---------------------------------------------------------------------------

_active_requests: int = 0
_active_requests_lock = asyncio.Lock()

DRAIN_TIMEOUT_SECONDS = 15


async def _increment_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests += 1


async def _decrement_active() -> None:
    global _active_requests
    async with _active_requests_lock:
        _active_requests -= 1


async def _drain_active_requests() -> None:
    """Wait until all in-flight requests complete or timeout expires."""
    deadline = time.monotonic() + DRAIN_TIMEOUT_SECONDS
    while True:
        async with _active_requests_lock:
            if _active_requests <= 0:
                break
        if time.monotonic() >= deadline:
            logger.warning(
                "drain_timeout_exceeded",
                remaining_requests=_active_requests,
            )
            break
        await asyncio.sleep(0.25)


# ---------------------------------------------------------------------------
# Redis helpers
# ---------------------------------------------------------------------------

_redis_client = None


async def _connect_redis() -> None:
    global _redis_client
    import redis.asyncio as aioredis

    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis_connected")


async def _close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_closed")


def get_redis():
    """Return the shared Redis client (for use in health checks, etc.)."""
    return _redis_client


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------

def _on_background_done(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    # In-memory presence can no longer be trusted; restart cleanly.
    logger.error("background_task_crashed", task=task.get_name(), exc_info=exc)
    os.kill(os.getpid(), signal.SIGTERM)


def _start_background(name: str, factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
    task = asyncio.create_task(factory(), name=name)
    task.add_done_callback(_on_background_done)
    return task


async def _sweep_expired_matches(coordinator: MatchCoordinator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        async with database.async_session_factory() as session:
            await coordinator.expire_stale_matches(session)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of long-lived resources."""
    settings = get_settings()

    # -- Startup --------------------------------------------------------- #
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    # 1. Database connection pool — engine is already created at module level
    #    in app.database; issuing a simple query warms the pool.
    async with database.engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    if settings.DB_CREATE_TABLES:
        await database.create_all(database.engine)
        logger.info("database_tables_created")
    logger.info("database_pool_initialised")

    # 2. Redis (optional)
    if settings.REDIS_URL:
        await _connect_redis()

    # 3. Lifetime-scoped services
    notifier = build_notifier(settings)
    presence = PresenceRegistry(database.async_session_factory)
    await presence.reset_store()

    gate = VerificationGate(notifier, settings)
    coordinator = MatchCoordinator(presence, settings)

    app.state.notifier = notifier
    app.state.presence = presence
    app.state.verification_gate = gate
    app.state.verification_rate_gate = VerificationRateGate(
        settings.SMS_RATE_LIMIT,
        settings.rate_limit_storage_uri,
        enabled=settings.RATE_LIMIT_ENABLED,
    )
    app.state.match_coordinator = coordinator
    app.state.map_service = MapService(settings=settings)
    app.state.realtime = RealtimeChannel(
        presence, gate, database.async_session_factory, settings=settings
    )

    # 4. Background tasks
    background = [_start_background("heartbeat", app.state.realtime.run_heartbeat)]
    if settings.MATCH_SWEEP_INTERVAL_SECONDS > 0:
        background.append(
            _start_background(
                "match_sweeper",
                lambda: _sweep_expired_matches(
                    coordinator, settings.MATCH_SWEEP_INTERVAL_SECONDS
                ),
            )
        )

    logger.info("startup_complete")

    yield

    # -- Shutdown -------------------------------------------------------- #
    logger.info("shutdown_begin")

    # 1. Stop background tasks
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    # 2. Drain in-flight requests
    await _drain_active_requests()

    # 3. Close outbound clients
    await notifier.aclose()
    await _close_redis()

    # 4. Dispose DB engine (closes the connection pool)
    await database.engine.dispose()
    logger.info("database_pool_closed")

    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware classes
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Abort requests that exceed a configurable wall-clock timeout."""

    def __init__(self, app, timeout_seconds: float = 70.0) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await asyncio.wait_for(
                call_next(request),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                method=request.method,
                path=request.url.path,
                timeout=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={"error": "Request timed out"},
            )


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()

        await _increment_active()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )
            raise
        finally:
            await _decrement_active()

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

ERROR_MESSAGES: dict[str, str] = {
    "validation_error": "Invalid request",
    "invalid_coordinate": "Latitude must be within [-90, 90] and longitude within [-180, 180]",
    "location_unset": "Location has not been set yet",
    "already_registered": "User already registered with this phone number",
    "already_verified": "User already verified",
    "not_registered": "User not found. Please register first.",
    "not_verified": "Phone number not verified. Please complete registration first.",
    "invalid_code": "Invalid verification code",
    "code_expired": "Verification code has expired",
    "invalid_refresh_token": "Invalid refresh token",
    "authentication_error": "Authentication required",
    "missing_token": "No token, authorization denied",
    "invalid_token": "Token is not valid",
    "forbidden": "Not authorized to perform this action",
    "not_found": "Resource not found",
    "user_not_found": "User not found",
    "match_not_found": "Match not found",
    "meeting_not_found": "Meeting not found",
    "self_match": "Cannot send match request to yourself",
    "target_unavailable": "Target user not found or offline",
    "duplicate_pending": "Match request already exists",
    "already_resolved": "Match already responded to",
    "match_expired": "Match request has expired",
    "invalid_reason": "Meeting reason must be 5 to 200 characters",
    "invalid_decision": "Response must be 'accepted' or 'rejected'",
    "invalid_rating": "Rating must be between 1 and 5",
    "notes_too_long": "Notes must be 1000 characters or fewer",
    "rate_limited": "Too many verification attempts. Please try again in an hour.",
    "delivery_failed": "Failed to send verification code",
    "delivery_unavailable": "SMS service temporarily unavailable",
    "server_error": "Server error",
}


def error_message(exc: RendezvousError) -> str:
    return ERROR_MESSAGES.get(exc.kind, ERROR_MESSAGES["server_error"])


async def rendezvous_error_handler(request: Request, exc: RendezvousError) -> JSONResponse:
    log = logger.bind(path=request.url.path, kind=exc.kind, status=exc.status_code)
    if exc.status_code >= 500:
        log.error("request_failed")
    else:
        log.info("request_rejected")
    return JSONResponse(status_code=exc.status_code, content={"error": error_message(exc)})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=400,
        content={"error": f"{location}: {message}" if location else message},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path, method=request.method)
    content = {"error": "Internal server error"}
    if not get_settings().is_production:
        content["detail"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

settings = get_settings()

app = FastAPI(
    title="Rendezvous",
    description="Location-based matching with realtime presence",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
app.add_exception_handler(RendezvousError, rendezvous_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, unhandled_error_handler)

# -- Middleware (applied in reverse order — last added runs first) ---------- #

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(TimeoutMiddleware, timeout_seconds=70.0)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- Health-check endpoints ------------------------------------------------ #


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    """Lightweight liveness probe — always returns healthy if the process is
    running."""
    return {"status": "healthy"}


@app.get("/health/deep", tags=["health"])
async def health_deep(request: Request) -> dict:
    """Deep readiness probe — verifies database and Redis connectivity."""
    result: dict = {
        "status": "healthy",
        "database": "connected",
        "redis": "connected",
        "connections": request.app.state.presence.connection_count,
    }

    # Database
    try:
        async with database.async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_db_failure", error=str(exc))
        result["database"] = f"error: {exc}"
        result["status"] = "degraded"

    # Redis
    if not get_settings().REDIS_URL:
        result["redis"] = "not_configured"
    else:
        try:
            redis = get_redis()
            if redis is None:
                raise RuntimeError("Redis client not initialised")
            await redis.ping()
        except Exception as exc:
            logger.error("health_redis_failure", error=str(exc))
            result["redis"] = f"error: {exc}"
            result["status"] = "degraded"

    return result


# Health probes bypass the general limit.
limiter.exempt(health_liveness)
limiter.exempt(health_deep)


# -- API router ------------------------------------------------------------ #

from app.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
