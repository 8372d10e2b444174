"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the component graph once per process (engine -> stores ->
SessionManager -> AuthService) and parks it on app.state; handlers reach it
through auth.dependencies.get_auth_service(). It also runs the maintenance
loop that sweeps expired sessions and lapsed reservations, and tears both
down symmetrically on shutdown.

Error mapping lives here and only here: the core raises AuthError
subclasses, the handlers below turn them into {"message", "fieldErrors"?}
bodies with the right status code.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AuthError,
    DuplicateError,
    InvalidCredentials,
    ReservationExpired,
    StorageUnavailable,
    Unauthenticated,
    ValidationError,
)
from auth.schema import make_engine
from auth.service import AuthService
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authsvc.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI) -> None:
    """Sweep expired sessions and lapsed reservations on a fixed interval.

    The sweep itself is blocking SQL, so it runs on a worker thread via
    asyncio.to_thread and the event loop keeps serving requests. A storage
    outage during one pass is logged and the next pass tries again. Any other
    failure is logged with its traceback and the loop keeps running.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(settings.session_sweep_interval_seconds)
        try:
            counts = await asyncio.to_thread(app.state.auth_service.run_maintenance)
        except StorageUnavailable:
            logger.warning("Maintenance pass skipped: storage unavailable")
            continue
        except Exception:
            logger.exception("Maintenance pass failed")
            continue
        logger.info("Maintenance pass: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("Auth service starting up")
    app.state.engine = make_engine(settings.database_url)
    app.state.auth_service = AuthService.from_settings(settings, app.state.engine)
    logger.info(
        "Auth initialized (session_ttl=%ss, sliding=%s)",
        settings.session_ttl_seconds,
        settings.sliding_expiration,
    )
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.maintenance_task
    app.state.engine.dispose()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Service",
    description="Account registration, password login and opaque session tokens.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Method, path, status and latency only. Bodies and cookies carry passwords
# and tokens and are never logged.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------

# Core field names -> wire field names.
_WIRE_FIELDS = {"phone_number": "phoneNumber"}

_STATUS_BY_ERROR: tuple[tuple[type[AuthError], int], ...] = (
    (ValidationError, 400),
    (DuplicateError, 400),
    (ReservationExpired, 409),
    (InvalidCredentials, 401),
    (Unauthenticated, 401),
    (StorageUnavailable, 503),
)


def status_for(exc: AuthError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_response(status_code: int, message: str, field_errors: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, field_errors=field_errors or None).model_dump(
            by_alias=True, exclude_none=True
        ),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the core's error taxonomy to HTTP status codes."""
    field_errors = None
    if isinstance(exc, ValidationError) and exc.field_errors:
        field_errors = {_WIRE_FIELDS.get(k, k): v for k, v in exc.field_errors.items()}
    response = _error_response(status_for(exc), exc.message, field_errors)
    if isinstance(exc, StorageUnavailable):
        response.headers["Retry-After"] = "5"
    if isinstance(exc, (InvalidCredentials, Unauthenticated)):
        response.headers["Cache-Control"] = "no-store"
    return response


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded.

    Synchronous on purpose: SlowAPIMiddleware calls the registered handler
    without awaiting it.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with per-field messages when the body has the wrong shape."""
    field_errors: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field_errors[".".join(loc) or "body"] = error.get("msg", "Invalid value.")
    return _error_response(400, "Request validation failed.", field_errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return the ErrorResponse envelope for routing errors and explicit HTTPExceptions."""
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
