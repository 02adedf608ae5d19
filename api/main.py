"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for the configured browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan handles startup (credential store, notifier, session manager, purge
task) and shutdown (cancel purge task, dispose the DB engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import error_status
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthServiceError, InfrastructureError
from auth.notifier import EmailNotifier
from auth.sessions import SessionManager
from auth.store import CredentialStore
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authservice.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired OTP records and refresh tokens on a fixed interval.

    Expired records are also removed lazily when a request finds them; this
    loop catches the ones nobody presents again. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly. A failed purge is logged and retried on the next
    tick; nothing awaits this task, so an exception escaping the loop would
    stop purging silently. The purge itself runs in a worker thread so the
    event loop keeps serving requests while SQLite works.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.store.purge_expired)
        except Exception:
            logger.exception("Expired record purge failed")
            continue
        logger.info("Purged expired records: %s", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the session manager and the purge
    task reference it.
    """
    logger.info("Auth service starting up")
    app.state.store = CredentialStore(db_url=_settings.database_url)
    notifier = EmailNotifier.from_settings(_settings)
    if not notifier.is_configured:
        logger.warning("SMTP not configured -- OTP emails will be logged, not sent")
    app.state.sessions = SessionManager.from_settings(app.state.store, notifier, _settings)
    logger.info("Credential store initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Service API",
    description="Email-verified registration, token sessions with refresh rotation, and password reset.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same flat {message, code} envelope so clients can
# branch on code without inspecting the status first.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, code=code).model_dump(),
    )


@app.exception_handler(AuthServiceError)
async def auth_service_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Map session manager failures to 400 (500 for infrastructure failures).

    Infrastructure failures are logged where they happen; the client only ever
    sees the generic message.
    """
    if isinstance(exc, InfrastructureError):
        return _error(500, InfrastructureError.default_message, InfrastructureError.code)
    return _error(error_status(exc), exc.message, exc.code)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests.", "RATE_LIMITED")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first validation problem when a request body is malformed."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "Invalid request.")
    else:
        message = "Invalid request."
    return _error(400, message, "VALIDATION_ERROR")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a flat error for all FastAPI/Starlette HTTP exceptions.

    Dependencies and routes raise HTTPException with detail={message, code}.
    When detail is already that dict, use it directly rather than
    stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return _error(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "An unexpected error occurred.", "INTERNAL_ERROR")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and the database's reachability."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check database ping failed")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
