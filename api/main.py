"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the Mini App origin(s);
                              credentials allowed so the session cookie flows
  3. SlowAPIMiddleware     -- enforces per-route limits from api.limiter

Lifespan builds the auth object graph once per process and parks it on
app.state:
  auth_store        AuthStore (SQLAlchemy Core)
  rate_limiter      RateLimiter (fixed window, content-derived keys)
  session_manager   SessionManager
  transfer_service  TransferTokenService
  login_service     PlatformLoginService
  purge_task        background loop deleting spent transfer tokens
Tests replace the lifespan (see tests/conftest.py) to inject isolated stores.
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.sessions import router as sessions_router
from auth.errors import StorageUnavailable
from auth.login import PlatformLoginService
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager
from auth.store import _DEFAULT_DB_URL, AuthStore
from auth.transfer import TransferTokenService
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tutorauth.api")

_PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, store: AuthStore, rate_limiter: RateLimiter) -> None:
    """Wire the auth services onto app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    wiring code.
    """
    app.state.auth_store = store
    app.state.rate_limiter = rate_limiter
    app.state.session_manager = SessionManager(store, ttl_minutes=settings.session_ttl_minutes)
    app.state.transfer_service = TransferTokenService(
        store,
        default_ttl_seconds=settings.transfer_token_ttl_sec,
        min_ttl_seconds=settings.transfer_token_min_ttl_sec,
        max_ttl_seconds=settings.transfer_token_max_ttl_sec,
    )
    app.state.login_service = PlatformLoginService(
        store,
        app.state.session_manager,
        bot_token=settings.telegram_bot_token,
        init_data_ttl_sec=settings.telegram_init_data_ttl_sec,
        replay_skew_sec=settings.telegram_replay_skew_sec,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete used and expired transfer tokens every 6 hours.

    Sessions are never deleted; they are kept for the session list and audit.
    The store call is blocking, so it runs in the threadpool. A failed purge
    is logged and retried on the next tick -- nothing depends on it.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            await run_in_threadpool(app.state.transfer_service.purge_spent)
        except StorageUnavailable:
            logger.warning("Transfer token purge skipped -- store unavailable")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth services on startup, tear them down on shutdown."""
    settings = get_settings()
    logger.info("Auth API starting up")
    store = AuthStore(
        db_url=settings.database_url or _DEFAULT_DB_URL,
        timeout_seconds=settings.store_timeout_seconds,
    )
    build_services(app, settings, store, RateLimiter(settings.rate_limit_storage_uri))
    logger.info(
        "Auth initialized (session_ttl=%dm transfer_ttl=%ds bot_token_set=%s)",
        settings.session_ttl_minutes,
        settings.transfer_token_ttl_sec,
        bool(settings.telegram_bot_token),
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.auth_store.close()
    logger.info("Auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tutor Auth API",
    description="Telegram Mini App login, server-side sessions, and one-time cross-device transfer links.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_settings = get_settings()

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Query strings are left out on
# purpose: /transfer?t=<raw token> must never reach the log.
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
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
# The /transfer HTML page is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    """Return 503 when the auth store is unreachable or locked.

    The request may or may not have taken effect. Clients retry by starting
    the flow again (new login, new transfer link), never by replaying a
    transfer token.
    """
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc)
    response = JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="storage_unavailable",
                message="Service temporarily unavailable. Please try again.",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests. Try again in a minute.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; use it directly rather than stringifying it. Headers (e.g. the
    bypass cookie) are carried over.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    db_ok = request.app.state.auth_store.ping()
    return HealthResponse(
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
