"""
api/main.py -- FastAPI application entry point for KeyWarden.

Exposes the credential lifecycle engine (auth/service.py) over HTTP.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests   -- one log line per request with latency
  2. CORSMiddleware -- adds CORS headers for allowed browser origins

Lifespan handles startup (settings, credential store, email dispatcher,
service, purge task) and shutdown (cancel purge task, stop hasher pool,
close DB connection) symmetrically.
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

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.mailer import EmailDispatcher, LoggingEmailDispatcher, SMTPEmailDispatcher
from auth.service import AuthenticationService
from auth.store import SQLCredentialStore
from core.config import Settings, get_settings
from core.errors import (
    AccountNotVerified,
    AlreadyVerified,
    Cancelled,
    Conflict,
    CredentialError,
    EmailDeliveryError,
    ExpiredToken,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    PersistenceError,
    TokenError,
    TokenSigningError,
    ValidationError,
)

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keywarden.api")

# ---------------------------------------------------------------------------
# Error kind -> HTTP status
#
# Looked up along the exception's MRO; the first mapped class wins.
# HashingError stays unmapped so HashingCancelled resolves to Cancelled (504).
# Anything unmapped is a 500.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[CredentialError], int] = {
    ValidationError: 400,
    InvalidToken: 400,
    ExpiredToken: 400,
    AlreadyVerified: 400,
    InvalidCredentials: 401,
    TokenError: 401,
    TokenSigningError: 500,
    AccountNotVerified: 403,
    NotFound: 404,
    Conflict: 409,
    EmailDeliveryError: 502,
    PersistenceError: 503,
    Cancelled: 504,
}


def status_for(exc: CredentialError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Clear expired password reset tokens every `interval` seconds.

    The store call is blocking, so it runs in a worker thread. A failed
    sweep is logged and retried on the next tick; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await asyncio.to_thread(app.state.auth_service.purge_expired_reset_tokens)
        except CredentialError as exc:
            logger.warning("Reset token purge failed: %s", exc.code)
            continue
        if purged:
            logger.info("Purged %d expired reset token(s)", purged)


def build_dispatcher(settings: Settings) -> EmailDispatcher:
    """SMTP when a relay is configured, otherwise log-only delivery."""
    if settings.smtp_host:
        return SMTPEmailDispatcher(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
            sender_name=settings.smtp_from_name,
            timeout=settings.smtp_timeout_seconds,
            reset_ttl_hours=max(1, settings.reset_token_ttl_seconds // 3600),
        )
    logger.warning("SMTP_HOST not set -- emails will be logged, not delivered")
    return LoggingEmailDispatcher()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the store must exist before the service wraps it,
    and the service must exist before the purge task references it.
    """
    settings = get_settings()
    logger.info("KeyWarden API starting up")
    app.state.settings = settings
    app.state.store = SQLCredentialStore(settings.database_url)
    app.state.auth_service = AuthenticationService.from_settings(
        settings, app.state.store, build_dispatcher(settings)
    )
    logger.info(
        "Auth initialized (hash_rounds=%d, reset_ttl=%ds)",
        settings.hash_rounds,
        settings.reset_token_ttl_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.auth_service.close()
    app.state.store.close()
    logger.info("KeyWarden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="KeyWarden API",
    description="Registration, login, email verification and password reset.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
    """Map a core failure kind onto its status code and stable error code."""
    status = status_for(exc)
    if status >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if status == 503:
        response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
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

    Dependencies raise HTTPException with a {"code", "message"} dict as
    detail; that dict is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
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

    The traceback goes to the log only, never to the response body.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and the configured email transport."""
    dispatcher = request.app.state.auth_service.dispatcher
    return HealthResponse(
        version=__version__,
        components={"email": type(dispatcher).__name__},
    )
