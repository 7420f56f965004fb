"""
api/main.py -- FastAPI application entry point for LibraryAuth.

Exposes the session subsystem (register / login / refresh / logout, profile,
user administration) over HTTP. Business collaborators (books, members,
loans, reports) mount their own routers and depend on auth.dependencies for
the verified identity.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins

Lifespan handles startup (store, ledger, session manager, purge task) and
shutdown (cancel purge task, dispose the engine) symmetrically.
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
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import (
    AccountInactive,
    AuthError,
    BadCredentials,
    DuplicateEmail,
    InvalidInput,
    PermissionDenied,
    RefreshTokenError,
    TokenError,
    UserNotFound,
    WeakPassword,
)
from auth.ledger import RefreshTokenLedger
from auth.service import SessionManager
from auth.store import UserStore
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
logger = logging.getLogger("libraryauth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh token records every PURGE_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_settings.purge_interval_seconds)
        await asyncio.to_thread(app.state.ledger.purge_expired)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store, ledger and session manager; tear them down on exit.

    The ledger shares the user store's engine: one database, two tables, so
    rotate() can read the owning user in the same transaction.
    """
    logger.info("LibraryAuth API starting up")
    app.state.user_store = UserStore(_settings.database_url)
    app.state.ledger = RefreshTokenLedger(app.state.user_store.engine)
    app.state.sessions = SessionManager(app.state.user_store, app.state.ledger)
    if not app.state.user_store.has_users():
        logger.warning("No users yet -- create the first admin with: python main.py create-admin <email>")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("LibraryAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LibraryAuth API",
    description="Authentication and session lifecycle for the branch-scoped library backend.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific class first; _status_for() walks the MRO.
_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidInput: 422,
    WeakPassword: 422,
    DuplicateEmail: 409,
    BadCredentials: 401,
    AccountInactive: 403,
    PermissionDenied: 403,
    UserNotFound: 404,
    TokenError: 401,
    RefreshTokenError: 401,
}


def _status_for(exc: AuthError) -> int:
    for klass in type(exc).__mro__:
        if klass in _AUTH_ERROR_STATUS:
            return _AUTH_ERROR_STATUS[klass]
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain errors to HTTP.

    Refresh token failures (unknown, expired, replayed) all surface as
    401 invalid_refresh_token and access token failures as 401 unauthorized,
    so clients cannot probe which case applied. The specific code is logged.
    """
    status = _status_for(exc)
    if isinstance(exc, RefreshTokenError):
        logger.info("Refresh rejected (%s) from %s", exc.code, request.client.host if request.client else "unknown")
        detail = ErrorDetail(code="invalid_refresh_token", message="Refresh token is invalid, expired, or already used.")
    elif isinstance(exc, TokenError):
        detail = ErrorDetail(code="unauthorized", message="Authentication required.")
    else:
        detail = ErrorDetail(code=exc.code, message=exc.message, field=getattr(exc, "field", None))
    response = JSONResponse(status_code=status, content=ErrorResponse(error=detail).model_dump(exclude_none=True))
    if status == 401:
        response.headers["Cache-Control"] = "no-store"
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
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI HTTP exceptions.

    The guard raises HTTPException with detail={"code", "message"}; that dict
    becomes the error field directly. Headers (WWW-Authenticate) are kept.
    """
    if isinstance(exc.detail, dict):
        content = {"error": exc.detail}
    else:
        content = ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
        ).model_dump(exclude_none=True)
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    try:
        db_ok = request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_ok = False
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
