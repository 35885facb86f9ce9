"""
api/main.py -- FastAPI application entry point for the marketplace auth service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SessionMiddleware     -- holds the OAuth state value between redirect and callback

Lifespan builds every collaborator explicitly (database, stores, hasher,
AuthService, SessionGate, mailer, OAuth registry) and hangs them on
app.state. There is no global registry: routes read what lifespan wired.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import ROUTE_POLICY
from api.routes.v1.auth import router as auth_router
from auth.db import AuthDatabase
from auth.errors import AuthError
from auth.gate import SessionGate
from auth.oauth import build_oauth_registry
from auth.service import AuthService
from auth.store import IdentityStore, ResetTokenStore, SessionStore, UserStore
from auth.tokens import PasswordHasher
from core.config import get_settings
from core.mailer import Mailer

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("marketplace.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions and spent reset tokens on a fixed interval.

    The store calls block, so they run in the thread pool. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.purge_interval_seconds)
        try:
            removed_sessions, removed_tokens = await run_in_threadpool(app.state.auth_service.purge_expired)
        except SQLAlchemyError:
            logger.exception("Purge of expired auth records failed")
            continue
        logger.info("Purged %d session(s) and %d reset token(s)", removed_sessions, removed_tokens)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_auth_components(app: FastAPI, database: AuthDatabase) -> None:
    """Construct the auth stack over `database` and attach it to app.state."""
    settings = app.state.settings
    users = UserStore(database)
    sessions = SessionStore(database)
    app.state.database = database
    app.state.auth_service = AuthService(
        database,
        users,
        sessions,
        ResetTokenStore(database),
        IdentityStore(database),
        PasswordHasher(rounds=settings.bcrypt_rounds),
        secret_key=settings.secret_key,
        session_ttl=timedelta(seconds=settings.session_ttl_seconds),
        reset_token_ttl=timedelta(seconds=settings.reset_token_ttl_seconds),
    )
    app.state.session_gate = SessionGate(sessions)
    app.state.route_policy = dict(ROUTE_POLICY)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task starts last because it references the service.
    """
    logger.info("Marketplace auth API starting up")
    build_auth_components(app, AuthDatabase(app.state.settings.database_url))
    logger.info("Auth stores initialized")
    app.state.mailer = Mailer(app.state.settings)
    app.state.oauth = build_oauth_registry(app.state.settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.database.close()
    logger.info("Marketplace auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Marketplace Auth API",
    description="Registration, login, server-side sessions, password reset, and OAuth account linking.",
    version=__version__,
    lifespan=lifespan,
)
app.state.settings = _settings

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the LAST one added is the outermost.
# Register innermost first: Session -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback. It is not the login
# session: that is the server-side record behind the "session" cookie.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="oauth_state",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


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
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render domain auth errors with their own status and fixed message.

    The message is the class default, never str(exc): sub-causes stay hidden.
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(exclude_none=True),
        headers={"Cache-Control": "no-store"},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are dropped from the detail: they may include passwords.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (store outages, integrity faults).

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
# Defined directly in main.py (not in the auth router) so it is never behind
# the session gate.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    try:
        database_status = "ok" if request.app.state.database.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database_status = "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database_status})
