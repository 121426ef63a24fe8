"""
api/main.py -- FastAPI application entry point for SimpleAuth.

Exposes the authentication core over HTTP: JSON endpoints under /api/v1 here,
HTML forms from web/ (mounted by asgi.py).

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests               -- method, path, status, latency, client
  2. authentication_interceptor -- resumes the session, enforces access rules
  3. SessionMiddleware          -- signed "flash" cookie for one-shot notices

Lifespan handles startup (store, authenticator, mailer, cleanup task) and
shutdown (cancel cleanup task, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.passwords import router as passwords_router
from api.routes.v1.sessions import router as sessions_router
from auth.access import Requirement, access_rules, audit_routes
from auth.cleanup import cleanup_loop
from auth.errors import AuthError
from auth.mailer import PasswordsMailer
from auth.middleware import authentication_interceptor
from auth.service import Authenticator
from auth.store import AuthStore
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("simpleauth.api")

_settings = get_settings()
if _settings.debug:
    logging.getLogger("simpleauth").setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Access audit first -- a declaration naming no route stops startup
         before any resource is opened.
      2. Store -- creates the tables before anything queries them.
      3. Authenticator and mailer -- both read settings, the former wraps the store.
      4. Cleanup task last -- references the store.
    """
    settings = get_settings()
    logger.info("SimpleAuth API starting up")
    resolved = audit_routes(app)
    protected = [key for key, req in resolved.items() if req is Requirement.REQUIRE]
    app.state.store = AuthStore()
    app.state.authenticator = Authenticator(app.state.store, settings)
    app.state.mailer = PasswordsMailer(settings)

    logger.info(
        "Auth initialized (enabled=%s, password_reset=%s, protected_routes=%d)",
        settings.enabled,
        settings.password_reset_enabled,
        len(protected),
    )
    if not app.state.store.has_users():
        logger.warning("No users yet. Create one with: python main.py create-user <email>")

    app.state.cleanup_task = None
    if settings.password_reset_enabled:
        app.state.cleanup_task = asyncio.create_task(cleanup_loop(app.state.store, settings.cleanup_interval_seconds))

    yield

    if app.state.cleanup_task is not None:
        app.state.cleanup_task.cancel()
    app.state.store.close()
    logger.info("SimpleAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SimpleAuth API",
    description="Session login and selector/verifier password reset.",
    version=__version__,
    lifespan=lifespan,
)

# Shared with web/: routes declare into it at import time, the interceptor
# reads it back from app.state.
app.state.access_rules = access_rules

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each registration wraps everything registered before it, so the last one
# registered is the first to see the request.
# ---------------------------------------------------------------------------

# Flash messages only. The session token is a separate opaque cookie
# (SESSION_COOKIE_NAME) that the Starlette session never holds.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="flash",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.middleware("http")(authentication_interceptor)


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

app.include_router(sessions_router, prefix="/api/v1", tags=["Session"])
app.include_router(passwords_router, prefix="/api/v1", tags=["Passwords"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """TokenInvalid -> 400, PasswordValidationError -> 422. The message is user-safe."""
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
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
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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
    """Catch-all handler for unexpected server errors (including storage failures).

    The raw exception is written to the log only, never to the response body.
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
# regardless of router registration state. Listed in EXCLUDED_PATTERNS.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version, and database reachability."""
    store = getattr(request.app.state, "store", None)
    database = "ok" if store is not None and store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
