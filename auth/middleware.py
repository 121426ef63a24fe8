"""
auth/middleware.py -- Per-request authentication interceptor.

Pattern: Interceptor / Chain of Responsibility. authentication_interceptor()
is registered with @app.middleware("http") and wraps every route handler.

One request moves through:

    Unresolved -> SessionResumed -> Allowed  (handler runs)
                                 -> Denied   (302 to LOGIN_URL, handler skipped)

  1. on_request_start: resume the session from the cookie. Always, even for
     public routes, so public pages can still ask "am I logged in?".
  2. resolve_auth_requirement: look the request path up in the access table.
     Excluded patterns skip the table. The router is never consulted, so
     undeclared and unknown paths resolve to ALLOW and the router answers
     them (404 for unknown ones).
  3. REQUIRE without a user -> Denied. Anything else -> Allowed.
  4. on_request_end: the context is replaced with an empty one in a finally
     block, on success, on denial, and when the handler raises.

The context lives on request.state, which Starlette backs with the per-request
ASGI scope. Two concurrent requests can never observe each other's context,
whether they share a thread, an event loop, or neither.

Layer rule: no imports from api/ or web/. fastapi/starlette imports are
allowed -- this module is part of the HTTP integration.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.access import AccessTable, Requirement, access_rules, is_excluded
from auth.models import Current
from auth.service import Authenticator

logger = logging.getLogger("simpleauth.auth")


def get_client_ip(request: Request) -> str | None:
    """Best-effort client address, considering reverse proxies.

    X-Forwarded-For (first entry), then X-Real-IP, then the socket peer.
    Recorded on the session for display; never used for access decisions.
    """
    for header in ("X-Forwarded-For", "X-Real-IP"):
        value = (request.headers.get(header) or "").strip()
        if value and value.lower() != "unknown":
            return value.split(",")[0].strip()
    return request.client.host if request.client else None


def on_request_start(request: Request) -> Current:
    """Resume the session named by the cookie and attach it to the request."""
    authenticator: Authenticator = request.app.state.authenticator
    token = request.cookies.get(authenticator.settings.session_cookie_name)
    current = authenticator.resume_session(token)
    request.state.current = current
    return current


def on_request_end(request: Request) -> None:
    """Drop the request's context. Safe to call more than once."""
    current = getattr(request.state, "current", None)
    if current is not None:
        current.clear()
    request.state.current = Current()


def route_path(request: Request) -> str:
    """The request path as routes see it: without the ASGI root_path prefix."""
    path = request.url.path
    root_path = request.scope.get("root_path", "")
    if root_path and path.startswith(root_path):
        path = path[len(root_path):] or "/"
    return path


def resolve_auth_requirement(request: Request, table: AccessTable | None = None) -> Requirement:
    """Resolve the authentication requirement for this request's method and path."""
    settings = request.app.state.authenticator.settings
    path = route_path(request)
    if is_excluded(path, settings.excluded_patterns):
        return Requirement.ALLOW
    table = table or getattr(request.app.state, "access_rules", access_rules)
    return table.resolve(request.method, path)


def login_redirect(request: Request) -> RedirectResponse:
    """302 to the login page, remembering where the user was going.

    Only the path and query are kept -- never scheme or host -- so the next=
    value is always a relative path.
    """
    settings = request.app.state.authenticator.settings
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    separator = "&" if "?" in settings.login_url else "?"
    return RedirectResponse(f"{settings.login_url}{separator}next={quote(target, safe='/')}", status_code=302)


async def authentication_interceptor(request: Request, call_next):
    """Resume the session, enforce the route's requirement, always clean up."""
    authenticator: Authenticator | None = getattr(request.app.state, "authenticator", None)
    if authenticator is None or not authenticator.settings.enabled:
        request.state.current = Current()
        return await call_next(request)

    try:
        # Session lookup is blocking DB I/O; keep it off the event loop.
        current = await run_in_threadpool(on_request_start, request)
        requirement = resolve_auth_requirement(request)
        if requirement is Requirement.REQUIRE and current.user is None:
            logger.debug("Denied unauthenticated %s %s", request.method, request.url.path)
            return login_redirect(request)
        return await call_next(request)
    finally:
        on_request_end(request)
