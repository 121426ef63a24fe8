"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The interceptor (auth/middleware.py) has already resumed the session by the
time a route runs; these helpers only read request.state.current. None of
them touch the database.

get_current() is the soft variant (may be unauthenticated).
get_current_user() raises HTTP 401 if there is no authenticated user -- use it
on JSON API routes, where a redirect to the login page would be wrong.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Current, User
from auth.service import Authenticator


def get_current(request: Request) -> Current:
    """Return this request's authentication context (possibly empty).

    Use as a FastAPI dependency:
        @router.get("/posts")
        def index(current: Current = Depends(get_current)): ...
    """
    current = getattr(request.state, "current", None)
    return current if current is not None else Current()


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    current = get_current(request)
    if current.user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return current.user


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def require_password_reset_enabled(request: Request) -> None:
    """Answer 404 for every reset route when PASSWORD_RESET_ENABLED=false."""
    if not get_authenticator(request).settings.password_reset_enabled:
        raise HTTPException(status_code=404)
