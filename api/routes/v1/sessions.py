"""
api/routes/v1/sessions.py -- Session login/logout REST endpoints.

Routes:
  POST   /api/v1/session  -- password login; sets the session cookie
  DELETE /api/v1/session  -- logout; expires the cookie; always 200
  GET    /api/v1/session  -- current user and session (requires auth)

Security:
  authenticate_user() provides timing equalization -- use it, never inline.
  One generic error for unknown email and wrong password.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, LoginRequest, MessageResponse, SessionResponse
from auth.dependencies import get_authenticator, get_current, get_current_user
from auth.middleware import get_client_ip
from auth.models import Current, User
from auth.service import Authenticator
from auth.tokens import clear_session_cookie, set_session_cookie

# Auth policy:
# - POST   /api/v1/session: public -- no access rule declared
# - DELETE /api/v1/session: public -- expiring a cookie needs no prior auth
# - GET    /api/v1/session: requires auth (get_current_user -> 401, not a redirect)
router = APIRouter()


@router.post("/session", response_model=SessionResponse)
def login(
    request: Request,
    body: LoginRequest,
    current: Current = Depends(get_current),
    authenticator: Authenticator = Depends(get_authenticator),
) -> JSONResponse:
    """Authenticate with email and password; start a session and set its cookie."""
    user = authenticator.authenticate_user(body.email_address, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="invalid_credentials", message="Invalid email or password.")
            ).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    session = authenticator.start_session(current, user, get_client_ip(request), request.headers.get("user-agent"))
    resp = JSONResponse(status_code=200, content=SessionResponse.from_current(current).model_dump())
    set_session_cookie(resp, session.token, authenticator.settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/session", response_model=MessageResponse)
async def logout(
    current: Current = Depends(get_current),
    authenticator: Authenticator = Depends(get_authenticator),
) -> JSONResponse:
    """End the current session (if any) and expire the cookie."""
    await run_in_threadpool(authenticator.terminate_session, current)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookie(resp, authenticator.settings)
    return resp


@router.get("/session", response_model=SessionResponse)
async def me(
    current_user: User = Depends(get_current_user),
    current: Current = Depends(get_current),
) -> SessionResponse:
    """Return identity information for the currently authenticated user."""
    return SessionResponse.from_current(current)
