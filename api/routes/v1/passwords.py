"""
api/routes/v1/passwords.py -- Password reset REST endpoints.

Routes:
  POST /api/v1/passwords          -- request a reset link; always 202
  GET  /api/v1/passwords/{token}  -- is this link usable?
  POST /api/v1/passwords/{token}  -- set a new password with the link

Every route answers 404 when PASSWORD_RESET_ENABLED=false.

Security:
  POST /passwords answers identically for known and unknown addresses. The
  email goes out in a background task so response time does not reveal
  whether a message was sent.
  Every link failure (malformed, unknown, expired, wrong verifier, already
  used) is the same 400 token_invalid raised by the Authenticator and turned
  into the error envelope by the AuthError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.models import MessageResponse, PasswordResetRequest, PasswordResetSubmit, TokenStatusResponse
from auth.dependencies import get_authenticator, require_password_reset_enabled
from auth.service import Authenticator

RESET_REQUESTED_MESSAGE = "If an account exists for that email, you will receive password reset instructions shortly."
RESET_COMPLETED_MESSAGE = "Your password has been reset. Please sign in."

router = APIRouter(dependencies=[Depends(require_password_reset_enabled)])


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/passwords", status_code=202, response_model=MessageResponse)
def request_reset(
    request: Request,
    body: PasswordResetRequest,
    background_tasks: BackgroundTasks,
    authenticator: Authenticator = Depends(get_authenticator),
) -> JSONResponse:
    """Issue a reset link for the address, if it belongs to a user."""
    issued = authenticator.request_password_reset(body.email_address)
    if issued is not None:
        background_tasks.add_task(request.app.state.mailer.send_password_reset, issued.user, issued.token)
    resp = _no_store(MessageResponse(message=RESET_REQUESTED_MESSAGE).model_dump(), status_code=202)
    resp.background = background_tasks
    return resp


@router.get("/passwords/{token}", response_model=TokenStatusResponse)
def check_reset_token(
    token: str,
    authenticator: Authenticator = Depends(get_authenticator),
) -> JSONResponse:
    """200 {"valid": true} for a usable link; TokenInvalid (400) otherwise."""
    authenticator.verify_reset_token(token)
    return _no_store(TokenStatusResponse(valid=True).model_dump())


@router.post("/passwords/{token}", response_model=MessageResponse)
def complete_reset(
    token: str,
    body: PasswordResetSubmit,
    authenticator: Authenticator = Depends(get_authenticator),
) -> JSONResponse:
    """Set the new password and burn the link."""
    authenticator.complete_password_reset(token, body.password, body.password_confirmation)
    return _no_store(MessageResponse(message=RESET_COMPLETED_MESSAGE).model_dump())
