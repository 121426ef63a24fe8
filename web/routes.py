"""
web/routes.py -- Jinja2 template routes for the SimpleAuth web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same store, authenticator, mailer) but return HTML and redirects
instead of JSON. One-shot notices travel in the signed "flash" cookie kept by
Starlette's SessionMiddleware.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /posts/new must be registered before GET /posts/{post_id} or FastAPI
    captures "new" as a path parameter.

Routes:
  GET  /session/new             -- login form
  POST /session                 -- handle password login
  GET  /session/destroy         -- logout (link)
  POST /session/destroy         -- logout (form)
  GET  /passwords/new           -- reset request form
  POST /passwords               -- request reset link
  GET  /passwords/{token}/edit  -- new password form (valid link only)
  POST /passwords/{token}       -- set the new password
  GET  /                        -- home (auth required)
  GET  /posts                   -- public index inside the protected group
  GET  /posts/new               -- auth required (group)
  GET  /posts/{post_id}         -- auth required (group)
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.access import access_rules
from auth.dependencies import get_authenticator, get_current, require_password_reset_enabled
from auth.errors import PasswordValidationError, TokenInvalid
from auth.middleware import get_client_ip
from auth.models import Current
from auth.service import Authenticator
from auth.tokens import clear_session_cookie, set_session_cookie

logger = logging.getLogger("simpleauth.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Access rules
#
# Declared here, next to the routes they govern. See auth/access.py for the
# precedence between endpoint and group declarations.
# ---------------------------------------------------------------------------

access_rules.require("GET", "/")
access_rules.require_group("/posts")
access_rules.allow("GET", "/posts")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
RESET_REQUESTED_MESSAGE = "If an account exists for that email, you will receive password reset instructions shortly."
RESET_COMPLETED_MESSAGE = "Your password has been reset. Please sign in."
SIGNED_OUT_MESSAGE = "You have been signed out."

_reset_enabled = [Depends(require_password_reset_enabled)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> Optional[str]:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones ("//evil.example"), which
    would send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return None


def flash(request: Request, kind: str, message: str) -> None:
    """Queue a notice ("notice" or "alert") for the next rendered page."""
    request.session.setdefault("flash", {})[kind] = message


def _render(request: Request, name: str, **context) -> HTMLResponse:
    context.setdefault("current", get_current(request))
    context["flash"] = request.session.pop("flash", {})
    return templates.TemplateResponse(request, name, context)


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=302)


def _no_store(response):
    response.headers["Cache-Control"] = "no-store"
    return response


def _login_url(authenticator: Authenticator, next_url: Optional[str] = None) -> str:
    url = authenticator.settings.login_url
    if next_url:
        url = f"{url}?next={quote(next_url, safe='/')}"
    return url


def _edit_url(token: str) -> str:
    return f"/passwords/{quote(token, safe=':')}/edit"


# ---------------------------------------------------------------------------
# Session: login / logout
# ---------------------------------------------------------------------------


@router.get("/session/new", response_class=HTMLResponse)
def login_form(
    request: Request,
    next: Optional[str] = None,
    current: Current = Depends(get_current),
    authenticator: Authenticator = Depends(get_authenticator),
) -> HTMLResponse:
    """Render the login form. Already-authenticated users go home."""
    if current.authenticated:
        return _redirect(authenticator.settings.home_url)
    return _no_store(
        _render(
            request,
            "sessions/new.html",
            next=_safe_next(next),
            reset_enabled=authenticator.settings.password_reset_enabled,
        )
    )


@router.post("/session", response_class=HTMLResponse)
def login_post(
    request: Request,
    email_address: str = Form(default=""),
    password: str = Form(default=""),
    next: Optional[str] = Form(default=None),
    current: Current = Depends(get_current),
    authenticator: Authenticator = Depends(get_authenticator),
) -> RedirectResponse:
    """Handle the login form. One message for every credential failure."""
    next_url = _safe_next(next or request.query_params.get("next"))
    user = authenticator.authenticate_user(email_address, password)
    if user is None:
        flash(request, "alert", INVALID_CREDENTIALS_MESSAGE)
        return _no_store(_redirect(_login_url(authenticator, next_url)))

    session = authenticator.start_session(current, user, get_client_ip(request), request.headers.get("user-agent"))
    resp = _redirect(next_url or authenticator.settings.home_url)
    set_session_cookie(resp, session.token, authenticator.settings)
    return _no_store(resp)


@router.api_route("/session/destroy", methods=["GET", "POST"])
def logout(
    request: Request,
    current: Current = Depends(get_current),
    authenticator: Authenticator = Depends(get_authenticator),
) -> RedirectResponse:
    """End the session and expire the cookie. Safe without a session."""
    if authenticator.terminate_session(current):
        flash(request, "notice", SIGNED_OUT_MESSAGE)
    resp = _redirect(authenticator.settings.login_url)
    clear_session_cookie(resp, authenticator.settings)
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/passwords/new", response_class=HTMLResponse, dependencies=_reset_enabled)
def reset_request_form(request: Request) -> HTMLResponse:
    return _no_store(_render(request, "passwords/new.html"))


@router.post("/passwords", dependencies=_reset_enabled)
def reset_request_post(
    request: Request,
    background_tasks: BackgroundTasks,
    email_address: str = Form(default=""),
    authenticator: Authenticator = Depends(get_authenticator),
) -> RedirectResponse:
    """Issue a reset link. The response is the same whether or not the address is known."""
    email_address = email_address.strip()
    if email_address:
        issued = authenticator.request_password_reset(email_address)
        if issued is not None:
            background_tasks.add_task(request.app.state.mailer.send_password_reset, issued.user, issued.token)
    flash(request, "notice", RESET_REQUESTED_MESSAGE)
    resp = _redirect(authenticator.settings.login_url)
    resp.background = background_tasks
    return _no_store(resp)


@router.get("/passwords/{token}/edit", response_class=HTMLResponse, dependencies=_reset_enabled)
def reset_edit_form(
    request: Request,
    token: str,
    authenticator: Authenticator = Depends(get_authenticator),
) -> HTMLResponse:
    """Show the new password form, but only for a usable link."""
    try:
        authenticator.verify_reset_token(token)
    except TokenInvalid as exc:
        flash(request, "alert", exc.message)
        return _redirect("/passwords/new")
    return _no_store(_render(request, "passwords/edit.html", token=token))


@router.post("/passwords/{token}", dependencies=_reset_enabled)
def reset_update(
    request: Request,
    token: str,
    password: str = Form(default=""),
    password_confirmation: str = Form(default=""),
    authenticator: Authenticator = Depends(get_authenticator),
) -> RedirectResponse:
    """Set the new password. Link problems restart the flow; password problems retry the form."""
    try:
        authenticator.complete_password_reset(token, password, password_confirmation)
    except TokenInvalid as exc:
        flash(request, "alert", exc.message)
        return _no_store(_redirect("/passwords/new"))
    except PasswordValidationError as exc:
        flash(request, "alert", exc.message)
        return _no_store(_redirect(_edit_url(token)))
    flash(request, "notice", RESET_COMPLETED_MESSAGE)
    return _no_store(_redirect(authenticator.settings.login_url))


# ---------------------------------------------------------------------------
# Home and posts
#
# Sample pages that show the access rules declared above. The posts are
# fixed sample data.
# ---------------------------------------------------------------------------

_POSTS: dict[int, dict] = {
    1: {"id": 1, "title": "Welcome", "body": "Anyone can read the post index."},
    2: {"id": 2, "title": "Members only", "body": "Reading a single post requires signing in."},
}


@router.get("/", response_class=HTMLResponse)
def home(request: Request, current: Current = Depends(get_current)) -> HTMLResponse:
    return _render(request, "home/index.html", user=current.user)


@router.get("/posts", response_class=HTMLResponse)
def posts_index(request: Request) -> HTMLResponse:
    return _render(request, "posts/index.html", posts=list(_POSTS.values()))


@router.get("/posts/new", response_class=HTMLResponse)
def posts_new(request: Request) -> HTMLResponse:
    return _render(request, "posts/new.html")


@router.get("/posts/{post_id}", response_class=HTMLResponse)
def posts_show(request: Request, post_id: int) -> HTMLResponse:
    post = _POSTS.get(post_id)
    if post is None:
        raise HTTPException(status_code=404)
    return _render(request, "posts/show.html", post=post)
