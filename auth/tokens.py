"""
auth/tokens.py -- Password hashing, random token generation, and cookie helpers.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Every hash carries its
       own random salt and cost factor, so hashing the same password twice
       yields different strings. The _DUMMY_HASH constant lets callers burn
       one bcrypt verification on paths that have nothing real to verify
       (unknown email, unknown selector) so response time does not reveal
       which case occurred.

  Session tokens: secrets.token_urlsafe(32) -- 256 bits of entropy, far above
       the 128-bit floor. Stored in plaintext and looked up by UNIQUE index;
       the entropy is what makes them unguessable.

  Reset tokens: selector + ":" + verifier. The selector (128 bits) is a plain
       lookup key. The verifier (256 bits) is the secret; only its bcrypt hash
       is stored, and it is checked with verify_password() like a password.
       Both halves use the URL-safe base64 alphabet, which never contains ":".

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from core.config import get_settings

if TYPE_CHECKING:
    from starlette.responses import Response

    from core.config import Settings

logger = logging.getLogger("simpleauth.auth")

_settings = get_settings()

RESET_TOKEN_SEPARATOR = ":"

# bcrypt only looks at the first 72 bytes of its input and bcrypt>=5 refuses
# longer input outright.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext.

    rounds defaults to BCRYPT_ROUNDS; Authenticator passes the cost from the
    settings it was built with. Callers validate length first (see
    Authenticator.validate_new_password); input longer than 72 bytes raises
    ValueError from bcrypt.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    Never raises: a malformed or empty hash, a non-string, or over-long input
    all come back as False. bcrypt.checkpw compares digests in constant time.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# Computed once at module load so the first failed lookup is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("simpleauth_timing_dummy")


def burn_verification(plain: str, dummy_hash: str | None = None) -> None:
    """Spend one bcrypt verification without a real hash to check against.

    dummy_hash must share the cost factor of the real hashes it stands in for.
    """
    verify_password(plain, dummy_hash or _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Random values
# ---------------------------------------------------------------------------


def generate_session_token() -> str:
    """Return a fresh session token (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def generate_selector() -> str:
    """Return a fresh reset-token selector (128 bits, URL-safe)."""
    return secrets.token_urlsafe(16)


def generate_verifier() -> str:
    """Return a fresh reset-token verifier (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Reset token wire format
# ---------------------------------------------------------------------------


def combine_reset_token(selector: str, verifier: str) -> str:
    return f"{selector}{RESET_TOKEN_SEPARATOR}{verifier}"


def split_reset_token(combined: str | None) -> tuple[str, str] | None:
    """Split "<selector>:<verifier>" on the FIRST separator only.

    A verifier that itself contains ":" stays one value. Returns None when the
    input has no separator or either half is empty.
    """
    if not combined:
        return None
    parts = combined.split(RESET_TOKEN_SEPARATOR, 1)
    if len(parts) != 2:
        return None
    selector, verifier = parts
    if not selector or not verifier:
        return None
    return selector, verifier


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response: Response, token: str, settings: Settings | None = None) -> None:
    """Write the session token as a cookie on the response.

    httponly: JS cannot read the cookie (XSS mitigation), on by default.
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for forms.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    """
    settings = settings or _settings
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        max_age=settings.session_max_age,
        path=settings.session_cookie_path,
        httponly=settings.session_http_only,
        secure=settings.secure_cookies,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings | None = None) -> None:
    """Overwrite the session cookie with an empty value and max-age 0.

    Uses the same name, path and flags as set_session_cookie(); a browser only
    replaces a cookie whose name and path match.
    """
    settings = settings or _settings
    response.set_cookie(
        settings.session_cookie_name,
        value="",
        max_age=0,
        path=settings.session_cookie_path,
        httponly=settings.session_http_only,
        secure=settings.secure_cookies,
        samesite="lax",
    )
