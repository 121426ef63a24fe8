"""
auth/service.py -- Authentication core: login, sessions, and password reset.

Authenticator is the only place that combines the stores with the password
hasher. Routes call it; it never sees a Request or Response. Anything the
HTTP layer must do as a consequence (set a cookie, expire a cookie, send an
email) is returned to the caller as a value.

Security design decisions:
  Timing equalization: every failure path that would otherwise skip bcrypt
      (unknown email on login, unknown email on reset request, unknown or
      expired selector) burns one bcrypt verification instead. Success and
      failure paths land in the same timing class.

  Uniform failures: authenticate_user() returns None for both "no such user"
      and "wrong password". Every reset-token problem raises the same
      TokenInvalid. Only password validation failures carry a specific reason.

  Collisions: a UNIQUE violation on insert (session token, selector, or a
      second reset token for the same user) is retried with fresh random
      values. After _MAX_INSERT_ATTEMPTS the IntegrityError propagates.

  No locks across bcrypt: passwords and verifiers are hashed before the
      store opens its transaction.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth.errors import PasswordValidationError, TokenInvalid
from auth.models import Current, IssuedReset, ResetToken, Session, User
from auth.store import utcnow
from auth.tokens import (
    MAX_PASSWORD_BYTES,
    burn_verification,
    combine_reset_token,
    generate_selector,
    generate_session_token,
    generate_verifier,
    hash_password,
    split_reset_token,
    verify_password,
)
from core.config import Settings, get_settings

logger = logging.getLogger("simpleauth.auth")

MIN_PASSWORD_LENGTH = 8
_MAX_INSERT_ATTEMPTS = 3
_MAX_USER_AGENT_LENGTH = 512
_MAX_IP_ADDRESS_LENGTH = 64


# ---------------------------------------------------------------------------
# Storage protocols
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    def get_by_email(self, email: str) -> User | None: ...

    def get_by_id(self, user_id: int) -> User | None: ...


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Session | None: ...

    def delete_session(self, session_id: int) -> bool: ...


class ResetTokenStore(Protocol):
    def replace_reset_token(self, token: ResetToken) -> ResetToken: ...

    def get_reset_token_by_selector(self, selector: str) -> ResetToken | None: ...

    def consume_reset_token(self, selector: str, user_id: int, password_digest: str, now: datetime) -> bool: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


class AuthBackend(CredentialStore, SessionStore, ResetTokenStore, Protocol):
    """Everything Authenticator needs. auth.store.AuthStore implements it."""


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class Authenticator:
    """Login, session lifecycle, and the selector/verifier reset flow.

    Usage:
        auth = Authenticator(AuthStore())
        user = auth.authenticate_user("a@example.com", "password123")
        current = Current()
        session = auth.start_session(current, user, "10.0.0.1", "curl/8")
        # route sets the cookie: set_session_cookie(response, session.token)
    """

    def __init__(
        self,
        store: AuthBackend,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._now = clock
        self._dummy_hash = hash_password("simpleauth_timing_dummy", self._settings.bcrypt_rounds)

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate_user(self, email: str, password: str) -> User | None:
        """Return the User for a correct (email, password) pair, else None.

        Always runs bcrypt whether or not the user exists:
        - Unknown email: bcrypt runs against the dummy hash (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)
        Do NOT return early before the bcrypt call.
        """
        user = self._store.get_by_email(email)
        if user is None or not user.password_digest:
            burn_verification(password, self._dummy_hash)
            return None
        if not verify_password(password, user.password_digest):
            return None
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        current: Current,
        user: User,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Persist a new session for user and bind it to the request context.

        The caller must put session.token in the cookie (set_session_cookie).
        """
        if user.id is None:
            raise ValueError("Cannot start a session for an unsaved user.")
        if user_agent:
            user_agent = user_agent[:_MAX_USER_AGENT_LENGTH]
        if ip_address:
            ip_address = ip_address[:_MAX_IP_ADDRESS_LENGTH]
        session: Session | None = None
        for attempt in range(1, _MAX_INSERT_ATTEMPTS + 1):
            candidate = Session(
                user_id=user.id,
                token=generate_session_token(),
                ip_address=ip_address,
                user_agent=user_agent,
            )
            try:
                session = self._store.create_session(candidate)
                break
            except IntegrityError:
                if attempt == _MAX_INSERT_ATTEMPTS:
                    raise
                logger.warning("Session token collision on insert, retrying (attempt %d)", attempt)
        session.user = user
        current.user = user
        current.session = session
        logger.info("Session %s started for user_id=%s from %s", session.id, user.id, ip_address or "unknown")
        return session

    def resume_session(self, token: str | None) -> Current:
        """Build the request context for a session token.

        A missing or unknown token is not an error: the result is simply an
        unauthenticated (empty) context.
        """
        if not token:
            return Current()
        session = self._store.get_session_by_token(token)
        if session is None:
            return Current()
        return Current(user=session.user, session=session)

    def terminate_session(self, current: Current) -> bool:
        """Delete the context's session and clear the context.

        Returns True if a session was deleted. With no active session this is
        a no-op, so calling it twice is safe. The caller must expire the cookie
        (clear_session_cookie) either way.
        """
        session = current.session
        current.clear()
        if session is None or session.id is None:
            return False
        self._store.delete_session(session.id)
        logger.info("Session %s terminated for user_id=%s", session.id, session.user_id)
        return True

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> IssuedReset | None:
        """Issue a reset token for email, replacing any earlier one.

        Returns None when the address is unknown. Callers must answer the
        requester identically in both cases; only the mail step differs.
        """
        user = self._store.get_by_email(email)
        if user is None:
            burn_verification(generate_verifier(), self._dummy_hash)
            logger.info("Password reset requested for an unknown address")
            return None

        expires_at = self._now() + timedelta(seconds=self._settings.reset_token_expiry)
        combined = ""
        for attempt in range(1, _MAX_INSERT_ATTEMPTS + 1):
            selector = generate_selector()
            verifier = generate_verifier()
            token = ResetToken(
                user_id=user.id,
                selector=selector,
                verifier_hash=hash_password(verifier, self._settings.bcrypt_rounds),
                expires_at=expires_at,
            )
            try:
                self._store.replace_reset_token(token)
                combined = combine_reset_token(selector, verifier)
                break
            except IntegrityError:
                if attempt == _MAX_INSERT_ATTEMPTS:
                    raise
                logger.warning("Reset token insert conflict for user_id=%s, retrying (attempt %d)", user.id, attempt)

        logger.info("Password reset token issued for user_id=%s", user.id)
        return IssuedReset(user=user, token=combined, expires_at=expires_at)

    def verify_reset_token(self, combined: str | None) -> ResetToken:
        """Return the stored ResetToken if combined is a live, correct credential.

        Raises TokenInvalid for every failure: malformed, unknown selector,
        expired, or wrong verifier.
        """
        parts = split_reset_token(combined)
        if parts is None:
            logger.debug("Rejected malformed reset token")
            raise TokenInvalid()
        selector, verifier = parts

        token = self._store.get_reset_token_by_selector(selector)
        if token is None:
            burn_verification(verifier, self._dummy_hash)
            logger.debug("Rejected reset token: unknown selector")
            raise TokenInvalid()
        if token.is_expired(self._now()):
            burn_verification(verifier, self._dummy_hash)
            logger.debug("Rejected reset token: expired (user_id=%s)", token.user_id)
            raise TokenInvalid()
        if not verify_password(verifier, token.verifier_hash):
            logger.warning("Rejected reset token: verifier mismatch (user_id=%s)", token.user_id)
            raise TokenInvalid()
        return token

    @staticmethod
    def validate_new_password(password: str, confirmation: str) -> None:
        """Raise PasswordValidationError with a user-facing reason, or return."""
        if password != confirmation:
            raise PasswordValidationError("Passwords do not match")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise PasswordValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise PasswordValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    def complete_password_reset(self, combined: str | None, password: str, confirmation: str) -> User:
        """Set a new password using a reset link. The link is single-use.

        Order: verify the link, validate the password, hash it, then delete the
        token and write the digest in one transaction. A concurrent completion
        of the same link loses the race on the token delete and gets
        TokenInvalid; its password is never written.
        """
        token = self.verify_reset_token(combined)
        self.validate_new_password(password, confirmation)
        digest = hash_password(password, self._settings.bcrypt_rounds)

        if not self._store.consume_reset_token(token.selector, token.user_id, digest, self._now()):
            logger.warning("Reset token for user_id=%s was consumed concurrently or its user is gone", token.user_id)
            raise TokenInvalid()

        user = self._store.get_by_id(token.user_id)
        if user is None:
            raise TokenInvalid()
        logger.info("Password reset completed for user_id=%s", user.id)
        return user
