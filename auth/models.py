"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Dataclasses own
domain shape; the store and the Authenticator do the work.

Secrets never show up in repr(): password_digest, session token, and
verifier_hash are declared with repr=False so an accidental log line or
traceback cannot leak them.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An identity that can log in.

    email_address is stored normalized (stripped, lowercase) by the store, so
    lookups are case-insensitive. password_digest is the bcrypt output and is
    never sent to clients.
    """

    email_address: str
    password_digest: str = field(default="", repr=False)
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """One authenticated client connection.

    token is the opaque bearer value carried in the session cookie. It is
    generated once and never reused or updated. ip_address and user_agent are
    recorded for display only; they are not checked on later requests.

    user is populated by the store when the session is looked up by token, so
    resuming a session costs one joined query.
    """

    user_id: int
    token: str = field(repr=False)
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    user: User | None = None


@dataclass
class ResetToken:
    """An outstanding password-reset request.

    The credential mailed to the user is "<selector>:<verifier>". Only the
    selector (a lookup key with no secrecy requirement) and a bcrypt hash of
    the verifier are persisted. A database dump therefore cannot be turned
    into a working reset link.
    """

    user_id: int
    selector: str
    verifier_hash: str = field(repr=False)
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class IssuedReset:
    """Result of a successful reset request: who to mail and what to send."""

    user: User
    token: str = field(repr=False)
    expires_at: datetime


@dataclass
class Current:
    """The authenticated (user, session) pair for ONE request.

    Built by the interceptor at request start, stored on request.state, and
    replaced with an empty instance when the request ends. It is passed
    around explicitly; there is no global or thread-local copy.
    """

    user: User | None = None
    session: Session | None = None

    @property
    def authenticated(self) -> bool:
        return self.session is not None

    def clear(self) -> None:
        self.user = None
        self.session = None
