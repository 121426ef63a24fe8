"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_user / _row_to_session / _row_to_reset_token
are the mappers. Service and route code never touches SQL directly.

One concrete class backs all three storage roles the Authenticator depends on
(CredentialStore, SessionStore, ResetTokenStore in auth/service.py). They share
one engine so the reset completion can delete the token and update the
password in a single transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Uniqueness is enforced by the database, not by read-then-write checks:
    users.email_address            -- one account per (normalized) address
    sessions.token                 -- a session token is never reused
    password_reset_tokens.selector -- lookup key must resolve to one row
    password_reset_tokens.user_id  -- at most one live reset token per user
  An insert that violates one of these raises sqlalchemy.exc.IntegrityError;
  the Authenticator treats that as "generate a new value and retry".

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond precision,
so string comparison in SQL is chronological comparison.

DB path: auth/simpleauth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import ResetToken, Session, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email_address", String(255), nullable=False, unique=True),
    Column("password_digest", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_sessions_user_id", "user_id"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("selector", String(64), nullable=False, unique=True),
    Column("verifier_hash", Text, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_password_reset_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the
    ON DELETE CASCADE clauses above take effect.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookup: stripped, lowercase."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, Session and ResetToken entities.

    Usage:
        store = AuthStore()
        uid = store.create_user(User(email_address="a@example.com", password_digest=hash_password("secret")))
        user = store.get_by_email("A@Example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except Exception:
            return False
        return True

    # ------------------------------------------------------------------
    # User queries (CredentialStore)
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email address is taken
        (compared after normalization).
        """
        now = _to_db(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email_address=normalize_email(user.email_address),
                    password_digest=user.password_digest,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email address (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_address == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Session queries (SessionStore)
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        """Insert a session row and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if the token already exists or the
        user_id does not reference a user.
        """
        created_at = session.created_at or utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token=session.token,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=_to_db(created_at),
                )
            )
            conn.commit()
        session.id = result.inserted_primary_key[0]
        session.created_at = created_at
        return session

    def get_session_by_token(self, token: str) -> Session | None:
        """Return the session for a token with its owning User attached, or None."""
        stmt = (
            select(
                _sessions,
                _users.c.email_address,
                _users.c.password_digest,
                _users.c.created_at.label("user_created_at"),
                _users.c.updated_at.label("user_updated_at"),
            )
            .join_from(_sessions, _users, _sessions.c.user_id == _users.c.id)
            .where(_sessions.c.token == token)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reset token queries (ResetTokenStore)
    # ------------------------------------------------------------------

    def replace_reset_token(self, token: ResetToken) -> ResetToken:
        """Delete every reset token of token.user_id and insert this one, atomically.

        Both statements run in one transaction. If a concurrent request for the
        same user commits first, the UNIQUE(user_id) constraint makes this insert
        fail with IntegrityError and the whole transaction rolls back -- the end
        state is always exactly one live token, never zero and never two.
        """
        created_at = token.created_at or utcnow()
        with self.engine.connect() as conn:
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == token.user_id))
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=token.user_id,
                    selector=token.selector,
                    verifier_hash=token.verifier_hash,
                    expires_at=_to_db(token.expires_at),
                    created_at=_to_db(created_at),
                )
            )
            conn.commit()
        token.id = result.inserted_primary_key[0]
        token.created_at = created_at
        return token

    def get_reset_token_by_selector(self, selector: str) -> ResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.selector == selector)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def count_reset_tokens(self, user_id: int | None = None) -> int:
        stmt = select(func.count()).select_from(_reset_tokens)
        if user_id is not None:
            stmt = stmt.where(_reset_tokens.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    def consume_reset_token(self, selector: str, user_id: int, password_digest: str, now: datetime) -> bool:
        """Delete the token and set the new password digest in ONE transaction.

        The token delete runs first and must remove exactly one live row. Two
        concurrent completions of the same link race on that delete; only one
        sees rowcount == 1, the other rolls back without touching the password.
        If the user row has vanished the password update affects nothing and
        the token delete is rolled back too.

        Returns True only if both writes happened.
        """
        with self.engine.connect() as conn:
            deleted = conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.selector == selector)
                    & (_reset_tokens.c.user_id == user_id)
                    & (_reset_tokens.c.expires_at >= _to_db(now))
                )
            ).rowcount
            if deleted != 1:
                conn.rollback()
                return False
            updated = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_digest=password_digest, updated_at=_to_db(now))
            ).rowcount
            if updated != 1:
                conn.rollback()
                return False
            conn.commit()
        return True

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        """Bulk-delete tokens whose expires_at is before now. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_reset_tokens.delete().where(_reset_tokens.c.expires_at < _to_db(now)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email_address=row.email_address,
        password_digest=row.password_digest,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _row_to_session(row) -> Session:
    # The joined user columns are only present on get_session_by_token() rows.
    user = None
    email = getattr(row, "email_address", None)
    if email is not None:
        user = User(
            id=row.user_id,
            email_address=email,
            password_digest=row.password_digest,
            created_at=_from_db(row.user_created_at),
            updated_at=_from_db(row.user_updated_at),
        )
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=_from_db(row.created_at),
        user=user,
    )


def _row_to_reset_token(row) -> ResetToken:
    return ResetToken(
        id=row.id,
        user_id=row.user_id,
        selector=row.selector,
        verifier_hash=row.verifier_hash,
        expires_at=_from_db(row.expires_at),
        created_at=_from_db(row.created_at),
    )
