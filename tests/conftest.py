"""
tests/conftest.py -- Shared test fixtures for SimpleAuth.

This module provides:
  - store: an isolated AuthStore on a named shared-memory SQLite DB
  - clock / authenticator: an Authenticator whose notion of "now" tests can move
  - make_user: factory that seeds users with a known password
  - harness: TestClient over the full ASGI app (api + web) with a patched
    lifespan that wires the test store, authenticator, and a mock mailer into
    app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each test gets its own DB name, so no state leaks between tests.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is cached on first call, DEBUG lets it auto-generate
SECRET_KEY, and 4 rounds keeps bcrypt fast.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.mailer import PasswordsMailer
from auth.models import User
from auth.service import Authenticator
from auth.store import AuthStore, utcnow
from auth.tokens import hash_password
from core.config import get_settings

USER_EMAIL = "u1@example.com"
USER_PASSWORD = "password123"


class FakeClock:
    """Callable clock for Authenticator(clock=...). Starts at the real now."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _memory_db_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(db_url=_memory_db_url())
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def authenticator(store: AuthStore, clock: FakeClock) -> Authenticator:
    return Authenticator(store, get_settings(), clock=clock)


@pytest.fixture
def make_user(store: AuthStore):
    """Return a factory: make_user(email=USER_EMAIL, password=USER_PASSWORD) -> User."""

    def _make(email: str = USER_EMAIL, password: str = USER_PASSWORD) -> User:
        uid = store.create_user(User(email_address=email, password_digest=hash_password(password)))
        return store.get_by_id(uid)

    return _make


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    client: TestClient
    store: AuthStore
    authenticator: Authenticator
    mailer: MagicMock
    clock: FakeClock
    user: User
    password: str = USER_PASSWORD


def _patch_lifespan(store: AuthStore, authenticator: Authenticator, mailer: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    The cleanup task is a long-sleeping coroutine so shutdown still has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.authenticator = authenticator
        app.state.mailer = mailer
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def harness(
    store: AuthStore, authenticator: Authenticator, clock: FakeClock, make_user
) -> Generator[Harness, None, None]:
    """Full app with one seeded user (USER_EMAIL / USER_PASSWORD).

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which are invisible once the client follows them.
    """
    user = make_user()
    mailer = MagicMock(spec=PasswordsMailer)
    app.router.lifespan_context = _patch_lifespan(store, authenticator, mailer)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Harness(client=client, store=store, authenticator=authenticator, mailer=mailer, clock=clock, user=user)


@pytest.fixture
def login(harness: Harness):
    """Return a helper that logs the harness client in through the web form."""

    def _login(email: str = USER_EMAIL, password: str = USER_PASSWORD):
        return harness.client.post("/session", data={"email_address": email, "password": password})

    return _login
