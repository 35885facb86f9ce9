"""
tests/conftest.py -- Shared test fixtures for the marketplace auth tests.

This module provides:
  - FakeClock: a controllable "now" shared by AuthService and SessionGate
  - database / store fixtures over a file-backed SQLite DB in tmp_path
  - service / gate fixtures wired exactly as api.main.build_auth_components does
  - api_client: TestClient over the real app with a patched lifespan

Design: file-backed SQLite (not :memory:) because several tests hit the
stores from multiple threads at once. Each thread gets its own pooled
connection, and all of them must see the same database.

The environment must be prepared before any module that calls get_settings()
is imported: DEBUG=true auto-generates SECRET_KEY, BCRYPT_ROUNDS=4 keeps
hashing fast, and ALLOWED_HOSTS admits TestClient's "testserver" host.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from auth.db import AuthDatabase
from auth.gate import SessionGate
from auth.models import RequestContext
from auth.service import AuthService
from auth.store import IdentityStore, ResetTokenStore, SessionStore, UserStore
from auth.tokens import PasswordHasher

TEST_SECRET_KEY = "test-secret-key-that-is-at-least-32-chars"

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


class FakeClock:
    """Callable returning a settable UTC "now"."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database(tmp_path) -> Generator[AuthDatabase, None, None]:
    db = AuthDatabase(f"sqlite:///{tmp_path / 'auth.db'}")
    yield db
    db.close()


@pytest.fixture
def users(database) -> UserStore:
    return UserStore(database)


@pytest.fixture
def sessions(database) -> SessionStore:
    return SessionStore(database)


@pytest.fixture
def reset_tokens(database) -> ResetTokenStore:
    return ResetTokenStore(database)


@pytest.fixture
def identities(database) -> IdentityStore:
    return IdentityStore(database)


@pytest.fixture
def secret_key() -> str:
    return TEST_SECRET_KEY


@pytest.fixture
def service(database, users, sessions, reset_tokens, identities, hasher, clock, secret_key) -> AuthService:
    return AuthService(
        database,
        users,
        sessions,
        reset_tokens,
        identities,
        hasher,
        secret_key=secret_key,
        clock=clock,
    )


@pytest.fixture
def gate(sessions, clock) -> SessionGate:
    return SessionGate(sessions, clock=clock)


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip_address="203.0.113.7", user_agent=CHROME_UA)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(database: AuthDatabase, mailer: MagicMock, oauth: MagicMock):
    """Return a lifespan that wires the real auth stack over a test database.

    The mailer and OAuth registry are mocks so no SMTP or provider traffic
    leaves the test process. No purge task is started.
    """
    from api.main import build_auth_components

    @asynccontextmanager
    async def test_lifespan(app):
        build_auth_components(app, database)
        app.state.mailer = mailer
        app.state.oauth = oauth
        yield

    return test_lifespan


@pytest.fixture
def api_client(tmp_path) -> Generator[tuple[TestClient, MagicMock, MagicMock], None, None]:
    """Yield (client, mailer_mock, oauth_mock) over an isolated database."""
    from api.main import app

    database = AuthDatabase(f"sqlite:///{tmp_path / 'api_auth.db'}")
    mailer = MagicMock()
    oauth = MagicMock()
    app.router.lifespan_context = _patch_lifespan(database, mailer, oauth)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, mailer, oauth

    database.close()
