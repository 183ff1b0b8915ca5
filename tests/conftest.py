"""
tests/conftest.py -- Shared test fixtures for Warden.

This module provides:
  - FakeClock / RecordingChannel: deterministic time and a delivery channel
    that keeps every message so tests can read the one-time codes.
  - service: an AuthService over an in-memory store with the fake clock.
  - make_user: creates a user with a password and returns a signed-in session.
  - api_client: TestClient with an admin session token for API integration tests.

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Unit tests call the service from the test thread only, so :memory: is enough.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.config import AuthConfig
from auth.delivery import DeliveryChannel
from auth.errors import DeliveryFailure
from auth.models import IssuedSession, Role, User
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import get_settings

TEST_SECRET = "test-secret-key-for-warden-0123456789abcdef"
DEFAULT_PASSWORD = "password123"

_CODE_RE = re.compile(r"<strong>(\d+)</strong>")


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannel(DeliveryChannel):
    """Keeps every message; raises DeliveryFailure while `fail` is set."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, destination: str, subject: str, body: str) -> None:
        if self.fail:
            raise DeliveryFailure()
        self.messages.append((destination, subject, body))

    def last_code(self, email: str) -> str:
        for destination, _subject, body in reversed(self.messages):
            if destination == email.lower():
                match = _CODE_RE.search(body)
                if match:
                    return match.group(1)
        raise AssertionError(f"no code was sent to {email}")


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def config() -> AuthConfig:
    return AuthConfig(secret_key=TEST_SECRET)


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: CredentialStore, config: AuthConfig, channel: RecordingChannel, clock: FakeClock) -> AuthService:
    return AuthService.build(store, config, channel, clock=clock)


@pytest.fixture
def make_user(service: AuthService):
    """Return a factory: make_user(email, role=...) -> IssuedSession.

    The user has a verified email and DEFAULT_PASSWORD, and is signed in once.
    """

    def _make(email: str, role: Role = Role.user, name: str = "Test User") -> IssuedSession:
        service.store.create_user(
            User(
                email=email,
                name=name,
                role=role,
                email_verified=True,
                hashed_password=hash_password(DEFAULT_PASSWORD),
            )
        )
        return service.sign_in_password(email, DEFAULT_PASSWORD)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Route rate limits count per client IP; every test starts from zero."""
    limiter.reset()


def _patch_lifespan(store: CredentialStore, auth: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and service into app.state and mocks the OAuth
    registry to prevent real network calls.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.store = store
        app.state.auth = auth
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[tuple[TestClient, str, RecordingChannel], None, None]:
    """Yield (client, admin_token, channel) for API integration tests.

    The admin user (admin@example.com, role admin) is created and given a
    session before the client starts. Emails sent by the API land in channel.
    Each test module gets its own named in-memory database.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = CredentialStore(db_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    channel = RecordingChannel()
    auth = AuthService.build(store, AuthConfig.from_settings(get_settings()), channel)

    admin = store.create_user(
        User(
            email="admin@example.com",
            name="Admin",
            role=Role.admin,
            email_verified=True,
            hashed_password=hash_password(DEFAULT_PASSWORD),
        )
    )
    _session, token = auth.sessions.create(admin.id)

    app.router.lifespan_context = _patch_lifespan(store, auth)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, channel

    store.close()
