"""
tests/conftest.py -- Shared test fixtures for authguard.

This module provides:
  - FakeClock: controllable UTC clock injected into every time-aware component
  - RecordingEmailSender: EmailSender that keeps outgoing messages in memory
  - make_test_store(): isolated in-memory user store
  - make_settings(): Settings with a fixed secret and cheap bcrypt rounds
  - api: function-scoped Harness (TestClient + components + clock + outbox)
  - frozen: freezegun factory pinned to the current second, for rate-limit windows

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The api fixture is function-scoped: rate-limit counters and the auth event
log live in the components, and most route tests need a clean slate.

DEBUG and ALLOWED_HOSTS must be set before any api/core import so
get_settings() auto-generates JWT_SECRET and TrustedHostMiddleware accepts
the TestClient host.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any api/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from freezegun import freeze_time
from freezegun.api import FrozenDateTimeFactory

from api.components import AppComponents, build_components
from api.main import app
from auth.store import UserStore
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
TEST_REFRESH_SECRET = "test-refresh-secret-also-long-enough-9876543210"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class SentEmail:
    to: str
    subject: str
    html: str
    text: str


@dataclass
class RecordingEmailSender:
    """EmailSender that records messages; set fail=True to simulate an outage."""

    fail: bool = False
    sent: list[SentEmail] = field(default_factory=list)

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        if self.fail:
            return False
        self.sent.append(SentEmail(to, subject, html, text))
        return True

    def last_token(self) -> str:
        """Pull the verification token out of the most recent link."""
        text = self.sent[-1].text
        return text.split("token=", 1)[1].split()[0]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_test_store(db_suffix: str | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name. Defaults to a uuid so
                   every call gets its own database.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return UserStore(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "jwt_secret": TEST_SECRET,
        "jwt_refresh_secret": TEST_REFRESH_SECRET,
        "bcrypt_rounds": 4,
        "allowed_hosts": ["testserver", "localhost"],
        "email_provider": "console",
    }
    values.update(overrides)
    return Settings(**values)


def _patch_lifespan(components: AppComponents):
    """Return an async context manager that replaces the real lifespan.

    Installs pre-built test components on app.state so TestClient routes see
    the isolated store, fake clock and recording sender. No flush task runs;
    tests call audit.flush() directly when they care.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.components = components
        yield
        components.close()

    return test_lifespan


@dataclass
class Harness:
    client: TestClient
    components: AppComponents
    clock: FakeClock
    outbox: RecordingEmailSender

    @property
    def store(self) -> UserStore:
        return self.components.user_store

    @property
    def audit(self):
        return self.components.audit

    def signup(self, email: str = "a@b.com", password: str = "Str0ng!Pass", **extra):
        return self.client.post("/auth/signup", json={"email": email, "password": password, **extra})

    def verify(self, email: str = "a@b.com") -> None:
        """Mark an account verified through the real GET /auth/verify-email flow."""
        user = self.store.find_by_email(email)
        resp = self.client.get("/auth/verify-email", params={"token": user.verification_token})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"

    def login(self, email: str = "a@b.com", password: str = "Str0ng!Pass", **kwargs):
        return self.client.post("/auth/login", json={"email": email, "password": password}, **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def frozen() -> Generator[FrozenDateTimeFactory, None, None]:
    """Freeze wall-clock time at the current whole second.

    Rate-limit windows follow time.time() inside the limits storage, not the
    injected clock. Starting from real "now" keeps the storage's background
    expiry timer, which reads real time, from evicting live counters.
    """
    start = datetime.now(timezone.utc).replace(microsecond=0)
    with freeze_time(start, real_asyncio=True) as factory:
        yield factory


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_test_store()
    yield user_store
    user_store.close()


@pytest.fixture
def api(clock: FakeClock) -> Generator[Harness, None, None]:
    """Yield a Harness around the real app with fresh, isolated components.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, pipelines and middleware.
    """
    outbox = RecordingEmailSender()
    components = build_components(make_settings(), user_store=make_test_store(), email_sender=outbox, clock=clock)
    app.router.lifespan_context = _patch_lifespan(components)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Harness(client=client, components=components, clock=clock, outbox=outbox)
