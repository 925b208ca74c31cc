"""
tests/conftest.py -- Shared test fixtures for CampusGuard unit and integration tests.

This module provides:
  - FakeClock: injectable clock that only moves when a test advances it
  - auth_store / device_store: isolated in-memory DBs per test
  - _patch_lifespan(): wires test stores into app.state via install_services()
  - api: module-scoped ApiHarness (TestClient + stores + admin token)
  - fresh_ip / ip_factory: client addresses no other test has used

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any core/auth import:
  DEBUG=true               -- get_settings() generates SECRET_KEY instead of raising
  BCRYPT_ROUNDS=4          -- keeps password hashing fast
  TRUST_FORWARDED_FOR=true -- tests pick their client IP with X-Forwarded-For
"""

from __future__ import annotations

import itertools
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

# CRITICAL: Set before any core/auth import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("TRUST_FORWARDED_FOR", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.models import Account, Role
from auth.store import AuthStore
from auth.tokens import create_access_token, hash_password
from core.clock import utc_now
from core.config import get_settings
from devices.store import DeviceStore
from ratelimit.store import build_counter_store
from services.subscriptions import InMemorySubscriptions

ADMIN_EMAIL = "admin@campusguard.test"
ADMIN_PASSWORD = "admin-pass-123"

# ---------------------------------------------------------------------------
# Clock and notifier doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock for injection. Time only moves via advance()."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier that remembers every (account_id, kind) it was given."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[int, str]] = []
        self.fail = fail

    def notify(self, account_id: int, event_kind: str) -> None:
        if self.fail:
            raise ConnectionError("notification gateway down")
        self.sent.append((account_id, event_kind))


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    """Unique named shared-memory SQLite URL, so no two fixtures share state."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_store(clock: FakeClock) -> Generator[AuthStore, None, None]:
    store = AuthStore(_memory_url("test_auth"), clock=clock)
    yield store
    store.close()


@pytest.fixture
def device_store(clock: FakeClock) -> Generator[DeviceStore, None, None]:
    store = DeviceStore(_memory_url("test_devices"), clock=clock)
    yield store
    store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


_ip_counter = itertools.count(1)


def next_ip() -> str:
    """A client address unused by any other test, so rate windows start empty."""
    n = next(_ip_counter)
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


@pytest.fixture
def fresh_ip() -> str:
    return next_ip()


@pytest.fixture
def ip_factory():
    """For tests that need several client addresses."""
    return next_ip


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    clock: FakeClock
    auth_store: AuthStore
    device_store: DeviceStore
    subscriptions: InMemorySubscriptions
    notifier: RecordingNotifier
    admin_id: int
    admin_token: str = ""
    admin_email: str = ADMIN_EMAIL
    admin_password: str = ADMIN_PASSWORD
    _emails: itertools.count = field(default_factory=lambda: itertools.count(1))

    def admin_headers(self, ip: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.admin_token}", "X-Forwarded-For": ip}

    def new_email(self, label: str = "user") -> str:
        return f"{label}{next(self._emails)}@campusguard.test"

    def register(self, ip: str, email: str | None = None, password: str = "correct-horse-1") -> dict:
        """Register an account over HTTP and return the response `data`."""
        resp = self.client.post(
            "/api/v1/auth/register",
            json={"email": email or self.new_email(), "password": password, "name": "Test User"},
            headers={"X-Forwarded-For": ip},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]


def _patch_lifespan(
    auth_store: AuthStore,
    device_store: DeviceStore,
    subscriptions: InMemorySubscriptions,
    notifier: RecordingNotifier,
    clock: FakeClock,
):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database. Rate windows run
    on a fresh in-process limits storage per module.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(
            app,
            get_settings(),
            auth_store=auth_store,
            device_store=device_store,
            counter_store=build_counter_store(),
            subscriptions=subscriptions,
            notifier=notifier,
            clock=clock,
        )
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers, guards and middleware but use isolated
    in-memory stores. An admin account exists before the client starts.
    """
    clock = FakeClock()
    auth_store = AuthStore(_memory_url("api_auth"), clock=clock)
    device_store = DeviceStore(_memory_url("api_devices"), clock=clock)
    subscriptions = InMemorySubscriptions()
    notifier = RecordingNotifier()

    admin_id = auth_store.create_account(
        Account(email=ADMIN_EMAIL, password_hash=hash_password(ADMIN_PASSWORD), role=Role.ADMIN.value, name="Admin")
    )

    app.router.lifespan_context = _patch_lifespan(auth_store, device_store, subscriptions, notifier, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        harness = ApiHarness(
            client=client,
            clock=clock,
            auth_store=auth_store,
            device_store=device_store,
            subscriptions=subscriptions,
            notifier=notifier,
            admin_id=admin_id,
        )
        # Thirty days: outlives any clock.advance() in a module.
        harness.admin_token = create_access_token(admin_id, Role.ADMIN.value, clock(), 30 * 24 * 3600)
        yield harness

    device_store.close()
    auth_store.close()
