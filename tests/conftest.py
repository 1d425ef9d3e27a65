"""
tests/conftest.py -- Shared test fixtures for TLC Portal tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for users + leads
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: module-scoped (client, user_store, outbox) for API tests
  - client: the same TestClient with its cookie jar emptied (anonymous)
  - FakeClock: controllable clock for AuthService expiry tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import so
get_settings() sees them on its first (cached) call.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import. DEBUG lets get_settings()
# auto-generate SECRET_KEY; TestClient sends Host: testserver; the login
# limit is raised so route tests are not throttled by each other.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import hash_password
from leads.store import LeadStore

ADMIN_EMAIL = "admin@tlc-consult.com"
ADMIN_PASSWORD = "adminpass123"
LEARNER_EMAIL = "learner@tlc-consult.com"
LEARNER_PASSWORD = "learnerpass1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock starting at the real current time; advance() moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _make_test_stores(db_suffix: str) -> tuple[UserStore, LeadStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'leads').
    """
    user_url = f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true"
    lead_url = f"sqlite:///file:test_leads_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=user_url), LeadStore(db_url=lead_url)


def _seed_users(user_store: UserStore) -> None:
    user_store.create_user(
        User(
            email=ADMIN_EMAIL,
            first_name="Ada",
            last_name="Admin",
            hashed_password=hash_password(ADMIN_PASSWORD),
            role="admin",
        )
    )
    user_store.create_user(
        User(
            email=LEARNER_EMAIL,
            first_name="Lee",
            last_name="Learner",
            hashed_password=hash_password(LEARNER_PASSWORD),
        )
    )


def _patch_lifespan(user_store: UserStore, lead_store: LeadStore, outbox: list):
    """Return an async context manager that replaces the real lifespan.

    Reset links are captured in outbox as (email, raw_token) instead of being
    logged. The purge_task is a long-sleeping coroutine so shutdown can
    cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.lead_store = lead_store
        app.state.auth_service = AuthService(
            user_store,
            notifier=lambda user, token: outbox.append((user.email, token)),
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def login(client: TestClient, email: str, password: str, **extra):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password, **extra})


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, UserStore, list], None, None]:
    """Yield (client, user_store, outbox) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers and middleware but use isolated in-memory
    stores. An admin and a learner account exist before the client starts.
    """
    module_suffix = os.urandom(4).hex()
    user_store, lead_store = _make_test_stores(module_suffix)
    _seed_users(user_store)
    outbox: list[tuple[str, str]] = []

    app.router.lifespan_context = _patch_lifespan(user_store, lead_store, outbox)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, user_store, outbox

    lead_store.close()
    user_store.close()


@pytest.fixture
def client(api_client) -> TestClient:
    """The module's TestClient with no session or remember-me cookies."""
    test_client, _, _ = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    """Fresh in-memory UserStore for unit tests (single thread, so :memory: is fine)."""
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
