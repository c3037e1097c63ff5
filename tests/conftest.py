"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite AuthStore
  - FakeClock: settable clock for exact expiry-boundary tests
  - make_init_data(): build initData signed with the test bot token
    (exposed to tests as the signed_init_data fixture)
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient over https so Secure cookies round-trip

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

TELEGRAM_BOT_TOKEN must be set before any app import so get_settings()
(cached on first call) sees it.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

TEST_BOT_TOKEN = "123456:TEST-bot-token-for-unit-tests"

# CRITICAL: set before any auth/core/api import.
os.environ["TELEGRAM_BOT_TOKEN"] = TEST_BOT_TOKEN

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import build_services
from asgi import app
from auth.ratelimit import RateLimiter
from auth.signature import sign_init_data
from auth.store import AuthStore
from core.config import get_settings

# ---------------------------------------------------------------------------
# Store / clock helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "test_auth") -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    A uuid suffix keeps every call on its own database, so tests never see
    each other's rows.
    """
    return AuthStore(db_url=f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


def make_init_data(
    user_id: int,
    auth_date: int | None = None,
    bot_token: str = TEST_BOT_TOKEN,
    **user_fields,
) -> str:
    """Return initData for user_id signed the way the platform signs it."""
    user = {"id": user_id, **user_fields}
    fields = {
        "query_id": "AAE-test-query",
        "user": json.dumps(user, separators=(",", ":")),
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
    }
    return sign_init_data(fields, bot_token)


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the production wiring (build_services) against the test store and a
    fresh in-memory RateLimiter.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), store, RateLimiter())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthStore], None, None]:
    """Yield (client, store) for API integration tests.

    One client and one database per test so cookie jars and rate-limit
    counters never leak between tests. base_url is https so the Secure
    session cookie is sent back on later requests.
    """
    store = make_store("test_api")
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as client:
        yield client, store

    store.close()


@pytest.fixture
def bot_token() -> str:
    return TEST_BOT_TOKEN


@pytest.fixture
def signed_init_data():
    """Factory fixture: signed_init_data(user_id, auth_date=None, bot_token=..., **user_fields)."""
    return make_init_data


@pytest.fixture
def login(api_client):
    """Factory fixture: POST freshly signed initData on the api_client and return the response."""
    client, _ = api_client

    def _login(user_id: int = 4242, **user_fields):
        return client.post(
            "/api/v1/auth/telegram/webapp",
            json={"initData": make_init_data(user_id, **user_fields)},
        )

    return _login
