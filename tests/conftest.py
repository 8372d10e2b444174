"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - FakeClock: a settable clock injected into stores and SessionManager so
    expiry can be tested without sleeping
  - build_service(): wires an AuthService on a given engine and clock
  - engine / service / clock: unit-test fixtures on a private in-memory DB
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG, RATE_LIMIT_ENABLED and BCRYPT_ROUNDS must be set before any auth/core
import: get_settings() is cached at first call and the limiter reads it at
import time.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.passwords import PasswordHasher
from auth.retry import RetryPolicy
from auth.schema import make_engine
from auth.service import AuthService
from auth.session_store import SqlSessionBackend
from auth.sessions import SessionManager
from auth.store import AccountStore, SqlAccountBackend
from core.config import get_settings

TEST_SECRET = "x" * 48


class FakeClock:
    """Callable returning a fixed, manually advanced UTC time."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_service(
    engine: Engine,
    clock=None,
    sliding_expiration: bool = False,
    session_ttl: timedelta = timedelta(hours=24),
    reservation_ttl: timedelta = timedelta(minutes=5),
    rounds: int = 4,
) -> AuthService:
    """Wire an AuthService by hand so tests control the clock and TTLs."""
    retry = RetryPolicy(attempts=3, base_delay=0, max_delay=0)
    clock_kwargs = {"clock": clock} if clock is not None else {}
    accounts = AccountStore(SqlAccountBackend(engine), retry=retry, reservation_ttl=reservation_ttl, **clock_kwargs)
    sessions = SessionManager(
        SqlSessionBackend(engine),
        accounts,
        TEST_SECRET,
        retry=retry,
        sliding_expiration=sliding_expiration,
        **clock_kwargs,
    )
    return AuthService(accounts, sessions, PasswordHasher(rounds=rounds), session_ttl=session_ttl)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(engine: Engine, clock: FakeClock) -> AuthService:
    return build_service(engine, clock)


@pytest.fixture
def make_service(engine: Engine, clock: FakeClock):
    """Factory for services on the shared engine and clock with non-default options."""

    def _make(**kwargs) -> AuthService:
        return build_service(engine, clock, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and service into app.state so TestClient routes see
    an isolated database. maintenance_task is a long-sleeping coroutine so
    shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = service
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.maintenance_task

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    One TestClient per test module for speed; tests use distinct usernames and
    emails so they do not step on each other.
    """
    url = f"sqlite:///file:test_auth_{request.module.__name__}?mode=memory&cache=shared&uri=true"
    eng = make_engine(url)
    svc = AuthService.from_settings(get_settings(), eng)

    app.router.lifespan_context = _patch_lifespan(eng, svc)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc

    eng.dispose()
