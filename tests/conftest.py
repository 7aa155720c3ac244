"""
tests/conftest.py -- Shared test fixtures for TenantGate tests.

This module provides:
  - FrozenClock / clock: a controllable clock injected into every component
  - settings, store, service: an isolated in-memory auth core per test
  - scenario: principal P with Manager in company A (default) and Viewer in B
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient against the real app with seeded principals

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient fixture because route handlers run in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any api/auth/core import so
get_settings() auto-generates SECRET_KEY and TrustedHostMiddleware accepts
the TestClient host.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings, get_settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789abcdef"
PASSWORD = "correct-horse-battery"

COMPANY_A = "company-a"
COMPANY_B = "company-b"
COMPANY_C = "company-c"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET_KEY)


@pytest.fixture
def store(clock: FrozenClock) -> Generator[AuthStore, None, None]:
    s = AuthStore(clock=clock)
    yield s
    s.close()


@pytest.fixture
def service(settings: Settings, store: AuthStore, clock: FrozenClock) -> AuthService:
    return AuthService(settings, store, clock=clock)


@dataclass
class Scenario:
    service: AuthService
    principal_id: str
    outsider_id: str


@pytest.fixture
def scenario(service: AuthService) -> Scenario:
    """P: Manager in A (default), Viewer in B, nothing in C. Q: Employee in C only."""
    p = service.create_principal("p@example.com", "p.user", PASSWORD, display_name="Principal P")
    service.add_member(COMPANY_A, p.id, "Manager", is_default=True)
    service.add_member(COMPANY_B, p.id, "Viewer")
    q = service.create_principal("q@example.com", "q.user", PASSWORD)
    service.add_member(COMPANY_C, q.id, "Employee")
    return Scenario(service=service, principal_id=p.id, outsider_id=q.id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    service: AuthService
    admin_id: str
    manager_id: str
    viewer_id: str


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    Seeded principals (password PASSWORD for all):
      admin@example.com   -- Admin in A (default), Viewer in B
      manager@example.com -- Manager in A (default)
      viewer@example.com  -- Viewer in A (default)
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    store = AuthStore(db_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    service = AuthService(get_settings(), store)

    admin = service.create_principal("admin@example.com", "admin", PASSWORD)
    service.add_member(COMPANY_A, admin.id, "Admin", is_default=True)
    service.add_member(COMPANY_B, admin.id, "Viewer")
    manager = service.create_principal("manager@example.com", "manager", PASSWORD)
    service.add_member(COMPANY_A, manager.id, "Manager", is_default=True)
    viewer = service.create_principal("viewer@example.com", "viewer", PASSWORD)
    service.add_member(COMPANY_A, viewer.id, "Viewer", is_default=True)

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(
            client=client,
            service=service,
            admin_id=admin.id,
            manager_id=manager.id,
            viewer_id=viewer.id,
        )

    store.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Start every test with empty slowapi counters so login-heavy modules do not trip 429."""
    limiter.reset()
