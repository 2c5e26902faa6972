"""
tests/conftest.py -- Shared test fixtures for UserDir.

This module provides:
  - _make_test_store(): creates an isolated in-memory auth DB
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - store / service: seeded UserStore and AuthService for unit tests
  - client: TestClient over the real FastAPI app with a patched lifespan
  - admin_headers: Authorization header for the seeded admin user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() auto-generates
the signing secrets rather than raising ValueError. BCRYPT_ROUNDS=4 keeps the
suite fast; production defaults to 10.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_state
from auth.seed import ADMIN_ROLE, seed_admin_user, seed_defaults
from auth.service import AuthService
from auth.store import UserStore

ADMIN_PASSWORD = "admin-pass-123"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    A random name per call keeps tests from seeing each other's rows.
    """
    return UserStore(db_url=f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, user_store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    """Fresh store with the default permissions and the admin/user roles."""
    s = _make_test_store()
    seed_defaults(s)
    yield s
    s.close()


@pytest.fixture
def service(store: UserStore) -> AuthService:
    return AuthService(store)


@pytest.fixture
def client(store: UserStore) -> Generator[TestClient, None, None]:
    """TestClient over the real app, backed by the test store.

    The shared limiter is reset so rate-limit counters never leak between
    tests.
    """
    app.router.lifespan_context = _patch_lifespan(store)
    limiter.reset()
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def admin_headers(client: TestClient, store: UserStore) -> dict[str, str]:
    """Bearer header for user 'admin', who holds every default permission."""
    seed_admin_user(store, store.get_role_by_name(ADMIN_ROLE), ADMIN_PASSWORD)
    resp = client.post("/api/v1/auth/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['accessToken']}"}
