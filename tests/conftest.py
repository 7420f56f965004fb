"""
tests/conftest.py -- Shared test fixtures for LibraryAuth tests.

This module provides:
  - memory_db_url(): a unique named shared-memory SQLite URL per call
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - auth_stack: (store, ledger, sessions) on an isolated in-memory database
  - api_client: TestClient bound to a fresh auth_stack
  - make_user / bearer: factories that seed accounts and build Authorization headers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import:
  DEBUG=true          get_settings() auto-generates both secrets
  BCRYPT_ROUNDS=4     keeps password hashing fast in tests
  ALLOWED_HOSTS       TestClient sends Host: testserver
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.ledger import RefreshTokenLedger
from auth.models import User
from auth.service import SessionManager
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url() -> str:
    """Return a named shared-memory SQLite URL unique to the caller.

    Each test gets its own database, so no test sees another test's users
    or refresh tokens.
    """
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _patch_lifespan(store: UserStore, ledger: RefreshTokenLedger, sessions: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.ledger = ledger
        app.state.sessions = sessions
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_stack() -> Generator[tuple[UserStore, RefreshTokenLedger, SessionManager], None, None]:
    """Yield (store, ledger, sessions) wired to one isolated database."""
    store = UserStore(db_url=memory_db_url())
    ledger = RefreshTokenLedger(store.engine)
    sessions = SessionManager(store, ledger)
    yield store, ledger, sessions
    store.close()


@pytest.fixture
def api_client(auth_stack) -> Generator[TestClient, None, None]:
    """Yield a TestClient running the real app against auth_stack.

    Tests that also need direct store access request auth_stack alongside
    api_client; pytest hands both the same instance.
    """
    app.router.lifespan_context = _patch_lifespan(*auth_stack)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def make_user(auth_stack) -> Callable[..., User]:
    """Return a factory that inserts a user directly and returns the stored row.

    Bypasses SessionManager so tests can seed admins, inactive accounts and
    branch assignments in one call.
    """
    store, _ledger, _sessions = auth_stack

    def _make(
        email: str,
        password: str = "Password123!",
        role: str = "staff",
        branch_id: int | None = None,
        is_active: bool = True,
    ) -> User:
        uid = store.create_user(
            User(
                email=email,
                password_hash=hash_password(password),
                role=role,
                branch_id=branch_id,
                is_active=is_active,
            )
        )
        return store.get_by_id(uid)

    return _make


@pytest.fixture
def bearer() -> Callable[[User], dict[str, str]]:
    """Return a helper that builds an Authorization header for a user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user).token}"}

    return _headers
