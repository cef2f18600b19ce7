"""
tests/conftest.py -- Shared test fixtures for iCloud Sentinel tests.

This module provides:
  - make_engine(): an isolated named shared-memory SQLite engine
  - _patch_lifespan(): wires test stores into app.state via init_state(),
    bypassing the real startup (no audit writer task, no maintenance task)
  - Console: the TestClient plus helpers to allow-list emails and sign in
  - console: module-scoped Console with follow_redirects=False
  - stores: AccountStore/AuditStore/AccessStore on a fresh engine for unit tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool and store calls
from async code go through asyncio.to_thread. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

The audit writer is NOT started by the test lifespan, so AuditEmitter writes
synchronously and audit assertions need no waiting.

The DEBUG env var must be set before any project import so get_settings()
auto-generates SECRET_KEY and ENCRYPTION_KEY instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any project import so get_settings() can
# auto-generate keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from accounts.store import AccountStore
from api.limiter import limiter
from api.main import app, init_state
from audit.emitter import AuditEmitter
from audit.models import Actor
from audit.store import AuditStore
from auth.models import AllowListEntry, Identity
from auth.store import AccessStore
from core.database import create_db_engine
from web.routes import router as web_router

# Mount the web router once (asgi.py does this in production).
if not any(getattr(route, "path", None) == "/login" for route in app.routes):
    app.include_router(web_router, tags=["Web UI"])


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_engine(name: str) -> Engine:
    """Engine on a uniquely named shared-memory SQLite database."""
    suffix = uuid.uuid4().hex[:8]
    return create_db_engine(f"sqlite:///file:test_{name}_{suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(engine: Engine, configured: bool = True):
    """Return an async context manager that replaces the real lifespan.

    Runs the production init_state() against the test engine. The OAuth
    registry is mocked to prevent real network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, engine, configured=configured)
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Console helper
# ---------------------------------------------------------------------------


@dataclass
class Console:
    client: TestClient
    state: Any

    def allow(self, email: str, role: str = "user", is_active: bool = True) -> AllowListEntry:
        """Create or overwrite the allow-list entry for email."""
        store: AccessStore = self.state.access_store
        existing = store.get_entry_by_email(email)
        if existing is None:
            entry_id = store.create_entry(AllowListEntry(email=email, role=role, is_active=is_active, added_by="tests"))
        else:
            entry_id = existing.id
            store.update_entry(entry_id, role=role, is_active=is_active)
        return store.get_entry(entry_id)

    def sign_in(self, email: str, subject: str | None = None) -> Identity:
        """Open a real session and install its cookies on the client."""
        identity, writes = self.state.identity.sign_in(email, subject or f"sub-{email}", "google")
        self.client.cookies.clear()
        for write in writes:
            if not write.is_removal:
                self.client.cookies.set(write.name, write.value)
        return identity

    def sign_in_as(self, email: str, role: str = "user") -> Identity:
        self.allow(email, role=role)
        return self.sign_in(email)

    def actor(self, identity: Identity, role: str = "user") -> Actor:
        return Actor(user_id=identity.subject, email=identity.email, role=role)

    def audit_actions(self, action: str | None = None) -> list:
        return self.state.audit_store.list_entries(action=action)


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def console() -> Generator[Console, None, None]:
    """Yield a Console wired to an isolated database with the gate configured.

    follow_redirects=False is essential: gate tests assert on redirect
    locations, which are invisible once the client follows the redirect.
    """
    engine = make_engine("console")
    app.router.lifespan_context = _patch_lifespan(engine)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Console(client=client, state=app.state)

    engine.dispose()


@pytest.fixture(autouse=True)
def _fresh_cookies(request) -> None:
    """Start every test signed out when it uses the console fixture."""
    if "console" in request.fixturenames:
        request.getfixturevalue("console").client.cookies.clear()


@dataclass
class Stores:
    engine: Engine
    accounts: AccountStore
    audit_store: AuditStore
    audit: AuditEmitter
    access: AccessStore


@pytest.fixture()
def stores() -> Generator[Stores, None, None]:
    """Fresh stores on their own database, for unit tests without HTTP."""
    engine = make_engine("unit")
    audit_store = AuditStore(engine)
    yield Stores(
        engine=engine,
        accounts=AccountStore(engine),
        audit_store=audit_store,
        audit=AuditEmitter(audit_store),
        access=AccessStore(engine),
    )
    engine.dispose()
