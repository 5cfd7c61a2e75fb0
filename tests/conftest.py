"""
Shared test fixtures.

Provides a FastAPI TestClient wired to:
  • a temporary SQLite database (via app lifespan)
  • an EmailVerifier whose MX lookups are faked (no DNS traffic)
  • rate limiting switched off, except in `limited_client`

The client fixtures run the full lifespan (DB init / shutdown) so the
endpoints hit a real store.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app import db
from app.dependencies import get_verifier
from app.main import app
from tests.mocks.services import FakeMxLookup, make_verifier


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture()
def db_path(tmp_path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture()
def _test_env(monkeypatch, db_path):
    """
    Internal fixture that patches the DB path and the limiter settings so
    the app lifespan runs cleanly against a temp database.
    """
    import app.db as db_mod

    monkeypatch.setattr(db_mod, "DB_PATH", str(db_path))
    monkeypatch.setattr("app.main.RATE_LIMIT_STORAGE_URI", "")
    monkeypatch.setattr("app.main.RATE_LIMIT_ENABLED", False)


@pytest.fixture()
def mx_lookup() -> FakeMxLookup:
    return FakeMxLookup()


@pytest.fixture()
def client(_test_env, mx_lookup) -> TestClient:
    """TestClient with temp DB, fake DNS and rate limiting disabled."""
    verifier = make_verifier(mx_lookup)
    app.dependency_overrides[get_verifier] = lambda: verifier

    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc

    app.dependency_overrides.clear()


@pytest.fixture()
def limited_client(monkeypatch, _test_env, mx_lookup) -> TestClient:
    """
    TestClient with rate limiting **enabled** (unlike the default
    `client` fixture which disables it for convenience).

    The lifespan builds a fresh in-memory limiter, so counts never leak
    between tests.
    """
    monkeypatch.setattr("app.main.RATE_LIMIT_ENABLED", True)
    verifier = make_verifier(mx_lookup)
    app.dependency_overrides[get_verifier] = lambda: verifier

    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc

    app.dependency_overrides.clear()


@pytest.fixture()
async def store(db_path):
    """Initialized subscriber store for direct repository tests."""
    await db.init_db(str(db_path))
    yield db
    await db.close_db()
