"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of huddle.api.deps which validates
# the secret at module-load time.  bcrypt's minimum cost keeps hashing fast.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("HUDDLE_CONFIG", str(Path(__file__).with_name("config.test.yaml")))

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, update  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from huddle.config import HuddleConfig, load_config  # noqa: E402
from huddle.database.engine import get_session, init_db  # noqa: E402
from huddle.database.models import User  # noqa: E402
from huddle.engine.cache import ConfigCache  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Huddle tables and default settings.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the rate limiter and sockets).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    c = ConfigCache(db_engine)
    c.load_all()
    return c


@pytest.fixture
def test_config() -> HuddleConfig:
    return load_config(Path(__file__).with_name("config.test.yaml"))


@pytest.fixture
def make_user(db_engine: Engine):
    """Factory: register a user and return its auth dict (plus ``token``).

    ``make_user("alice", roles=["admin"])`` grants extra roles directly in
    the database.
    """
    from huddle.api.deps import create_access_token
    from huddle.services import auth_service

    def _make(username: str, *, roles: list[str] | None = None, password: str = "password123") -> dict:
        user = auth_service.register(db_engine, username, f"{username.lower()}@example.com", password)
        if roles:
            all_roles = sorted({"user", *roles})
            with get_session(db_engine) as session:
                session.execute(update(User).where(User.id == user["id"]).values(roles=all_roles))
            user["roles"] = all_roles
        user["token"] = create_access_token(user, 60)
        return user

    return _make


@pytest.fixture
def hub():
    from huddle.realtime.hub import Hub

    return Hub()


@pytest.fixture
def client(db_engine, cache, test_config, hub):
    """FastAPI TestClient wired to the in-memory database.

    The lifespan does not run (no ``with`` block), so no listeners, email
    worker or retention task are started.
    """
    from fastapi.testclient import TestClient

    from huddle.api.deps import get_cache, get_config, get_engine, get_hub
    from huddle.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: test_config
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_hub] = lambda: hub
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
