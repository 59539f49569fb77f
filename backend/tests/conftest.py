"""
TaskPilot Backend - Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Environment variables are set BEFORE any taskpilot import so the
       settings singleton picks them up. End-to-end tests run against an
       in-memory SQLite database (aiosqlite + StaticPool) created fresh
       for every test.

Fixture Hierarchy (all function-scoped):
    ├── mock_db_session:  AsyncMock session for pure unit tests
    ├── db_engine → session_factory → db_session
    ├── users:            alice (User), bob (User), root (Admin) persisted
    ├── make_token / auth_headers: signed access tokens for those users
    └── make_client / test_client: HTTPX AsyncClient over ASGITransport
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-0123456789-abcdefghijklmnop"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RETRY_MAX_ATTEMPTS"] = "1"

from typing import Callable, Dict  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from taskpilot.database import Base  # noqa: E402
from taskpilot.models.task import Task  # noqa: E402,F401
from taskpilot.models.user import User  # noqa: E402
from taskpilot.security import create_access_token, hash_password  # noqa: E402

PASSWORD = "correct-horse-battery"


# ══════════════════════════════════════════════════════════════════════════
# Unit-test doubles
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    A mock AsyncSession: execute/flush/commit/rollback/close are awaitable,
    add/delete record calls.
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.delete = AsyncMock()
    session.add = MagicMock()
    return session


# ══════════════════════════════════════════════════════════════════════════
# Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def users(session_factory) -> Dict[str, User]:
    """Three persisted accounts sharing PASSWORD."""
    async with session_factory() as session:
        rows = {
            "alice": User(username="alice", email="alice@example.com", role="User",
                          full_name="Alice Example", password_hash=hash_password(PASSWORD)),
            "bob": User(username="bob", email="bob@example.com", role="User",
                        password_hash=hash_password(PASSWORD)),
            "root": User(username="root", email="root@example.com", role="Admin",
                         password_hash=hash_password(PASSWORD)),
        }
        session.add_all(rows.values())
        await session.commit()
    return rows


# ══════════════════════════════════════════════════════════════════════════
# Authentication helpers
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def make_token() -> Callable[[User], str]:
    def _make(user: User) -> str:
        return create_access_token(user.id, user.username, user.email, user.role)
    return _make


@pytest.fixture
def auth_headers(make_token) -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user)}"}
    return _headers


# ══════════════════════════════════════════════════════════════════════════
# HTTP clients
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def make_client(session_factory):
    """
    Builds an AsyncClient for an app wired to the test database.

    Usage:
        async with make_client(registry) as client: ...
        async with make_client() as client: ...     # production services
    """
    from taskpilot.main import create_app

    def _make(registry=None) -> AsyncClient:
        app = create_app(registry=registry, session_factory=session_factory)
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _make


@pytest_asyncio.fixture
async def test_client(make_client):
    async with make_client() as client:
        yield client


@pytest.fixture
def user_password() -> str:
    """Plain-text password of every seeded account."""
    return PASSWORD
