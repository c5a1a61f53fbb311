"""Shared pytest fixtures for PromptGuess.

Provides:
- A file-backed SQLite database (aiosqlite) so admission races run
  against real unique constraints
- A controllable clock and scoring gateway doubles
- An httpx client bound to the FastAPI app with dependencies overridden
"""

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

os.environ.setdefault("PROMPTGUESS_JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("PROMPTGUESS_ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("PROMPTGUESS_LOG_JSON", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from promptguess.config import Settings
from promptguess.database import make_session_factory
from promptguess.models import Base, User
from tests.factories import FakeClock, StubScorer

# ===========================================
# SETTINGS & DATABASE
# ===========================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret_key="test-secret-key",
        admin_api_key="test-admin-key",
        scoring_timeout_seconds=0.5,
        admission_wait_seconds=5.0,
        admission_poll_interval_seconds=0.01,
        admission_lease_seconds=30.0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'promptguess.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scorer() -> StubScorer:
    return StubScorer()


@pytest.fixture
def make_user(session_factory):
    """Factory: insert an active user and return it."""

    async def _make(username: str | None = None, status: str = "active") -> User:
        async with session_factory() as session:
            user = User(id=uuid4(), username=username or f"user_{uuid4().hex[:8]}", status=status)
            session.add(user)
            await session.commit()
            return user

    return _make


# ===========================================
# HTTP CLIENT
# ===========================================


@pytest_asyncio.fixture
async def client(session_factory, clock, scorer) -> AsyncGenerator[AsyncClient, None]:
    """httpx client against the app, wired to the test database, clock and scorer."""
    from promptguess.database import get_db
    from promptguess.dependencies import get_clock, get_scorer
    from promptguess.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_scorer] = lambda: scorer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# REDIS MOCK
# ===========================================


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Mock Redis client whose pipeline reports ``count`` requests in the window."""
    redis = MagicMock()
    pipeline = MagicMock()
    pipeline.execute = AsyncMock(return_value=[0, 1, 1, True])
    redis.pipeline.return_value = pipeline
    redis.ping = AsyncMock(return_value=True)
    return redis
