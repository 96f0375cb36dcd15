import os
from collections.abc import AsyncGenerator

import pytest
from helpers import CRON_SECRET, FakeClock
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from salesops.config.settings import Settings, get_settings
from salesops.infra.database import Base, get_session, get_session_factory
from salesops.main import create_app
from salesops.v1.core.registries import JobRegistry
from salesops.v1.outbox import models  # noqa: F401
from salesops.v1.outbox.store import JobStore


@pytest.fixture
async def engine(tmp_path):
    """Create a test database engine with the outbox schema."""
    database_url = os.getenv("TEST_DATABASE_URL") or (
        f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}"
    )
    engine = create_async_engine(database_url, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="development",
        debug=False,
        cron_secret=CRON_SECRET,
        outbox_max_attempts=5,
        outbox_backoff_base_s=60,
        outbox_backoff_max_s=3600,
        outbox_backoff_jitter_s=0,
        outbox_lease_duration_s=30,
        outbox_handler_timeout_s=5,
        outbox_worker_concurrency=2,
        outbox_batch_size=10,
        outbox_poll_interval_ms=10,
    )


@pytest.fixture
def store(settings) -> JobStore:
    return JobStore(
        max_attempts=settings.outbox_max_attempts,
        last_error_max_length=settings.outbox_last_error_max_length,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def app(settings, session_factory):
    """Create a test FastAPI application bound to the test database."""
    app = create_app()

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client on the test's event loop."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
