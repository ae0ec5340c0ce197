"""
Pytest configuration and fixtures for HookRelay tests.

Provides an in-memory SQLite store, a controllable clock, mock
destination endpoints and an authenticated API client.
"""
import os

os.environ.setdefault("SCHEDULER_SECRET", "test-scheduler-secret")
os.environ.setdefault("BACKOFF_JITTER_RATIO", "0")
os.environ.setdefault("WEBHOOK_SIGNING_SECRET", "test-signing-secret")

from typing import AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from hookrelay.main import app
from hookrelay.models.base import Base
from hookrelay.routes.webhooks import get_store, get_worker
from hookrelay.services.delivery_worker import DeliveryWorker
from hookrelay.services.retry_job_store import RetryJobStore
from hookrelay.services.retry_policy import BackoffPolicy
from tests.helpers import Destination, FakeClock


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory, clock) -> RetryJobStore:
    return RetryJobStore(session_factory, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def shared_store(tmp_path, clock) -> AsyncGenerator[RetryJobStore, None]:
    """
    File-backed store where every session gets its own connection.

    For tests that run sessions concurrently; the in-memory store
    multiplexes all sessions over a single connection.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}", poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield RetryJobStore(
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        clock=clock,
    )

    await engine.dispose()


@pytest.fixture
def make_worker(store) -> Callable[..., DeliveryWorker]:
    """Build a worker against the test store with deterministic backoff."""

    def _make(destination, job_store: RetryJobStore | None = None, **kwargs) -> DeliveryWorker:
        client = destination if isinstance(destination, httpx.AsyncClient) else destination.client()
        kwargs.setdefault("policy", BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=300.0))
        kwargs.setdefault("timeout", 5.0)
        return DeliveryWorker(job_store or store, http_client=client, **kwargs)

    return _make


@pytest.fixture
def destination() -> Destination:
    return Destination(200)


@pytest_asyncio.fixture(scope="function")
async def async_client(store, make_worker, destination) -> AsyncGenerator[AsyncClient, None]:
    """API client wired to the test store and mock destination."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_worker] = lambda: make_worker(destination)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()
