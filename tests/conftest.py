"""Test configuration and fixtures.

Each test gets its own SQLite database file (aiosqlite) with tables created
from the ORM metadata. Redis is replaced by an AsyncMock and receiving
endpoints are simulated with httpx.MockTransport.
"""

from collections.abc import AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from relay.config import settings
from relay.database import Base, get_db
from relay.main import app
from relay.models.delivery_log import DeliveryLogEntry  # noqa: F401 (registers the model)
from relay.models.endpoint import EndpointRegistration  # noqa: F401
from relay.models.queue_item import ProcessedAction, QueueItem  # noqa: F401
from relay.redis import get_redis
from relay.schemas.endpoint import EndpointCreate
from relay.services import endpoints as endpoint_service
from relay.worker.dispatcher import Dispatcher
from relay.worker.rate_guard import MemoryRateGuard, RateGuard
from relay.worker.retry import RetryPolicy
from relay.worker.sync_backend import LogSyncBackend, SyncBackend

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "retry_base_delay_seconds", 0.0)
    object.__setattr__(settings, "retry_jitter", False)
    object.__setattr__(settings, "rate_guard_backend", "memory")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:  # type: ignore[no-untyped-def]
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Redis double: records wake-signal publishes without a running server."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_endpoint_data(
    owner_id: str = "store-1",
    url: str = "https://hooks.example.com/relay",
    events: list[str] | None = None,
) -> EndpointCreate:
    return EndpointCreate(owner_id=owner_id, url=url, events=events or ["order.created"])


async def make_endpoint(db: AsyncSession, **kwargs) -> EndpointRegistration:  # type: ignore[no-untyped-def]
    return await endpoint_service.register_endpoint(db, make_endpoint_data(**kwargs))


def make_dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    handler: Handler,
    *,
    sync_backend: SyncBackend | None = None,
    webhook_guard: RateGuard | None = None,
    sync_guard: RateGuard | None = None,
    retry_policy: RetryPolicy | None = None,
    batch_size: int = 50,
    failure_threshold: int = 10,
) -> Dispatcher:
    """Dispatcher wired to a mock HTTP transport, no backoff, generous rate limits."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return Dispatcher(
        session_factory=session_factory,
        http_client=http_client,
        sync_backend=sync_backend or LogSyncBackend(),
        retry_policy=retry_policy or RetryPolicy(base_delay=0, max_delay=0, jitter=False),
        webhook_guard=webhook_guard or MemoryRateGuard(hourly=1000, daily=1000),
        sync_guard=sync_guard or MemoryRateGuard(hourly=1000, daily=1000),
        batch_size=batch_size,
        concurrency=5,
        timeout=5.0,
        failure_threshold=failure_threshold,
    )
