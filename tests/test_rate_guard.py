"""Tests for the outbound rate guards (no running Redis required)."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from relay.config import settings
from relay.worker.rate_guard import (
    DAY,
    HOUR,
    MemoryRateGuard,
    RedisRateGuard,
    get_rate_guard,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_memory_guard_hourly_cap() -> None:
    clock = FakeClock()
    guard = MemoryRateGuard(hourly=3, daily=100, clock=clock)
    results = [await guard.allow("endpoint:a") for _ in range(4)]
    assert results == [True, True, True, False]

    # Window rolls forward
    clock.now += HOUR + 1
    assert await guard.allow("endpoint:a") is True


@pytest.mark.asyncio
async def test_memory_guard_daily_cap() -> None:
    clock = FakeClock()
    guard = MemoryRateGuard(hourly=2, daily=3, clock=clock)
    assert await guard.allow("owner:x")
    assert await guard.allow("owner:x")
    clock.now += HOUR + 1
    assert await guard.allow("owner:x")
    clock.now += HOUR + 1
    # Hourly window is clear but the daily cap is reached
    assert await guard.allow("owner:x") is False

    clock.now += DAY
    assert await guard.allow("owner:x") is True


@pytest.mark.asyncio
async def test_memory_guard_scopes_are_independent() -> None:
    guard = MemoryRateGuard(hourly=1, daily=1, clock=FakeClock())
    assert await guard.allow("endpoint:a")
    assert await guard.allow("endpoint:b")
    assert not await guard.allow("endpoint:a")


@pytest.mark.asyncio
async def test_memory_guard_defaults() -> None:
    guard = MemoryRateGuard(clock=FakeClock())
    assert guard.hourly == 5
    assert guard.daily == 20
    assert [await guard.allow("k") for _ in range(6)] == [True] * 5 + [False]


@pytest.mark.asyncio
async def test_redis_guard_allows_and_denies() -> None:
    redis = AsyncMock()
    redis.eval.return_value = [1, 1, 1]
    guard = RedisRateGuard(redis, hourly=5, daily=20, prefix="test:rate", clock=FakeClock())
    assert await guard.allow("endpoint:a") is True

    args = redis.eval.await_args.args
    assert args[1] == 1
    assert args[2] == "test:rate:endpoint:a"
    assert args[3:6] == (1_700_000_000.0, 5, 20)

    redis.eval.return_value = [0, 5, 5]
    assert await guard.allow("endpoint:a") is False


@pytest.mark.asyncio
async def test_redis_guard_fails_open() -> None:
    redis = AsyncMock()
    redis.eval.side_effect = RedisConnectionError("down")
    guard = RedisRateGuard(redis)
    assert await guard.allow("endpoint:a") is True


def test_factory_uses_settings() -> None:
    object.__setattr__(settings, "rate_limit_webhook_hourly", 7)
    object.__setattr__(settings, "rate_limit_sync_daily", 11)

    webhook = get_rate_guard("webhook")
    assert isinstance(webhook, MemoryRateGuard)
    assert webhook.hourly == 7

    object.__setattr__(settings, "rate_guard_backend", "redis")
    sync = get_rate_guard("sync", AsyncMock())
    assert isinstance(sync, RedisRateGuard)
    assert sync.daily == 11
    assert sync.prefix == "relay:rate:sync"

    with pytest.raises(ValueError):
        get_rate_guard("email")


@pytest.mark.asyncio
async def test_memory_guard_forgets_idle_scopes() -> None:
    clock = FakeClock()
    guard = MemoryRateGuard(hourly=1, daily=1, clock=clock)
    assert await guard.allow("endpoint:a")
    assert await guard.allow("endpoint:b")

    clock.now += DAY + 1
    assert await guard.allow("endpoint:c")
    assert set(guard._hits) == {"endpoint:c"}
