"""Outbound rate guard: rolling hourly and daily attempt caps per scope.

Scopes are strings such as ``endpoint:<id>`` for webhook deliveries and
``owner:<id>`` for sync actions. A denied item is released back to the
queue without spending an attempt.
"""

import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from relay.config import settings

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 86400

# Sliding-window check-and-record on a sorted set of attempt timestamps
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local hourly = tonumber(ARGV[2])
local daily = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - 86400)
local day_count = redis.call('ZCARD', key)
local hour_count = redis.call('ZCOUNT', key, now - 3600, '+inf')

if hour_count >= hourly or day_count >= daily then
    return {0, hour_count, day_count}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, 86400)
return {1, hour_count + 1, day_count + 1}
"""


class RateGuard(Protocol):
    async def allow(self, scope_key: str) -> bool: ...


class MemoryRateGuard:
    """Per-process guard. Approximate when several workers run."""

    def __init__(
        self,
        hourly: int = 5,
        daily: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hourly = hourly
        self.daily = daily
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    async def allow(self, scope_key: str) -> bool:
        now = self._clock()
        self._evict_idle(now)
        hits = self._hits.setdefault(scope_key, deque())

        hour_count = sum(1 for t in hits if t > now - HOUR)
        if hour_count >= self.hourly or len(hits) >= self.daily:
            logger.debug("Rate guard denied %s (hour=%d, day=%d)", scope_key, hour_count, len(hits))
            return False

        hits.append(now)
        return True

    def _evict_idle(self, now: float) -> None:
        """Trim hits older than a day and forget scopes with none left."""
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and hits[0] <= now - DAY:
                hits.popleft()
            if not hits:
                del self._hits[key]


class RedisRateGuard:
    """Shared guard across worker processes, backed by Redis sorted sets."""

    def __init__(
        self,
        redis: aioredis.Redis,
        hourly: int = 5,
        daily: int = 20,
        prefix: str = "relay:rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.hourly = hourly
        self.daily = daily
        self.prefix = prefix
        self._clock = clock

    async def allow(self, scope_key: str) -> bool:
        key = f"{self.prefix}:{scope_key}"
        try:
            result = await self._redis.eval(
                _SLIDING_WINDOW_SCRIPT,
                1,
                key,
                self._clock(),
                self.hourly,
                self.daily,
                uuid.uuid4().hex,
            )
        except RedisError as e:
            # Redis down: deliver rather than stall the whole queue
            logger.warning("Rate guard unavailable for %s, allowing: %s", scope_key, e)
            return True

        allowed = int(result[0]) == 1
        if not allowed:
            logger.debug("Rate guard denied %s (hour=%s, day=%s)", scope_key, result[1], result[2])
        return allowed


def get_rate_guard(kind: str, redis: aioredis.Redis | None = None) -> RateGuard:
    """Build the guard for "webhook" or "sync" traffic from settings."""
    if kind == "webhook":
        hourly, daily = settings.rate_limit_webhook_hourly, settings.rate_limit_webhook_daily
    elif kind == "sync":
        hourly, daily = settings.rate_limit_sync_hourly, settings.rate_limit_sync_daily
    else:
        raise ValueError(f"Unknown rate guard kind: {kind}")

    if settings.rate_guard_backend == "redis" and redis is not None:
        return RedisRateGuard(redis, hourly=hourly, daily=daily, prefix=f"relay:rate:{kind}")
    return MemoryRateGuard(hourly=hourly, daily=daily)
