"""Redis connection and the dispatch wake signal.

The API and the worker share one pub/sub channel: the API publishes after it
enqueues, the worker listens and runs a cycle early.
"""

import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from relay.config import settings

logger = logging.getLogger(__name__)

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


async def request_dispatch(redis: aioredis.Redis, reason: str) -> bool:
    """Ask the delivery worker to run a cycle now. Polling covers a lost signal."""
    try:
        await redis.publish(settings.wake_channel, reason)
    except RedisError as e:
        logger.warning("Could not publish wake signal (%s): %s", reason, e)
        return False
    return True
