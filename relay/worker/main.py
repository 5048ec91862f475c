"""Standalone delivery worker process.

Run with ``python -m relay.worker`` (or the ``relay-worker`` script).
``relay-worker show-secret <endpoint_id>`` prints a signing secret for the
operator to share with the receiver.

The API publishes on the wake channel after enqueueing; the worker also
polls every DISPATCH_INTERVAL_SECONDS so nothing waits on a missed message.
"""

import asyncio
import logging
import sys
import uuid

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import select

from relay.config import settings
from relay.database import async_session_factory
from relay.models.endpoint import EndpointRegistration
from relay.redis import redis_pool
from relay.worker.dispatcher import Dispatcher
from relay.worker.rate_guard import get_rate_guard
from relay.worker.retry import RetryPolicy
from relay.worker.sync_backend import get_sync_backend

logger = logging.getLogger(__name__)


def build_dispatcher(http_client: httpx.AsyncClient, redis: aioredis.Redis | None) -> Dispatcher:
    return Dispatcher(
        session_factory=async_session_factory,
        http_client=http_client,
        sync_backend=get_sync_backend(http_client),
        retry_policy=RetryPolicy.from_settings(),
        webhook_guard=get_rate_guard("webhook", redis),
        sync_guard=get_rate_guard("sync", redis),
    )


async def listen_for_wake(redis: aioredis.Redis, dispatcher: Dispatcher) -> None:
    """Wake the dispatcher whenever the API announces new work."""
    pubsub = redis.pubsub()
    try:
        await pubsub.subscribe(settings.wake_channel)
        async for message in pubsub.listen():
            if message.get("type") == "message":
                dispatcher.wake()
    except asyncio.CancelledError:
        logger.info("Wake listener shutting down")
    except RedisError as e:
        logger.warning("Wake channel unavailable, relying on polling: %s", e)
    finally:
        await pubsub.aclose()


async def run_worker() -> None:
    redis = aioredis.Redis(connection_pool=redis_pool)
    async with httpx.AsyncClient(
        timeout=settings.webhook_timeout_seconds, follow_redirects=False
    ) as http_client:
        dispatcher = build_dispatcher(http_client, redis)
        await dispatcher.recover_stale_claims()

        listener = asyncio.create_task(listen_for_wake(redis, dispatcher))
        logger.info(
            "Delivery worker started (batch=%d, concurrency=%d, interval=%.0fs)",
            dispatcher.batch_size, dispatcher.concurrency, settings.dispatch_interval_seconds,
        )
        try:
            await dispatcher.run_forever()
        finally:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
            await redis.aclose()


async def show_secret(endpoint_id: uuid.UUID) -> str | None:
    """Read an endpoint's signing secret so an operator can hand it to the receiver."""
    async with async_session_factory() as db:
        result = await db.execute(
            select(EndpointRegistration.secret).where(EndpointRegistration.id == endpoint_id)
        )
        return result.scalar_one_or_none()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if len(sys.argv) == 3 and sys.argv[1] == "show-secret":
        secret = asyncio.run(show_secret(uuid.UUID(sys.argv[2])))
        if secret is None:
            sys.exit(f"Endpoint {sys.argv[2]} not found")
        print(secret)
        return

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Delivery worker stopped")
