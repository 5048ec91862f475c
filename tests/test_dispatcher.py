"""Delivery dispatcher scenarios against a mocked receiving endpoint."""

import asyncio
import json
import uuid

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.config import settings
from relay.models.delivery_log import DeliveryLogEntry
from relay.models.endpoint import EndpointRegistration
from relay.models.queue_item import QueueItem, QueueItemStatus
from relay.services import endpoints as endpoint_service
from relay.services import events as event_service
from relay.services import queue as queue_service
from relay.worker.dispatcher import Outcome
from relay.worker.rate_guard import MemoryRateGuard
from relay.worker.retry import RetryPolicy
from relay.worker.signing import verify
from tests.conftest import make_dispatcher, make_endpoint


def ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="received")


def always_500(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="Internal Server Error")


async def _publish(db: AsyncSession, owner_id: str = "store-1", data: dict | None = None) -> QueueItem:
    [item] = await event_service.publish_event(db, owner_id, "order.created", data or {"order_id": "o-1"})
    return item


async def _load(factory: async_sessionmaker[AsyncSession], item_id: uuid.UUID) -> QueueItem:
    async with factory() as db:
        return await db.get(QueueItem, item_id)


async def _logs(factory: async_sessionmaker[AsyncSession], item_id: uuid.UUID) -> list[DeliveryLogEntry]:
    async with factory() as db:
        result = await db.execute(
            select(DeliveryLogEntry)
            .where(DeliveryLogEntry.queue_item_id == item_id)
            .order_by(DeliveryLogEntry.attempt_number)
        )
        return list(result.scalars().all())


async def _endpoint(factory: async_sessionmaker[AsyncSession], endpoint_id: uuid.UUID) -> EndpointRegistration:
    async with factory() as db:
        return await db.get(EndpointRegistration, endpoint_id)


@pytest.mark.asyncio
async def test_happy_path_delivers_signed_request(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    item = await _publish(db_session, data={"order_id": "o-42", "total": 1999})
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, text="ok")

    result = await make_dispatcher(session_factory, handler).run_cycle()

    assert result.claimed == 1
    assert result.delivered == 1
    [request] = captured
    assert str(request.url) == "https://hooks.example.com/relay"
    assert request.headers["X-Event-Type"] == "order.created"
    assert request.headers["X-Delivery-Id"] == str(item.id)
    assert request.headers["X-Timestamp"].isdigit()

    secret = await db_session.scalar(
        select(EndpointRegistration.secret).where(EndpointRegistration.id == endpoint.id)
    )
    assert verify(request.content, request.headers["X-Signature"], secret)
    body = json.loads(request.content)
    assert body["event"] == "order.created"
    assert body["store_id"] == "store-1"
    assert body["data"] == {"order_id": "o-42", "total": 1999}

    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.DELIVERED
    assert stored.attempt_number == 1
    assert stored.completed_at is not None
    assert stored.claim_token is None

    [log] = await _logs(session_factory, item.id)
    assert log.status_code == 200
    assert log.attempt_number == 1
    assert log.response_excerpt == "ok"
    assert log.endpoint_id == endpoint.id

    refreshed = await _endpoint(session_factory, endpoint.id)
    assert refreshed.failure_count == 0
    assert refreshed.last_success_at is not None
    assert refreshed.last_triggered_at is not None


@pytest.mark.asyncio
async def test_always_failing_endpoint_exhausts_attempts(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)
    dispatcher = make_dispatcher(session_factory, always_500)

    outcomes = []
    for _ in range(3):
        outcomes.append(await dispatcher.run_cycle())

    assert [r.retrying for r in outcomes] == [1, 1, 0]
    assert outcomes[-1].failed == 1

    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.FAILED
    assert stored.attempt_number == 3
    assert "500" in stored.last_error
    assert stored.completed_at is not None

    logs = await _logs(session_factory, item.id)
    assert [log.attempt_number for log in logs] == [1, 2, 3]
    assert all(log.status_code == 500 for log in logs)

    # Failed is terminal: nothing left to claim
    assert (await dispatcher.run_cycle()).claimed == 0


@pytest.mark.asyncio
async def test_paused_endpoint_holds_item_until_resume(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    item = await _publish(db_session)
    await endpoint_service.pause_endpoint(db_session, endpoint.id)
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    dispatcher = make_dispatcher(session_factory, handler)
    assert (await dispatcher.run_cycle()).claimed == 0
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.PENDING
    assert stored.attempt_number == 0
    assert calls == []

    await endpoint_service.resume_endpoint(db_session, endpoint.id)
    result = await dispatcher.run_cycle()
    assert result.delivered == 1
    assert (await _load(session_factory, item.id)).status is QueueItemStatus.DELIVERED
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_endpoint_paused_after_claim_releases_item(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    item = await _publish(db_session)
    dispatcher = make_dispatcher(session_factory, ok)

    async with session_factory() as db:
        [claimed] = await queue_service.dequeue_batch(db, 1)
    await endpoint_service.pause_endpoint(db_session, endpoint.id)

    outcome = await dispatcher._process(claimed)

    assert outcome is Outcome.DEFERRED
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.PENDING
    assert stored.attempt_number == 0


@pytest.mark.asyncio
async def test_deleted_endpoint_fails_item(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    item = await _publish(db_session)
    await endpoint_service.delete_endpoint(db_session, endpoint.id)

    result = await make_dispatcher(session_factory, ok).run_cycle()

    assert result.failed == 1
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.FAILED
    assert "not found" in stored.last_error
    assert stored.attempt_number == 0


@pytest.mark.asyncio
async def test_client_error_is_terminal(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    result = await make_dispatcher(
        session_factory, lambda request: httpx.Response(404, text="no such hook")
    ).run_cycle()

    assert result.failed == 1
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.FAILED
    assert stored.attempt_number == 1
    assert "404" in stored.last_error


@pytest.mark.asyncio
async def test_rate_limited_receiver_is_retried(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)
    responses = iter([httpx.Response(429, text="slow down"), httpx.Response(200, text="ok")])
    dispatcher = make_dispatcher(session_factory, lambda request: next(responses))

    first = await dispatcher.run_cycle()
    assert first.retrying == 1
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.RETRYING
    assert stored.next_attempt_at is not None

    second = await dispatcher.run_cycle()
    assert second.delivered == 1
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.DELIVERED
    assert stored.attempt_number == 2
    assert stored.last_error is None


@pytest.mark.asyncio
async def test_connection_error_is_logged_and_retried(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    result = await make_dispatcher(session_factory, refuse).run_cycle()

    assert result.retrying == 1
    [log] = await _logs(session_factory, item.id)
    assert log.status_code is None
    assert "Connection refused" in log.error_message


@pytest.mark.asyncio
async def test_slow_receiver_times_out(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200)

    dispatcher = make_dispatcher(session_factory, slow)
    dispatcher.timeout = 0.05
    result = await dispatcher.run_cycle()

    assert result.retrying == 1
    stored = await _load(session_factory, item.id)
    assert stored.last_error == "Request timeout"


@pytest.mark.asyncio
async def test_signing_failure_holds_item(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    item = await _publish(db_session)
    await db_session.execute(
        update(EndpointRegistration).where(EndpointRegistration.id == endpoint.id).values(secret="")
    )
    await db_session.commit()
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    dispatcher = make_dispatcher(session_factory, handler)
    result = await dispatcher.run_cycle()

    assert result.held == 1
    assert calls == []
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.PENDING
    assert stored.is_held is True
    assert "Signing failed" in stored.last_error
    assert stored.attempt_number == 0

    # Held items are not picked up again until an operator retries them
    assert (await dispatcher.run_cycle()).claimed == 0


@pytest.mark.asyncio
async def test_rate_guard_defers_without_spending_attempt(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    first = await _publish(db_session)
    second = await _publish(db_session)

    dispatcher = make_dispatcher(
        session_factory, ok, webhook_guard=MemoryRateGuard(hourly=1, daily=10)
    )
    result = await dispatcher.run_cycle()

    assert result.delivered == 1
    assert result.deferred == 1
    statuses = {
        (await _load(session_factory, first.id)).status,
        (await _load(session_factory, second.id)).status,
    }
    assert statuses == {QueueItemStatus.DELIVERED, QueueItemStatus.PENDING}
    for item_id in (first.id, second.id):
        stored = await _load(session_factory, item_id)
        if stored.status is QueueItemStatus.PENDING:
            assert stored.attempt_number == 0


@pytest.mark.asyncio
async def test_consecutive_failures_pause_endpoint(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    await _publish(db_session)
    await _publish(db_session)

    dispatcher = make_dispatcher(session_factory, always_500, failure_threshold=2)
    result = await dispatcher.run_cycle()
    assert result.retrying == 2

    refreshed = await _endpoint(session_factory, endpoint.id)
    assert refreshed.failure_count == 2
    assert refreshed.is_active is False
    assert refreshed.last_failure_at is not None

    # Paused: retries wait for resume
    assert (await dispatcher.run_cycle()).claimed == 0

    resumed = await endpoint_service.resume_endpoint(db_session, endpoint.id)
    assert resumed.failure_count == 0


@pytest.mark.asyncio
async def test_success_resets_failure_count(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    endpoint = await make_endpoint(db_session)
    await _publish(db_session)
    responses = iter([httpx.Response(503), httpx.Response(200)])
    dispatcher = make_dispatcher(session_factory, lambda request: next(responses))

    await dispatcher.run_cycle()
    assert (await _endpoint(session_factory, endpoint.id)).failure_count == 1
    await dispatcher.run_cycle()
    assert (await _endpoint(session_factory, endpoint.id)).failure_count == 0


@pytest.mark.asyncio
async def test_item_deleted_mid_flight_stays_deleted(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    async def delete_then_accept(request: httpx.Request) -> httpx.Response:
        async with session_factory() as db:
            await queue_service.delete_item(db, item.id)
        return httpx.Response(200)

    result = await make_dispatcher(session_factory, delete_then_accept).run_cycle()

    assert result.discarded == 1
    assert result.delivered == 0
    assert await _load(session_factory, item.id) is None
    assert await _logs(session_factory, item.id) == []


@pytest.mark.asyncio
async def test_operator_cancel_mid_flight_wins(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    async def cancel_then_fail(request: httpx.Request) -> httpx.Response:
        async with session_factory() as db:
            await queue_service.update_status(db, item.id, QueueItemStatus.FAILED, "Cancelled by operator")
        return httpx.Response(500)

    result = await make_dispatcher(session_factory, cancel_then_fail).run_cycle()

    assert result.discarded == 1
    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.FAILED
    assert stored.last_error == "Cancelled by operator"
    assert stored.attempt_number == 0


@pytest.mark.asyncio
async def test_one_broken_item_does_not_abort_batch(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session, url="https://good.example.com/hook")
    await make_endpoint(db_session, owner_id="store-2", url="https://broken.example.com/hook")
    good = await _publish(db_session)
    broken = await _publish(db_session, owner_id="store-2")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "broken.example.com":
            raise RuntimeError("receiver exploded")
        return httpx.Response(200)

    result = await make_dispatcher(session_factory, handler).run_cycle()

    assert result.claimed == 2
    assert result.delivered == 1
    assert result.retrying == 1
    assert (await _load(session_factory, good.id)).status is QueueItemStatus.DELIVERED
    stored = await _load(session_factory, broken.id)
    assert stored.status is QueueItemStatus.RETRYING
    assert "receiver exploded" in stored.last_error


@pytest.mark.asyncio
async def test_batch_size_limits_claim(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    for _ in range(5):
        await _publish(db_session)

    dispatcher = make_dispatcher(session_factory, ok, batch_size=2)
    assert (await dispatcher.run_cycle()).delivered == 2
    assert (await dispatcher.run_cycle()).delivered == 2
    assert (await dispatcher.run_cycle()).delivered == 1


@pytest.mark.asyncio
async def test_run_forever_delivers_on_wake_and_stops_on_cancel(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    dispatcher = make_dispatcher(session_factory, ok)
    task = asyncio.create_task(dispatcher.run_forever(interval=60))
    await asyncio.sleep(0.1)

    item = await _publish(db_session)
    dispatcher.wake()
    for _ in range(50):
        await asyncio.sleep(0.05)
        if (await _load(session_factory, item.id)).status is QueueItemStatus.DELIVERED:
            break

    task.cancel()
    await task
    assert (await _load(session_factory, item.id)).status is QueueItemStatus.DELIVERED


@pytest.mark.asyncio
async def test_recover_stale_claims(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)
    async with session_factory() as db:
        await queue_service.dequeue_batch(db, 1)

    object.__setattr__(settings, "claim_timeout_seconds", -1)
    dispatcher = make_dispatcher(session_factory, ok)
    assert await dispatcher.recover_stale_claims() == 1
    assert (await _load(session_factory, item.id)).status is QueueItemStatus.PENDING


class DenyScope:
    """Guard that refuses one scope and counts every check."""

    def __init__(self, denied: str | None = None) -> None:
        self.denied = denied
        self.checks = 0

    async def allow(self, scope_key: str) -> bool:
        self.checks += 1
        return self.denied is not None and scope_key != self.denied


@pytest.mark.asyncio
async def test_rate_limited_endpoint_does_not_starve_other_stores(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    busy = await make_endpoint(db_session, owner_id="store-a")
    await make_endpoint(db_session, owner_id="store-b")
    busy_items = []
    for _ in range(2):
        busy_items += await event_service.publish_event(db_session, "store-a", "order.created", {}, 5)
    [quiet] = await event_service.publish_event(db_session, "store-b", "order.created", {}, 1)

    guard = DenyScope(denied=f"endpoint:{busy.id}")
    dispatcher = make_dispatcher(session_factory, ok, webhook_guard=guard, batch_size=2)

    first = await dispatcher.run_cycle()
    assert first.deferred == 2
    second = await dispatcher.run_cycle()
    assert second.claimed == 1
    assert second.delivered == 1

    assert (await _load(session_factory, quiet.id)).status is QueueItemStatus.DELIVERED
    for item in busy_items:
        stored = await _load(session_factory, item.id)
        assert stored.status is QueueItemStatus.PENDING
        assert stored.attempt_number == 0
        assert stored.next_attempt_at is not None


@pytest.mark.asyncio
async def test_deferred_batch_does_not_spin_the_loop(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    await _publish(db_session)
    await _publish(db_session)

    guard = DenyScope()  # denies everything
    dispatcher = make_dispatcher(session_factory, ok, webhook_guard=guard, batch_size=2)
    task = asyncio.create_task(dispatcher.run_forever(interval=30))
    await asyncio.sleep(0.3)
    task.cancel()
    await task

    assert guard.checks == 2


@pytest.mark.asyncio
async def test_running_worker_recovers_claim_after_failed_outcome_write(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch,  # type: ignore[no-untyped-def]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    real_finish_claim = queue_service.finish_claim
    calls = 0

    async def flaky_finish_claim(*args, **kwargs):  # type: ignore[no-untyped-def]
        nonlocal calls
        calls += 1
        if calls == 1:
            raise queue_service.StorageUnavailable("connection reset")
        return await real_finish_claim(*args, **kwargs)

    monkeypatch.setattr(queue_service, "finish_claim", flaky_finish_claim)
    object.__setattr__(settings, "claim_timeout_seconds", -1)

    dispatcher = make_dispatcher(session_factory, ok)
    task = asyncio.create_task(dispatcher.run_forever(interval=0.05))
    for _ in range(40):
        await asyncio.sleep(0.05)
        if (await _load(session_factory, item.id)).status is QueueItemStatus.DELIVERED:
            break
    task.cancel()
    await task

    assert calls >= 2
    assert (await _load(session_factory, item.id)).status is QueueItemStatus.DELIVERED


@pytest.mark.asyncio
async def test_retry_decision_comes_from_policy(
    db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    await make_endpoint(db_session)
    item = await _publish(db_session)

    class NoRetries(RetryPolicy):
        def should_retry(self, error: BaseException, attempts_made: int, max_attempts: int) -> bool:
            return False

    dispatcher = make_dispatcher(
        session_factory, always_500, retry_policy=NoRetries(base_delay=0, max_delay=0, jitter=False)
    )
    assert (await dispatcher.run_cycle()).failed == 1

    stored = await _load(session_factory, item.id)
    assert stored.status is QueueItemStatus.FAILED
    assert stored.attempt_number == 1
    assert stored.last_error.startswith("Gave up after 1 attempts")
