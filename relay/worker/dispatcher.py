"""Delivery dispatcher.

Each cycle claims a batch of due items, processes them with bounded
concurrency, and writes exactly one outcome per attempt. A failure on one
item never aborts the rest of the batch. Outcomes are written only while the
claim is still held, so items deleted mid-attempt stay deleted.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, assert_never

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import undefer

from relay.config import settings
from relay.models.delivery_log import DeliveryLogEntry
from relay.models.endpoint import EndpointRegistration
from relay.models.queue_item import ProcessedAction, QueueItem, QueueItemKind, QueueItemStatus
from relay.services import queue as queue_service
from relay.services.queue import StorageUnavailable
from relay.worker.rate_guard import RateGuard
from relay.worker.retry import Classification, RetryPolicy, describe_error, error_for_status
from relay.worker.signing import SigningFailure, build_signed_headers, encode_payload
from relay.worker.sync_backend import SyncBackend

logger = logging.getLogger(__name__)

_EXCERPT_CHARS = 1000


class Outcome(enum.Enum):
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"
    DEFERRED = "deferred"  # released without spending an attempt
    HELD = "held"
    DISCARDED = "discarded"  # claim lost (item deleted or recovered elsewhere)


@dataclass
class CycleResult:
    claimed: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    deferred: int = 0
    held: int = 0
    discarded: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0

    def record(self, outcome: Outcome) -> None:
        attr = outcome.value
        setattr(self, attr, getattr(self, attr) + 1)


@dataclass
class _Target:
    """Snapshot of the endpoint an attempt is sent to."""

    id: uuid.UUID
    url: str
    secret: str
    is_active: bool


class Dispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        sync_backend: SyncBackend,
        retry_policy: RetryPolicy,
        webhook_guard: RateGuard,
        sync_guard: RateGuard,
        batch_size: int | None = None,
        concurrency: int | None = None,
        timeout: float | None = None,
        failure_threshold: int | None = None,
        defer_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http = http_client
        self._sync_backend = sync_backend
        self._policy = retry_policy
        self._webhook_guard = webhook_guard
        self._sync_guard = sync_guard
        self.batch_size = batch_size or settings.dispatch_batch_size
        self.concurrency = concurrency or settings.dispatch_concurrency
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.failure_threshold = failure_threshold or settings.endpoint_failure_threshold
        self.defer_seconds = settings.rate_guard_defer_seconds if defer_seconds is None else defer_seconds
        self._wake = asyncio.Event()

    def wake(self) -> None:
        """Run the next cycle now instead of waiting for the interval."""
        self._wake.set()

    async def run_cycle(self) -> CycleResult:
        """Claim one batch and process it. Raises StorageUnavailable if the claim fails."""
        started = time.monotonic()
        async with self._session_factory() as db:
            items = await queue_service.dequeue_batch(db, self.batch_size)

        result = CycleResult(claimed=len(items))
        if not items:
            return result

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(item: QueueItem) -> Outcome:
            async with semaphore:
                return await self._process(item)

        outcomes = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, Exception):
                # Claim stays in_flight until stale-claim recovery releases it
                logger.error("Could not record outcome for item %s: %s", item.id, outcome)
                result.errors.append({"item_id": str(item.id), "error": describe_error(outcome)})
            elif isinstance(outcome, Outcome):
                result.record(outcome)
            else:
                raise outcome

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Dispatch cycle: claimed=%d delivered=%d retrying=%d failed=%d deferred=%d held=%d errors=%d (%dms)",
            result.claimed, result.delivered, result.retrying, result.failed,
            result.deferred, result.held, len(result.errors), result.duration_ms,
        )
        return result

    async def _process(self, item: QueueItem) -> Outcome:
        token = item.claim_token
        if token is None:
            raise RuntimeError(f"Item {item.id} was returned without a claim")
        try:
            if item.kind is QueueItemKind.WEBHOOK_DELIVERY:
                return await self._deliver_webhook(item, token)
            elif item.kind is QueueItemKind.SYNC_ACTION:
                return await self._apply_sync_action(item, token)
            else:
                assert_never(item.kind)
        except StorageUnavailable:
            raise
        except Exception as e:
            logger.exception("Unexpected error dispatching item %s", item.id)
            return await self._record_failure(item, token, e, endpoint_id=None)

    # --- Webhook deliveries ---

    async def _load_target(self, endpoint_id: uuid.UUID | None) -> _Target | None:
        if endpoint_id is None:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                select(EndpointRegistration)
                .options(undefer(EndpointRegistration.secret))
                .where(EndpointRegistration.id == endpoint_id)
            )
            endpoint = result.scalar_one_or_none()
            if endpoint is None:
                return None
            return _Target(
                id=endpoint.id, url=endpoint.url, secret=endpoint.secret, is_active=endpoint.is_active
            )

    async def _deliver_webhook(self, item: QueueItem, token: uuid.UUID) -> Outcome:
        target = await self._load_target(item.endpoint_id)
        if target is None:
            logger.warning("Endpoint %s for item %s no longer exists", item.endpoint_id, item.id)
            return await self._fail_without_attempt(item, token, "Endpoint not found or deleted")

        if not target.is_active:
            # Paused between claim and send: keep the item for when it resumes
            return await self._release(item, token)

        if not await self._webhook_guard.allow(f"endpoint:{target.id}"):
            return await self._defer(item, token)

        event_type = item.event_type.value if item.event_type is not None else ""
        try:
            body = encode_payload(item.payload)
            headers = build_signed_headers(body, target.secret, event_type, item.id)
        except (SigningFailure, TypeError, ValueError) as e:
            logger.error("Signing failed for item %s, holding it: %s", item.id, e)
            async with self._session_factory() as db:
                written = await queue_service.hold_claim(db, item, token, f"Signing failed: {e}")
            return Outcome.HELD if written else Outcome.DISCARDED

        try:
            async with asyncio.timeout(self.timeout):
                response = await self._http.post(target.url, content=body, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError) as e:
            return await self._record_failure(item, token, e, endpoint_id=target.id)

        if response.is_success:
            return await self._record_success(
                item, token, endpoint_id=target.id, status_code=response.status_code, excerpt=response.text
            )
        error = error_for_status(response.status_code, response.text)
        return await self._record_failure(
            item, token, error, endpoint_id=target.id, status_code=response.status_code, excerpt=response.text
        )

    # --- Sync actions ---

    async def _apply_sync_action(self, item: QueueItem, token: uuid.UUID) -> Outcome:
        if item.action_type is None:
            return await self._fail_without_attempt(item, token, "Sync action has no action type")

        async with self._session_factory() as db:
            already_applied = await db.get(ProcessedAction, item.idempotency_key)
        if already_applied is not None:
            logger.info("Action %s already applied, marking item %s delivered", item.idempotency_key, item.id)
            now = datetime.now(UTC)
            async with self._session_factory() as db:
                written = await queue_service.finish_claim(
                    db,
                    item.id,
                    token,
                    {"status": QueueItemStatus.DELIVERED, "completed_at": now, "next_attempt_at": None},
                )
            return Outcome.DELIVERED if written else Outcome.DISCARDED

        if not await self._sync_guard.allow(f"owner:{item.owner_id}"):
            return await self._defer(item, token)

        try:
            async with asyncio.timeout(self.timeout):
                await self._sync_backend.apply(
                    item.action_type, item.owner_id, item.payload, item.idempotency_key
                )
        except Exception as e:
            return await self._record_failure(item, token, e, endpoint_id=None)

        processed = ProcessedAction(
            idempotency_key=item.idempotency_key,
            queue_item_id=item.id,
            action_type=item.action_type.value,
        )
        return await self._record_success(item, token, endpoint_id=None, extra=processed)

    # --- Outcome writes ---

    async def _release(self, item: QueueItem, token: uuid.UUID) -> Outcome:
        async with self._session_factory() as db:
            written = await queue_service.release_claim(db, item, token)
        return Outcome.DEFERRED if written else Outcome.DISCARDED

    async def _defer(self, item: QueueItem, token: uuid.UUID) -> Outcome:
        """Over the rate limit: push the item back a window so it stops occupying batches."""
        not_before = datetime.now(UTC) + timedelta(seconds=self.defer_seconds)
        async with self._session_factory() as db:
            written = await queue_service.release_claim(db, item, token, next_attempt_at=not_before)
        return Outcome.DEFERRED if written else Outcome.DISCARDED

    async def _fail_without_attempt(self, item: QueueItem, token: uuid.UUID, reason: str) -> Outcome:
        async with self._session_factory() as db:
            written = await queue_service.finish_claim(
                db,
                item.id,
                token,
                {
                    "status": QueueItemStatus.FAILED,
                    "completed_at": datetime.now(UTC),
                    "next_attempt_at": None,
                    "last_error": reason,
                },
            )
        return Outcome.FAILED if written else Outcome.DISCARDED

    async def _record_success(
        self,
        item: QueueItem,
        token: uuid.UUID,
        endpoint_id: uuid.UUID | None,
        status_code: int | None = None,
        excerpt: str | None = None,
        extra: Any = None,
    ) -> Outcome:
        now = datetime.now(UTC)
        attempt = item.attempt_number + 1
        log = DeliveryLogEntry(
            queue_item_id=item.id,
            endpoint_id=endpoint_id,
            attempt_number=attempt,
            status_code=status_code,
            response_excerpt=(excerpt or "")[:_EXCERPT_CHARS] or None,
        )
        async with self._session_factory() as db:
            if endpoint_id is not None:
                await db.execute(
                    update(EndpointRegistration)
                    .where(EndpointRegistration.id == endpoint_id)
                    .values(failure_count=0, last_triggered_at=now, last_success_at=now)
                    .execution_options(synchronize_session=False)
                )
            if extra is not None:
                db.add(extra)
            written = await queue_service.finish_claim(
                db,
                item.id,
                token,
                {
                    "status": QueueItemStatus.DELIVERED,
                    "attempt_number": attempt,
                    "last_attempted_at": now,
                    "completed_at": now,
                    "next_attempt_at": None,
                    "last_error": None,
                },
                log=log,
            )
        if not written:
            return Outcome.DISCARDED

        logger.info("Delivered %s item %s on attempt %d", item.kind.value, item.id, attempt)
        return Outcome.DELIVERED

    async def _record_failure(
        self,
        item: QueueItem,
        token: uuid.UUID,
        error: BaseException,
        endpoint_id: uuid.UUID | None,
        status_code: int | None = None,
        excerpt: str | None = None,
    ) -> Outcome:
        now = datetime.now(UTC)
        attempt = item.attempt_number + 1
        message = describe_error(error)

        if self._policy.should_retry(error, attempt, item.max_attempts):
            delay = self._policy.next_delay(item.attempt_number)
            values: dict[str, Any] = {
                "status": QueueItemStatus.RETRYING,
                "next_attempt_at": now + timedelta(seconds=delay),
            }
            last_error = message
            outcome = Outcome.RETRYING
        else:
            values = {"status": QueueItemStatus.FAILED, "completed_at": now, "next_attempt_at": None}
            if self._policy.classify(error) is Classification.TERMINAL:
                last_error = message
            else:
                last_error = f"Gave up after {attempt} attempts: {message}"
            outcome = Outcome.FAILED
        values.update(attempt_number=attempt, last_attempted_at=now, last_error=last_error)

        log = DeliveryLogEntry(
            queue_item_id=item.id,
            endpoint_id=endpoint_id,
            attempt_number=attempt,
            status_code=status_code,
            response_excerpt=(excerpt or "")[:_EXCERPT_CHARS] or None,
            error_message=message,
        )
        async with self._session_factory() as db:
            if endpoint_id is not None:
                await db.execute(
                    update(EndpointRegistration)
                    .where(EndpointRegistration.id == endpoint_id)
                    .values(
                        failure_count=EndpointRegistration.failure_count + 1,
                        last_triggered_at=now,
                        last_failure_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            written = await queue_service.finish_claim(db, item.id, token, values, log=log)
            if not written:
                return Outcome.DISCARDED
            if endpoint_id is not None:
                await self._trip_circuit(db, endpoint_id)

        logger.warning(
            "Attempt %d/%d for %s item %s failed (%s): %s",
            attempt, item.max_attempts, item.kind.value, item.id, outcome.value, message,
        )
        return outcome

    async def _trip_circuit(self, db: AsyncSession, endpoint_id: uuid.UUID) -> None:
        """Pause an endpoint once it reaches the consecutive-failure threshold."""
        result = await db.execute(
            update(EndpointRegistration)
            .where(
                EndpointRegistration.id == endpoint_id,
                EndpointRegistration.is_active.is_(True),
                EndpointRegistration.failure_count >= self.failure_threshold,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.warning(
                "Endpoint %s paused after %d consecutive failures", endpoint_id, self.failure_threshold
            )

    # --- Loop ---

    async def run_forever(self, interval: float | None = None) -> None:
        """Dispatch until cancelled: every interval, on wake(), or straight away after a full batch."""
        interval = settings.dispatch_interval_seconds if interval is None else interval

        while True:
            try:
                self._wake.clear()
                result = await self.run_cycle()
                await self.housekeeping()

                # Deferred items are parked until their window, so they do not make a batch "full"
                if result.claimed - result.deferred >= self.batch_size:
                    continue
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=interval)
                except TimeoutError:
                    pass

            except asyncio.CancelledError:
                logger.info("Dispatcher shutting down")
                break
            except StorageUnavailable:
                logger.error("Queue storage unavailable, retrying in %.0fs", interval)
                await asyncio.sleep(interval)
            except Exception:
                logger.exception("Dispatch cycle error, retrying in %.0fs", interval)
                await asyncio.sleep(interval)

    async def housekeeping(self) -> None:
        """Per-loop upkeep: drop expired items and free claims whose outcome was never written."""
        async with self._session_factory() as db:
            await queue_service.purge_expired(db)
        await self.recover_stale_claims()

    async def recover_stale_claims(self) -> int:
        """Release in_flight items left behind by a crashed worker or a failed outcome write."""
        async with self._session_factory() as db:
            released = await queue_service.release_stale_claims(db)
        if released:
            logger.info("Released %d stale claims", released)
        return released
