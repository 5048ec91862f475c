"""Durable queue store backed by the relational database.

Every mutation commits immediately, so a crash between enqueue and dispatch
never loses an item (at-least-once delivery). Claiming is a single
conditional UPDATE: on PostgreSQL the candidate subselect takes
FOR UPDATE SKIP LOCKED row locks, on SQLite the statement holds the database
write lock. Two concurrent dispatchers never receive the same item.
"""

import functools
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, ParamSpec, TypeVar

from fastapi import HTTPException
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.config import settings
from relay.models.delivery_log import DeliveryLogEntry
from relay.models.endpoint import EndpointRegistration, WebhookEvent
from relay.models.queue_item import (
    DISPATCHABLE_STATUSES,
    TERMINAL_STATUSES,
    QueueItem,
    QueueItemKind,
    QueueItemStatus,
    SyncActionType,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Oldest delivered items pruned per pass once the queue is at capacity
_PRUNE_BATCH = 50


class StorageUnavailable(Exception):
    """The backing store cannot be reached."""


def _storage_guard(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Translate connection-level database errors into StorageUnavailable."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await fn(*args, **kwargs)
        except (OperationalError, InterfaceError, ConnectionError, OSError) as e:
            logger.error("Queue storage unavailable in %s: %s", fn.__name__, e)
            raise StorageUnavailable(str(e)) from e

    return wrapper


def _dispatch_order() -> tuple[Any, Any]:
    return QueueItem.priority.desc(), QueueItem.created_at.asc()


def _released_status(item_attempts: int) -> QueueItemStatus:
    """Status an unfinished item returns to when its claim is dropped."""
    return QueueItemStatus.PENDING if item_attempts == 0 else QueueItemStatus.RETRYING


@_storage_guard
async def enqueue(
    db: AsyncSession,
    kind: QueueItemKind,
    owner_id: str,
    payload: dict[str, Any],
    priority: int = 3,
    *,
    endpoint_id: uuid.UUID | None = None,
    event_type: WebhookEvent | None = None,
    action_type: SyncActionType | None = None,
    max_attempts: int | None = None,
    idempotency_key: str | None = None,
) -> QueueItem:
    """Append a new pending item.

    A repeated idempotency_key returns the existing item instead of inserting
    a duplicate (offline clients resubmit the same action after reconnecting).
    """
    if kind is QueueItemKind.WEBHOOK_DELIVERY:
        if endpoint_id is None or event_type is None:
            raise ValueError("webhook_delivery items need endpoint_id and event_type")
        default_attempts = settings.webhook_max_attempts
    elif kind is QueueItemKind.SYNC_ACTION:
        if action_type is None:
            raise ValueError("sync_action items need action_type")
        default_attempts = settings.sync_max_attempts
    else:
        raise ValueError(f"Unknown queue item kind: {kind!r}")

    if idempotency_key is not None:
        existing = await _find_by_key(db, idempotency_key)
        if existing is not None:
            logger.info("Duplicate idempotency key %s, returning item %s", idempotency_key, existing.id)
            return existing

    await _enforce_capacity(db)

    item = QueueItem(
        id=uuid.uuid4(),
        kind=kind,
        owner_id=owner_id,
        endpoint_id=endpoint_id,
        event_type=event_type,
        action_type=action_type,
        idempotency_key=idempotency_key or uuid.uuid4().hex,
        payload=dict(payload),
        priority=priority,
        status=QueueItemStatus.PENDING,
        attempt_number=0,
        max_attempts=max_attempts or default_attempts,
    )
    db.add(item)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent submission with the same key won the insert
        await db.rollback()
        if idempotency_key is None:
            raise
        existing = await _find_by_key(db, idempotency_key)
        if existing is None:
            raise
        logger.info("Idempotency key %s inserted concurrently, returning item %s", idempotency_key, existing.id)
        return existing
    await db.refresh(item)

    logger.info("Enqueued %s item %s (owner=%s, priority=%d)", kind.value, item.id, owner_id, priority)
    return item


async def _find_by_key(db: AsyncSession, idempotency_key: str) -> QueueItem | None:
    result = await db.execute(
        select(QueueItem).where(QueueItem.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def _enforce_capacity(db: AsyncSession) -> None:
    total = await db.scalar(select(func.count()).select_from(QueueItem))
    if (total or 0) < settings.queue_max_items:
        return

    oldest = (
        select(QueueItem.id)
        .where(QueueItem.status == QueueItemStatus.DELIVERED)
        .order_by(QueueItem.created_at.asc())
        .limit(_PRUNE_BATCH)
    )
    ids = list((await db.execute(oldest)).scalars().all())
    if ids:
        await _delete_items(db, ids)
    logger.warning("Queue at capacity (%d items), pruned %d delivered items", total, len(ids))


async def _delete_items(db: AsyncSession, ids: list[uuid.UUID]) -> None:
    await db.execute(delete(DeliveryLogEntry).where(DeliveryLogEntry.queue_item_id.in_(ids)))
    await db.execute(delete(QueueItem).where(QueueItem.id.in_(ids)))


@_storage_guard
async def dequeue_batch(
    db: AsyncSession, max_items: int, now: datetime | None = None
) -> list[QueueItem]:
    """Atomically claim up to max_items due items, marking them in_flight.

    Ordered by priority (desc) then age (asc). Skips terminal, in-flight and
    held items, items whose retry is not yet due, and webhook items whose
    endpoint is paused.
    """
    now = now or datetime.now(UTC)
    token = uuid.uuid4()

    paused_endpoints = select(EndpointRegistration.id).where(
        EndpointRegistration.is_active.is_(False)
    )
    candidates = (
        select(QueueItem.id)
        .where(
            QueueItem.status.in_(DISPATCHABLE_STATUSES),
            QueueItem.is_held.is_(False),
            or_(QueueItem.next_attempt_at.is_(None), QueueItem.next_attempt_at <= now),
            or_(
                QueueItem.endpoint_id.is_(None),
                QueueItem.endpoint_id.not_in(paused_endpoints),
            ),
        )
        .order_by(*_dispatch_order())
        .limit(max_items)
        .with_for_update(skip_locked=True)
    )

    await db.execute(
        update(QueueItem)
        .where(
            QueueItem.id.in_(candidates),
            QueueItem.status.in_(DISPATCHABLE_STATUSES),
        )
        .values(status=QueueItemStatus.IN_FLIGHT, claim_token=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(QueueItem)
        .where(QueueItem.claim_token == token)
        .order_by(*_dispatch_order())
        .execution_options(populate_existing=True)
    )
    items = list(result.scalars().all())
    await db.commit()

    if items:
        logger.info("Claimed %d queue items (claim %s)", len(items), token)
    return items


@_storage_guard
async def finish_claim(
    db: AsyncSession,
    item_id: uuid.UUID,
    claim_token: uuid.UUID,
    values: dict[str, Any],
    log: DeliveryLogEntry | None = None,
) -> bool:
    """Write the outcome of a claimed attempt and drop the claim.

    The write is conditional on the claim still being held, so an item an
    operator deleted (or a stale claim another worker recovered) is left
    alone. Returns False when the claim was lost.
    """
    result = await db.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.claim_token == claim_token)
        .values(claim_token=None, claimed_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        logger.warning("Claim %s on item %s lost before write, discarding outcome", claim_token, item_id)
        return False

    if log is not None:
        db.add(log)
    await db.commit()
    return True


async def release_claim(
    db: AsyncSession,
    item: QueueItem,
    claim_token: uuid.UUID,
    next_attempt_at: datetime | None = None,
) -> bool:
    """Return a claimed item to the queue without spending an attempt.

    With next_attempt_at the item is not claimable again before that time.
    """
    values: dict[str, Any] = {"status": _released_status(item.attempt_number)}
    if next_attempt_at is not None:
        values["next_attempt_at"] = next_attempt_at
    return await finish_claim(db, item.id, claim_token, values)


async def hold_claim(db: AsyncSession, item: QueueItem, claim_token: uuid.UUID, reason: str) -> bool:
    """Park a claimed item until an operator retries it."""
    return await finish_claim(
        db,
        item.id,
        claim_token,
        {"status": _released_status(item.attempt_number), "is_held": True, "last_error": reason},
    )


@_storage_guard
async def get_item(db: AsyncSession, item_id: uuid.UUID) -> QueueItem:
    result = await db.execute(
        select(QueueItem)
        .where(QueueItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item


@_storage_guard
async def update_status(
    db: AsyncSession,
    item_id: uuid.UUID,
    new_status: QueueItemStatus,
    error: str | None = None,
) -> QueueItem:
    """Set an item's status directly. Terminal items cannot be moved."""
    item = await get_item(db, item_id)
    if item.is_terminal and new_status != item.status:
        raise HTTPException(
            status_code=409,
            detail=f"Item is {item.status.value} and cannot change status",
        )

    now = datetime.now(UTC)
    item.status = new_status
    if new_status is not QueueItemStatus.IN_FLIGHT:
        item.claim_token = None
        item.claimed_at = None
    if new_status is QueueItemStatus.DELIVERED:
        item.completed_at = now
        item.last_error = None
    elif new_status is QueueItemStatus.FAILED:
        item.completed_at = now
        item.last_error = error or item.last_error
    elif error is not None:
        item.last_error = error

    await db.commit()
    await db.refresh(item)
    return item


@_storage_guard
async def delete_item(db: AsyncSession, item_id: uuid.UUID) -> None:
    """Remove an item and its delivery logs. A claimed attempt will not write back."""
    await get_item(db, item_id)
    await _delete_items(db, [item_id])
    await db.commit()
    logger.info("Deleted queue item %s", item_id)


@_storage_guard
async def list_pending(
    db: AsyncSession, limit: int = 50, owner_id: str | None = None
) -> list[QueueItem]:
    """Unfinished items in dispatch order (includes in-flight and held)."""
    stmt = select(QueueItem).where(QueueItem.status.not_in(TERMINAL_STATUSES))
    if owner_id is not None:
        stmt = stmt.where(QueueItem.owner_id == owner_id)
    result = await db.execute(stmt.order_by(*_dispatch_order()).limit(limit))
    return list(result.scalars().all())


@_storage_guard
async def list_failed(
    db: AsyncSession, limit: int = 50, owner_id: str | None = None
) -> list[QueueItem]:
    """Items that gave up, most recently failed first."""
    stmt = select(QueueItem).where(QueueItem.status == QueueItemStatus.FAILED)
    if owner_id is not None:
        stmt = stmt.where(QueueItem.owner_id == owner_id)
    result = await db.execute(
        stmt.order_by(QueueItem.completed_at.desc(), QueueItem.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


@_storage_guard
async def list_logs(db: AsyncSession, item_id: uuid.UUID, limit: int = 50) -> list[DeliveryLogEntry]:
    """Attempt history of one item (webhook or sync action), most recent first."""
    await get_item(db, item_id)
    result = await db.execute(
        select(DeliveryLogEntry)
        .where(DeliveryLogEntry.queue_item_id == item_id)
        .order_by(DeliveryLogEntry.attempt_number.desc(), DeliveryLogEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


@_storage_guard
async def get_stats(db: AsyncSession, owner_id: str | None = None) -> dict[str, Any]:
    """Counts by status, kind and owner."""

    def scoped(stmt):  # type: ignore[no-untyped-def]
        return stmt.where(QueueItem.owner_id == owner_id) if owner_id is not None else stmt

    by_status = {
        status.value: count
        for status, count in (
            await db.execute(scoped(select(QueueItem.status, func.count()).group_by(QueueItem.status)))
        ).all()
    }
    by_kind = {
        kind.value: count
        for kind, count in (
            await db.execute(scoped(select(QueueItem.kind, func.count()).group_by(QueueItem.kind)))
        ).all()
    }
    by_owner = dict(
        (
            await db.execute(scoped(select(QueueItem.owner_id, func.count()).group_by(QueueItem.owner_id)))
        ).all()
    )
    held = await db.scalar(
        scoped(select(func.count()).select_from(QueueItem).where(QueueItem.is_held.is_(True)))
    )

    return {
        "total": sum(by_status.values()),
        "pending": by_status.get(QueueItemStatus.PENDING.value, 0),
        "in_flight": by_status.get(QueueItemStatus.IN_FLIGHT.value, 0),
        "retrying": by_status.get(QueueItemStatus.RETRYING.value, 0),
        "delivered": by_status.get(QueueItemStatus.DELIVERED.value, 0),
        "failed": by_status.get(QueueItemStatus.FAILED.value, 0),
        "held": held or 0,
        "by_kind": by_kind,
        "by_owner": by_owner,
    }


def _reset_for_retry(item: QueueItem) -> None:
    item.status = QueueItemStatus.PENDING
    item.attempt_number = 0
    item.next_attempt_at = None
    item.is_held = False
    item.last_error = None
    item.completed_at = None


@_storage_guard
async def retry_item(db: AsyncSession, item_id: uuid.UUID) -> QueueItem:
    """Operator retry: put a failed or held item back to pending with a fresh attempt budget."""
    item = await get_item(db, item_id)
    if item.status is not QueueItemStatus.FAILED and not item.is_held:
        raise HTTPException(status_code=409, detail="Only failed or held items can be retried")

    _reset_for_retry(item)
    await db.commit()
    await db.refresh(item)
    logger.info("Operator retry requested for item %s", item_id)
    return item


@_storage_guard
async def retry_failed(db: AsyncSession, owner_id: str | None = None) -> int:
    """Reset every failed or held item (optionally for one owner). Returns the count."""
    stmt = select(QueueItem).where(
        or_(QueueItem.status == QueueItemStatus.FAILED, QueueItem.is_held.is_(True))
    )
    if owner_id is not None:
        stmt = stmt.where(QueueItem.owner_id == owner_id)
    items = list((await db.execute(stmt)).scalars().all())
    for item in items:
        _reset_for_retry(item)
    await db.commit()

    if items:
        logger.info("Reset %d failed/held items for retry", len(items))
    return len(items)


@_storage_guard
async def purge_expired(
    db: AsyncSession, retention_hours: int | None = None, now: datetime | None = None
) -> int:
    """Delete delivered/failed items completed before the retention window."""
    hours = settings.queue_retention_hours if retention_hours is None else retention_hours
    cutoff = (now or datetime.now(UTC)) - timedelta(hours=hours)
    ids = list(
        (
            await db.execute(
                select(QueueItem.id).where(
                    QueueItem.status.in_(TERMINAL_STATUSES),
                    QueueItem.completed_at < cutoff,
                )
            )
        ).scalars().all()
    )
    if ids:
        await _delete_items(db, ids)
        await db.commit()
        logger.info("Purged %d completed queue items older than %dh", len(ids), hours)
    return len(ids)


@_storage_guard
async def release_stale_claims(
    db: AsyncSession, older_than_seconds: int | None = None, now: datetime | None = None
) -> int:
    """Release in_flight items whose worker died mid-attempt or never wrote its outcome.

    Each write is conditional on the item still being in_flight with an old
    claim, so an outcome the worker records concurrently is never overwritten.
    """
    seconds = settings.claim_timeout_seconds if older_than_seconds is None else older_than_seconds
    cutoff = (now or datetime.now(UTC)) - timedelta(seconds=seconds)
    stale = (QueueItem.status == QueueItemStatus.IN_FLIGHT, QueueItem.claimed_at < cutoff)

    released = 0
    for by_attempts, back_to in (
        (QueueItem.attempt_number == 0, QueueItemStatus.PENDING),
        (QueueItem.attempt_number > 0, QueueItemStatus.RETRYING),
    ):
        result = await db.execute(
            update(QueueItem)
            .where(*stale, by_attempts)
            .values(status=back_to, claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        released += result.rowcount
    await db.commit()

    if released:
        logger.info("Released %d stale in-flight claims", released)
    return released
