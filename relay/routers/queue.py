"""Event ingress and queue operations."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from relay.database import get_db
from relay.redis import get_redis, request_dispatch
from relay.schemas.endpoint import DeliveryLogResponse
from relay.schemas.queue import (
    EnqueueResponse,
    EventPublish,
    QueueItemResponse,
    QueueStatsResponse,
    RetryFailedRequest,
    RetryFailedResponse,
    SyncBatchRequest,
)
from relay.services import events as event_service
from relay.services import queue as queue_service

router = APIRouter(tags=["queue"])


@router.post("/events", response_model=EnqueueResponse, status_code=202)
async def publish_event(
    data: EventPublish,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> EnqueueResponse:
    """Queue one delivery per active endpoint subscribed to the event."""
    items = await event_service.publish_event(
        db, data.owner_id, data.event_type, data.payload, data.priority
    )
    if items:
        await request_dispatch(redis, "event")
    return EnqueueResponse(item_ids=[item.id for item in items])


@router.post("/queue/actions", response_model=EnqueueResponse, status_code=202)
async def enqueue_actions(
    data: SyncBatchRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> EnqueueResponse:
    """Queue a batch of offline storefront actions for replay."""
    items = []
    for action in data.actions:
        item = await event_service.queue_sync_action(
            db,
            data.owner_id,
            action.action_type,
            action.payload,
            action.priority,
            idempotency_key=action.idempotency_key,
        )
        items.append(item)
    await request_dispatch(redis, "actions")
    return EnqueueResponse(item_ids=[item.id for item in items])


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(
    owner_id: str | None = Query(None, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> QueueStatsResponse:
    stats = await queue_service.get_stats(db, owner_id)
    return QueueStatsResponse(**stats)


@router.get("/queue/pending", response_model=list[QueueItemResponse])
async def list_pending(
    limit: int = Query(50, ge=1, le=200),
    owner_id: str | None = Query(None, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> list[QueueItemResponse]:
    """Unfinished items in the order the dispatcher will take them."""
    items = await queue_service.list_pending(db, limit, owner_id)
    return [QueueItemResponse.model_validate(item) for item in items]


@router.get("/queue/failed", response_model=list[QueueItemResponse])
async def list_failed(
    limit: int = Query(50, ge=1, le=200),
    owner_id: str | None = Query(None, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> list[QueueItemResponse]:
    """Items that exhausted their attempts or failed terminally, newest first."""
    items = await queue_service.list_failed(db, limit, owner_id)
    return [QueueItemResponse.model_validate(item) for item in items]


@router.post("/queue/sync", status_code=202)
async def sync_now(redis: aioredis.Redis = Depends(get_redis)) -> dict:
    """Manual "sync now": run a dispatch cycle without waiting for the timer."""
    signalled = await request_dispatch(redis, "manual")
    return {"signalled": signalled}


@router.post("/queue/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(
    data: RetryFailedRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> RetryFailedResponse:
    """Reset every failed or held item to pending with a fresh attempt budget."""
    reset = await queue_service.retry_failed(db, data.owner_id)
    if reset:
        await request_dispatch(redis, "retry")
    return RetryFailedResponse(reset=reset)


@router.get("/queue/{item_id}", response_model=QueueItemResponse)
async def get_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> QueueItemResponse:
    item = await queue_service.get_item(db, item_id)
    return QueueItemResponse.model_validate(item)


@router.delete("/queue/{item_id}", status_code=204)
async def delete_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Cancel an item. An attempt already in flight will not record its outcome."""
    await queue_service.delete_item(db, item_id)


@router.post("/queue/{item_id}/retry", response_model=QueueItemResponse)
async def retry_item(
    item_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> QueueItemResponse:
    item = await queue_service.retry_item(db, item_id)
    await request_dispatch(redis, "retry")
    return QueueItemResponse.model_validate(item)


@router.get("/queue/{item_id}/logs", response_model=list[DeliveryLogResponse])
async def list_item_logs(
    item_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> list[DeliveryLogResponse]:
    """Attempt history for one item, most recent first."""
    logs = await queue_service.list_logs(db, item_id, limit)
    return [DeliveryLogResponse.model_validate(log) for log in logs]
