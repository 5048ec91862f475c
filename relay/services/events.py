"""Event producers: the only way application code puts work on the queue.

Producers never sign or send anything. They enqueue, and the delivery
worker does the rest.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from relay.models.endpoint import WebhookEvent, normalize_event
from relay.models.queue_item import QueueItem, QueueItemKind, SyncActionType
from relay.services import endpoints as endpoint_service
from relay.services import queue as queue_service

logger = logging.getLogger(__name__)


def build_event_envelope(
    event: WebhookEvent,
    owner_id: str,
    data: dict[str, Any],
    event_id: str | None = None,
) -> dict[str, Any]:
    """JSON body delivered to webhook receivers."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "event": event.value,
        "store_id": owner_id,
        "created_at": datetime.now(UTC).isoformat(),
        "data": data,
    }


async def publish_event(
    db: AsyncSession,
    owner_id: str,
    event_type: str | WebhookEvent,
    data: dict[str, Any],
    priority: int = 3,
) -> list[QueueItem]:
    """Fan an event out to every active endpoint of the owner subscribed to it."""
    event = normalize_event(event_type)
    subscribers = await endpoint_service.list_subscribers(db, owner_id, event)
    if not subscribers:
        logger.debug("No endpoints subscribed to %s for owner %s", event.value, owner_id)
        return []

    envelope = build_event_envelope(event, owner_id, data)
    items = []
    for endpoint in subscribers:
        item = await queue_service.enqueue(
            db,
            QueueItemKind.WEBHOOK_DELIVERY,
            owner_id,
            envelope,
            priority,
            endpoint_id=endpoint.id,
            event_type=event,
        )
        items.append(item)

    logger.info("Event %s for owner %s queued to %d endpoints", event.value, owner_id, len(items))
    return items


async def queue_sync_action(
    db: AsyncSession,
    owner_id: str,
    action_type: SyncActionType,
    payload: dict[str, Any],
    priority: int = 3,
    idempotency_key: str | None = None,
) -> QueueItem:
    """Queue an offline storefront action for replay against the backend."""
    return await queue_service.enqueue(
        db,
        QueueItemKind.SYNC_ACTION,
        owner_id,
        payload,
        priority,
        action_type=action_type,
        idempotency_key=idempotency_key,
    )
