"""Webhook endpoint registration and delivery-log queries.

Runs in the API process. The signing secret is generated here but the
deferred column is never loaded back; only the delivery worker reads it.
"""

import logging
import secrets
import uuid

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.models.delivery_log import DeliveryLogEntry
from relay.models.endpoint import EndpointRegistration, WebhookEvent
from relay.schemas.endpoint import EndpointCreate

logger = logging.getLogger(__name__)


async def register_endpoint(db: AsyncSession, data: EndpointCreate) -> EndpointRegistration:
    """Register a webhook endpoint for a store. The secret is generated server-side."""
    endpoint = EndpointRegistration(
        id=uuid.uuid4(),
        owner_id=data.owner_id,
        url=data.url,
        secret=secrets.token_hex(32),
        description=data.description,
        subscribed_events=list(data.events),
        is_active=True,
        failure_count=0,
    )
    db.add(endpoint)
    await db.commit()
    await db.refresh(endpoint)

    logger.info(
        "Webhook endpoint %s registered for owner %s (%d events)",
        endpoint.id, endpoint.owner_id, len(endpoint.subscribed_events),
    )
    return endpoint


async def get_endpoint(db: AsyncSession, endpoint_id: uuid.UUID) -> EndpointRegistration:
    result = await db.execute(
        select(EndpointRegistration).where(EndpointRegistration.id == endpoint_id)
        .execution_options(populate_existing=True)
    )
    endpoint = result.scalar_one_or_none()
    if endpoint is None:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return endpoint


async def list_endpoints(db: AsyncSession, owner_id: str) -> list[EndpointRegistration]:
    result = await db.execute(
        select(EndpointRegistration)
        .where(EndpointRegistration.owner_id == owner_id)
        .order_by(EndpointRegistration.created_at.desc())
    )
    return list(result.scalars().all())


async def list_subscribers(
    db: AsyncSession, owner_id: str, event: WebhookEvent
) -> list[EndpointRegistration]:
    """Active endpoints of an owner subscribed to an event."""
    endpoints = await list_endpoints(db, owner_id)
    return [e for e in endpoints if e.subscribes_to(event)]


async def pause_endpoint(db: AsyncSession, endpoint_id: uuid.UUID) -> EndpointRegistration:
    """Stop deliveries. Already-queued items stay pending until resume."""
    endpoint = await get_endpoint(db, endpoint_id)
    endpoint.is_active = False
    await db.commit()
    await db.refresh(endpoint)
    logger.info("Webhook endpoint %s paused", endpoint_id)
    return endpoint


async def resume_endpoint(db: AsyncSession, endpoint_id: uuid.UUID) -> EndpointRegistration:
    """Re-enable deliveries and clear the consecutive failure counter."""
    endpoint = await get_endpoint(db, endpoint_id)
    endpoint.is_active = True
    endpoint.failure_count = 0
    await db.commit()
    await db.refresh(endpoint)
    logger.info("Webhook endpoint %s resumed", endpoint_id)
    return endpoint


async def delete_endpoint(db: AsyncSession, endpoint_id: uuid.UUID) -> None:
    """Delete a registration. Items still queued for it fail at dispatch time."""
    await get_endpoint(db, endpoint_id)
    await db.execute(delete(EndpointRegistration).where(EndpointRegistration.id == endpoint_id))
    await db.commit()
    logger.info("Webhook endpoint %s deleted", endpoint_id)


async def list_deliveries(
    db: AsyncSession, endpoint_id: uuid.UUID, limit: int = 50
) -> list[DeliveryLogEntry]:
    """Delivery attempts for an endpoint, most recent first."""
    result = await db.execute(
        select(DeliveryLogEntry)
        .where(DeliveryLogEntry.endpoint_id == endpoint_id)
        .order_by(DeliveryLogEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
