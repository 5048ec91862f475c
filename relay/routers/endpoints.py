"""Webhook endpoint registration endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from relay.database import get_db
from relay.schemas.endpoint import DeliveryLogResponse, EndpointCreate, EndpointResponse
from relay.services import endpoints as endpoint_service

router = APIRouter(prefix="/endpoints", tags=["endpoints"])


@router.post("", response_model=EndpointResponse, status_code=201)
async def register_endpoint(
    data: EndpointCreate,
    db: AsyncSession = Depends(get_db),
) -> EndpointResponse:
    """Register a webhook endpoint. The signing secret stays server-side."""
    endpoint = await endpoint_service.register_endpoint(db, data)
    return EndpointResponse.model_validate(endpoint)


@router.get("", response_model=list[EndpointResponse])
async def list_endpoints(
    owner_id: str = Query(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> list[EndpointResponse]:
    endpoints = await endpoint_service.list_endpoints(db, owner_id)
    return [EndpointResponse.model_validate(e) for e in endpoints]


@router.get("/{endpoint_id}", response_model=EndpointResponse)
async def get_endpoint(
    endpoint_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EndpointResponse:
    endpoint = await endpoint_service.get_endpoint(db, endpoint_id)
    return EndpointResponse.model_validate(endpoint)


@router.post("/{endpoint_id}/pause", response_model=EndpointResponse)
async def pause_endpoint(
    endpoint_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EndpointResponse:
    endpoint = await endpoint_service.pause_endpoint(db, endpoint_id)
    return EndpointResponse.model_validate(endpoint)


@router.post("/{endpoint_id}/resume", response_model=EndpointResponse)
async def resume_endpoint(
    endpoint_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EndpointResponse:
    endpoint = await endpoint_service.resume_endpoint(db, endpoint_id)
    return EndpointResponse.model_validate(endpoint)


@router.delete("/{endpoint_id}", status_code=204)
async def delete_endpoint(
    endpoint_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    await endpoint_service.delete_endpoint(db, endpoint_id)


@router.get("/{endpoint_id}/deliveries", response_model=list[DeliveryLogResponse])
async def list_deliveries(
    endpoint_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> list[DeliveryLogResponse]:
    """Delivery attempts for an endpoint, most recent first."""
    await endpoint_service.get_endpoint(db, endpoint_id)
    logs = await endpoint_service.list_deliveries(db, endpoint_id, limit)
    return [DeliveryLogResponse.model_validate(log) for log in logs]
