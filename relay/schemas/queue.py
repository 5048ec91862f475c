"""Pydantic v2 schemas for the queue and event ingress endpoints."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relay.config import settings
from relay.models.endpoint import normalize_event
from relay.models.queue_item import SyncActionType


def _enum_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class SyncActionIn(BaseModel):
    action_type: SyncActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(None, min_length=8, max_length=64)
    priority: int = Field(3, ge=1, le=5, description="1 = low, 5 = critical")


class SyncBatchRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    actions: list[SyncActionIn] = Field(..., min_length=1)

    @field_validator("actions")
    @classmethod
    def validate_batch_size(cls, v: list[SyncActionIn]) -> list[SyncActionIn]:
        if len(v) > settings.sync_max_batch_size:
            raise ValueError(f"Too many actions in one request (max {settings.sync_max_batch_size})")
        return v


class EventPublish(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(3, ge=1, le=5)

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        try:
            return normalize_event(v).value
        except ValueError:
            raise ValueError(f"Unknown event type: {v}")


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    kind: str
    owner_id: str
    endpoint_id: uuid.UUID | None
    event_type: str | None
    action_type: str | None
    idempotency_key: str
    payload: dict[str, Any]
    priority: int
    status: str
    attempt_number: int
    max_attempts: int
    is_held: bool
    last_error: str | None
    next_attempt_at: datetime | None
    created_at: datetime
    last_attempted_at: datetime | None
    completed_at: datetime | None

    @field_validator("kind", "event_type", "action_type", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class EnqueueResponse(BaseModel):
    item_ids: list[uuid.UUID]


class QueueStatsResponse(BaseModel):
    total: int
    pending: int
    in_flight: int
    retrying: int
    delivered: int
    failed: int
    held: int
    by_kind: dict[str, int]
    by_owner: dict[str, int]


class RetryFailedRequest(BaseModel):
    owner_id: str | None = None


class RetryFailedResponse(BaseModel):
    reset: int
