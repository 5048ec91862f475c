"""Pydantic v2 schemas for webhook endpoint registration."""

import ipaddress
import uuid
from datetime import datetime
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relay.models.endpoint import WebhookEvent, normalize_event

# Private/internal IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
]


def validate_webhook_url(url: str) -> str:
    """Webhook targets must be HTTPS and must not point at private addresses."""
    parsed = urlparse(url)
    if parsed.scheme != "https":
        raise ValueError("url must use HTTPS")
    if not parsed.hostname:
        raise ValueError("url must have a valid hostname")

    try:
        addr = ipaddress.ip_address(parsed.hostname)
    except ValueError:
        return url  # a domain name, not an IP literal

    if any(addr in network for network in _BLOCKED_NETWORKS):
        raise ValueError("url must not point to a private/internal IP")
    return url


class EndpointCreate(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64, description="Store that owns the endpoint")
    url: str = Field(..., max_length=2048)
    events: list[str] = Field(..., min_length=1, max_length=len(WebhookEvent))
    description: str | None = Field(None, max_length=1024)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return validate_webhook_url(v)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        normalized: list[str] = []
        for name in v:
            try:
                event = normalize_event(name)
            except ValueError:
                raise ValueError(f"Unknown event type: {name}")
            if event.value not in normalized:
                normalized.append(event.value)
        return normalized


class EndpointResponse(BaseModel):
    """Public view of a registration. The signing secret is never part of it."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    url: str
    description: str | None
    subscribed_events: list[str]
    is_active: bool
    failure_count: int
    last_triggered_at: datetime | None
    last_success_at: datetime | None
    last_failure_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DeliveryLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    queue_item_id: uuid.UUID
    endpoint_id: uuid.UUID | None
    attempt_number: int
    status_code: int | None
    response_excerpt: str | None
    error_message: str | None
    created_at: datetime
