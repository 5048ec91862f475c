"""Webhook endpoint registration model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, deferred, mapped_column

from relay.database import Base, JSONType


class WebhookEvent(enum.Enum):
    ORDER_CREATED = "order.created"
    ORDER_COMPLETED = "order.completed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_REFUNDED = "order.refunded"
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    SERVICE_BOOKING_CONFIRMED = "service.booking_confirmed"
    SERVICE_BOOKING_CANCELLED = "service.booking_cancelled"
    COURSE_ENROLLED = "course.enrolled"
    COURSE_COMPLETED = "course.completed"
    SUBSCRIPTION_EXPIRED = "subscription.expired"


# Older storefront builds still emit these names
LEGACY_EVENT_ALIASES: dict[str, WebhookEvent] = {
    "order.payment_received": WebhookEvent.PAYMENT_COMPLETED,
    "order.payment_failed": WebhookEvent.PAYMENT_FAILED,
    "product.stock_low": WebhookEvent.PRODUCT_UPDATED,
    "product.out_of_stock": WebhookEvent.PRODUCT_UPDATED,
    "course.enrollment": WebhookEvent.COURSE_ENROLLED,
}


def normalize_event(name: str | WebhookEvent) -> WebhookEvent:
    """Map an event name (current or legacy) to a WebhookEvent. Raises ValueError if unknown."""
    if isinstance(name, WebhookEvent):
        return name
    if name in LEGACY_EVENT_ALIASES:
        return LEGACY_EVENT_ALIASES[name]
    return WebhookEvent(name)


class EndpointRegistration(Base):
    __tablename__ = "endpoint_registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    # Deferred: only the delivery worker loads it (with undefer)
    secret: Mapped[str] = deferred(mapped_column(String(128), nullable=False))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscribed_events: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def subscribes_to(self, event: WebhookEvent) -> bool:
        return self.is_active and event.value in (self.subscribed_events or [])
