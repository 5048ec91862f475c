"""Durable queue item model: the unit of outbound work."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from relay.database import Base, JSONType
from relay.models.endpoint import WebhookEvent


class QueueItemKind(enum.Enum):
    WEBHOOK_DELIVERY = "webhook_delivery"
    SYNC_ACTION = "sync_action"


class QueueItemStatus(enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"


TERMINAL_STATUSES = (QueueItemStatus.DELIVERED, QueueItemStatus.FAILED)
DISPATCHABLE_STATUSES = (QueueItemStatus.PENDING, QueueItemStatus.RETRYING)


class SyncActionType(enum.Enum):
    CREATE_ORDER = "create_order"
    UPDATE_PRODUCT = "update_product"
    ADD_TO_CART = "add_to_cart"
    UPDATE_CART = "update_cart"
    CREATE_STORE = "create_store"
    UPDATE_STORE = "update_store"
    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    CREATE_REVIEW = "create_review"
    UPDATE_INVENTORY = "update_inventory"
    PROCESS_PAYMENT = "process_payment"
    CREATE_SHIPMENT = "create_shipment"
    UPDATE_SHIPMENT = "update_shipment"
    CREATE_RETURN = "create_return"
    UPDATE_RETURN = "update_return"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [e.value for e in enum_cls]


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_dispatch", "status", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[QueueItemKind] = mapped_column(
        Enum(QueueItemKind, values_callable=_enum_values), nullable=False
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    endpoint_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    event_type: Mapped[WebhookEvent | None] = mapped_column(
        Enum(WebhookEvent, values_callable=_enum_values), nullable=True
    )
    action_type: Mapped[SyncActionType | None] = mapped_column(
        Enum(SyncActionType, values_callable=_enum_values), nullable=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[QueueItemStatus] = mapped_column(
        Enum(QueueItemStatus, values_callable=_enum_values),
        nullable=False,
        default=QueueItemStatus.PENDING,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    last_attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ProcessedAction(Base):
    """Idempotency record: a sync action whose key has already been applied."""

    __tablename__ = "processed_actions"

    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    queue_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
