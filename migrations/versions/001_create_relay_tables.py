"""Create endpoint registrations, queue items, delivery logs and processed actions.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_WEBHOOK_EVENTS = (
    "order.created", "order.completed", "order.cancelled", "order.refunded",
    "product.created", "product.updated", "product.deleted",
    "customer.created", "customer.updated",
    "payment.completed", "payment.failed", "payment.refunded",
    "service.booking_confirmed", "service.booking_cancelled",
    "course.enrolled", "course.completed",
    "subscription.expired",
)

_SYNC_ACTIONS = (
    "create_order", "update_product", "add_to_cart", "update_cart",
    "create_store", "update_store", "create_user", "update_user",
    "create_review", "update_inventory", "process_payment",
    "create_shipment", "update_shipment", "create_return", "update_return",
)


def upgrade() -> None:
    op.create_table(
        "endpoint_registrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("secret", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("subscribed_events", JSONB, nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_endpoint_registrations_owner_id", "endpoint_registrations", ["owner_id"])

    op.create_table(
        "queue_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "kind",
            sa.Enum("webhook_delivery", "sync_action", name="queueitemkind"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("endpoint_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.Enum(*_WEBHOOK_EVENTS, name="webhookevent"), nullable=True),
        sa.Column("action_type", sa.Enum(*_SYNC_ACTIONS, name="syncactiontype"), nullable=True),
        sa.Column("idempotency_key", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "status",
            sa.Enum("pending", "in_flight", "delivered", "retrying", "failed", name="queueitemstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.Uuid(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_held", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_queue_items_idempotency_key"),
    )
    op.create_index("ix_queue_items_owner_id", "queue_items", ["owner_id"])
    op.create_index("ix_queue_items_endpoint_id", "queue_items", ["endpoint_id"])
    op.create_index("ix_queue_items_dispatch", "queue_items", ["status", "priority", "created_at"])

    op.create_table(
        "delivery_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "queue_item_id",
            sa.Uuid(),
            sa.ForeignKey("queue_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("endpoint_id", sa.Uuid(), nullable=True),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_excerpt", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_logs_queue_item_id", "delivery_logs", ["queue_item_id"])
    op.create_index("ix_delivery_logs_endpoint_id", "delivery_logs", ["endpoint_id"])

    op.create_table(
        "processed_actions",
        sa.Column("idempotency_key", sa.String(64), primary_key=True),
        sa.Column("queue_item_id", sa.Uuid(), nullable=False),
        sa.Column("action_type", sa.String(64), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("processed_actions")
    op.drop_table("delivery_logs")
    op.drop_table("queue_items")
    op.drop_table("endpoint_registrations")
    op.execute("DROP TYPE IF EXISTS queueitemstatus")
    op.execute("DROP TYPE IF EXISTS syncactiontype")
    op.execute("DROP TYPE IF EXISTS webhookevent")
    op.execute("DROP TYPE IF EXISTS queueitemkind")
