import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

from fulfillment.core.models import utcnow

metadata = MetaData()


def new_id() -> str:
    return str(uuid.uuid4())


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("customer_id", Text, nullable=False, index=True),
    Column("currency", String(3), nullable=False),
    Column("total_amount", Integer, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

line_items_tbl = Table(
    "order_line_items",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, index=True),
    Column("kind", Text, nullable=False),
    Column("product_id", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Integer, nullable=False),
    Column("status", Text, nullable=False, index=True),
    Column("status_history", JSON, nullable=False, default=list),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

payments_tbl = Table(
    "payments",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False, unique=True),
    Column("provider_payment_id", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("amount", Integer, nullable=False),
    Column("captured_amount", Integer, nullable=False, default=0),
    Column("refunded_amount", Integer, nullable=False, default=0),
    Column("currency", String(3), nullable=False),
    Column("gateway_transaction_id", Text, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("captured_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

refunds_tbl = Table(
    "refunds",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("payment_id", String(36), ForeignKey("payments.id"), nullable=False, index=True),
    Column("line_item_id", String(36), nullable=True, index=True),
    Column("amount", Integer, nullable=False),
    Column("reason", Text, nullable=False),
    Column("gateway_refund_id", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

outbox_tbl = Table(
    "outbox",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", Text, nullable=False),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("error_message", Text, nullable=True),
    Column("idempotency_key", String(64), nullable=False, unique=True),
    Column("next_retry_at", DateTime, nullable=True),
    Column("claimed_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("dispatched_at", DateTime, nullable=True),
    Index("ix_outbox_status_created_at", "status", "created_at"),
    Index("ix_outbox_aggregate", "aggregate_type", "aggregate_id"),
)

outbox_dlq_tbl = Table(
    "outbox_dlq",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("original_event_id", String(36), nullable=False),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", Text, nullable=False),
    Column("event_type", Text, nullable=False, index=True),
    Column("payload", JSON, nullable=False),
    Column("error_message", Text, nullable=False),
    Column("retry_count", Integer, nullable=False),
    Column("first_failed_at", DateTime, nullable=False),
    Column("moved_to_dlq_at", DateTime, nullable=False, default=utcnow),
    Column("reprocessed", Boolean, nullable=False, default=False, index=True),
    Column("reprocessed_at", DateTime, nullable=True),
    Column("idempotency_key", String(64), nullable=False),
)

inbox_tbl = Table(
    "inbox",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("consumer", Text, nullable=False),
    Column("idempotency_key", String(64), nullable=False),
    Column("event_type", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    UniqueConstraint("consumer", "idempotency_key", name="uq_inbox_consumer_key"),
)

services_tbl = Table(
    "services",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("merchant_id", Text, nullable=False),
    Column("provider_id", Text, nullable=True),
    Column("name", Text, nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("buffer_minutes", Integer, nullable=False, default=0),
    Column("price", Integer, nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("status", Text, nullable=False),
)

schedules_tbl = Table(
    "schedules",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("service_id", String(36), ForeignKey("services.id"), nullable=False),
    Column("provider_id", Text, nullable=True),
    Column("timezone", Text, nullable=False, default="UTC"),
    Column("weekly_slots", JSON, nullable=False, default=dict),
    Column("exceptions", JSON, nullable=False, default=list),
    UniqueConstraint("service_id", "provider_id", name="uq_schedules_service_provider"),
)

bookings_tbl = Table(
    "bookings",
    metadata,
    Column("id", String(36), primary_key=True, default=new_id),
    Column("service_id", String(36), ForeignKey("services.id"), nullable=False),
    Column("provider_id", Text, nullable=True, index=True),
    Column("customer_id", Text, nullable=False, index=True),
    Column("order_line_item_id", String(36), nullable=True, index=True),
    Column("start_at", DateTime, nullable=False),
    Column("end_at", DateTime, nullable=False),
    Column("timezone", Text, nullable=False, default="UTC"),
    Column("status", Text, nullable=False, index=True),
    Column("customer_notes", Text, nullable=True),
    Column("provider_notes", Text, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("cancelled_by", Text, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("no_show_at", DateTime, nullable=True),
    Column("reminder_sent_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

# Storage backstop for slot admission: one live booking per slot.
Index(
    "uq_bookings_active_slot",
    bookings_tbl.c.service_id,
    func.coalesce(bookings_tbl.c.provider_id, "any"),
    bookings_tbl.c.start_at,
    unique=True,
    postgresql_where=bookings_tbl.c.status != "cancelled",
    sqlite_where=bookings_tbl.c.status != "cancelled",
)
