import hashlib
from datetime import date, datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class LineItemKind(StrEnum):
    PHYSICAL = "physical"
    DIGITAL = "digital"
    SERVICE = "service"


class PhysicalItemStatus(StrEnum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PREPARING = "preparing"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class DigitalItemStatus(StrEnum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ACCESS_GRANTED = "access_granted"
    DOWNLOADED = "downloaded"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ServiceItemStatus(StrEnum):
    PENDING = "pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    BOOKING_CONFIRMED = "booking_confirmed"
    REMINDER_SENT = "reminder_sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class OrderStatusEnum(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class StatusHistoryEntry(BaseModel):
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    timestamp: datetime
    metadata: dict = Field(default_factory=dict)


class LineItem(BaseModel):
    id: str
    order_id: str
    kind: LineItemKind
    product_id: str
    name: str
    quantity: int
    unit_price: int
    status: str
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def total(self) -> int:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: str
    customer_id: str
    currency: str
    total_amount: int
    status: OrderStatusEnum
    line_items: list[LineItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class PaymentStatusEnum(StrEnum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class Payment(BaseModel):
    id: str
    order_id: str
    provider_payment_id: str
    status: PaymentStatusEnum
    amount: int
    captured_amount: int = 0
    refunded_amount: int = 0
    currency: str
    gateway_transaction_id: str | None = None
    error_message: str | None = None
    created_at: datetime
    captured_at: datetime | None = None
    updated_at: datetime

    @property
    def remaining_amount(self) -> int:
        return self.captured_amount - self.refunded_amount


class Refund(BaseModel):
    id: str
    payment_id: str
    line_item_id: str | None = None
    amount: int
    reason: str
    gateway_refund_id: str
    created_at: datetime


class BookingStatusEnum(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Booking(BaseModel):
    id: str
    service_id: str
    provider_id: str | None = None
    customer_id: str
    order_line_item_id: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    status: BookingStatusEnum
    customer_notes: str | None = None
    provider_notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    no_show_at: datetime | None = None
    reminder_sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ServiceStatusEnum(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class Service(BaseModel):
    id: str
    merchant_id: str
    provider_id: str | None = None
    name: str
    duration_minutes: int
    buffer_minutes: int = 0
    price: int
    currency: str = "USD"
    status: ServiceStatusEnum

    @property
    def is_active(self) -> bool:
        return self.status == ServiceStatusEnum.ACTIVE


class TimeRange(BaseModel):
    start: str  # "HH:MM"
    end: str


class ScheduleException(BaseModel):
    date: date
    type: str = "special"  # "holiday" | "special"
    slots: list[TimeRange] | None = None


class Schedule(BaseModel):
    id: str
    service_id: str
    provider_id: str | None = None
    timezone: str = "UTC"
    weekly_slots: dict[str, list[TimeRange]] = Field(default_factory=dict)
    exceptions: list[ScheduleException] = Field(default_factory=list)


class AvailableSlot(BaseModel):
    start: datetime
    end: datetime


class AggregateType(StrEnum):
    ORDER = "order"
    ORDER_LINE_ITEM = "order_line_item"
    PAYMENT = "payment"
    BOOKING = "booking"


class EventTypeEnum(StrEnum):
    ORDER_CONFIRMED = "order.confirmed"
    LINE_ITEM_STATUS_CHANGED = "line_item.status_changed"
    LINE_ITEM_REFUND_REQUESTED = "line_item.refund_requested"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_REFUNDED = "payment.refunded"
    BOOKING_CREATED = "booking.created"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_REMINDER_DUE = "booking.reminder_due"


def make_idempotency_key(
    aggregate_type: str, aggregate_id: str, event_type: str, discriminator: str
) -> str:
    """Deterministic key: re-deriving the same logical event yields the same key."""
    raw = f"{aggregate_type}:{aggregate_id}:{event_type}:{discriminator}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class OutboxEventStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class OutboxEvent(BaseModel):
    id: str
    aggregate_id: str
    aggregate_type: AggregateType
    event_type: EventTypeEnum
    payload: dict
    status: OutboxEventStatus
    retry_count: int = 0
    error_message: str | None = None
    idempotency_key: str
    next_retry_at: datetime | None = None
    claimed_at: datetime | None = None
    created_at: datetime
    dispatched_at: datetime | None = None


class DeadLetterRecord(BaseModel):
    id: str
    original_event_id: str
    aggregate_id: str
    aggregate_type: AggregateType
    event_type: EventTypeEnum
    payload: dict
    error_message: str
    retry_count: int
    first_failed_at: datetime
    moved_to_dlq_at: datetime
    reprocessed: bool = False
    reprocessed_at: datetime | None = None
    idempotency_key: str


class InboxEvent(BaseModel):
    id: str
    consumer: str
    idempotency_key: str
    event_type: str
    created_at: datetime


class OutboxMetrics(BaseModel):
    pending: int
    processing: int
    dispatched: int
    failed: int
    dlq_size: int
    oldest_pending_age_seconds: float
