from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import Row, and_, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.models import (
    AggregateType,
    Booking,
    BookingStatusEnum,
    DeadLetterRecord,
    EventTypeEnum,
    InboxEvent,
    LineItem,
    LineItemKind,
    Order,
    OrderStatusEnum,
    OutboxEvent,
    OutboxEventStatus,
    Payment,
    PaymentStatusEnum,
    Refund,
    Schedule,
    Service,
    ServiceStatusEnum,
    StatusHistoryEntry,
)
from fulfillment.infrastructure.db_schema import (
    bookings_tbl,
    inbox_tbl,
    line_items_tbl,
    orders_tbl,
    outbox_dlq_tbl,
    outbox_tbl,
    payments_tbl,
    refunds_tbl,
    schedules_tbl,
    services_tbl,
)


class DoesNotExist(Exception):
    pass


class OrderRepository:
    class CreateDTO(BaseModel):
        customer_id: str
        currency: str
        total_amount: int
        status: OrderStatusEnum = OrderStatusEnum.PENDING

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None, line_items: list[LineItem]) -> Order:
        if row is None:
            raise DoesNotExist

        return Order(
            id=row._mapping["id"],
            customer_id=row._mapping["customer_id"],
            currency=row._mapping["currency"],
            total_amount=row._mapping["total_amount"],
            status=row._mapping["status"],
            line_items=line_items,
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
        )

    async def create(self, order: CreateDTO) -> Order:
        stmt = (
            insert(orders_tbl)
            .values(
                {
                    "customer_id": order.customer_id,
                    "currency": order.currency,
                    "total_amount": order.total_amount,
                    "status": order.status,
                }
            )
            .returning(*orders_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone(), line_items=[])

    async def get_by_id(self, order_id: str) -> Order:
        stmt = select(orders_tbl).where(orders_tbl.c.id == order_id)
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            raise DoesNotExist(f"Order with id {order_id} not found")

        line_items = await LineItemRepository(self._session).list_by_order(order_id)
        return self._construct(row, line_items)

    async def update_status(self, order_id: str, status: OrderStatusEnum) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(status=status)
        )
        await self._session.execute(stmt)


class LineItemRepository:
    class CreateDTO(BaseModel):
        order_id: str
        kind: LineItemKind
        product_id: str
        name: str
        quantity: int
        unit_price: int
        status: str = "pending"

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> LineItem:
        if row is None:
            raise DoesNotExist

        return LineItem(**row._mapping)

    async def create(self, item: CreateDTO) -> LineItem:
        stmt = (
            insert(line_items_tbl)
            .values({**item.model_dump(), "status_history": []})
            .returning(*line_items_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, line_item_id: str) -> LineItem:
        stmt = select(line_items_tbl).where(line_items_tbl.c.id == line_item_id)
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def list_by_order(self, order_id: str) -> list[LineItem]:
        stmt = (
            select(line_items_tbl)
            .where(line_items_tbl.c.order_id == order_id)
            .order_by(line_items_tbl.c.created_at, line_items_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def compare_and_set_status(
        self,
        line_item_id: str,
        expected_status: str,
        new_status: str,
        history: list[StatusHistoryEntry],
    ) -> bool:
        """Write ``new_status`` only if the row still holds ``expected_status``."""
        stmt = (
            update(line_items_tbl)
            .where(
                and_(
                    line_items_tbl.c.id == line_item_id,
                    line_items_tbl.c.status == expected_status,
                )
            )
            .values(
                status=new_status,
                status_history=[entry.model_dump(mode="json") for entry in history],
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class PaymentRepository:
    class CreateDTO(BaseModel):
        order_id: str
        provider_payment_id: str
        amount: int
        currency: str
        status: PaymentStatusEnum = PaymentStatusEnum.AUTHORIZED

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Payment:
        if row is None:
            raise DoesNotExist

        return Payment(**row._mapping)

    async def create(self, payment: CreateDTO) -> Payment:
        stmt = (
            insert(payments_tbl)
            .values(payment.model_dump())
            .returning(*payments_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, payment_id: str) -> Payment:
        stmt = select(payments_tbl).where(payments_tbl.c.id == payment_id)
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_order_id(self, order_id: str) -> Payment | None:
        stmt = select(payments_tbl).where(payments_tbl.c.order_id == order_id)
        result = await self._session.execute(stmt)
        row = result.fetchone()

        if row is None:
            return None

        return self._construct(row)

    async def _transition(
        self,
        payment_id: str,
        expected_status: PaymentStatusEnum,
        **values,
    ) -> bool:
        stmt = (
            update(payments_tbl)
            .where(
                and_(
                    payments_tbl.c.id == payment_id,
                    payments_tbl.c.status == expected_status,
                )
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_captured(self, payment_id: str, amount: int, now: datetime) -> bool:
        # Amount must still be the one read; a concurrent release makes this a miss
        stmt = (
            update(payments_tbl)
            .where(
                and_(
                    payments_tbl.c.id == payment_id,
                    payments_tbl.c.status == PaymentStatusEnum.AUTHORIZED,
                    payments_tbl.c.amount == amount,
                )
            )
            .values(status=PaymentStatusEnum.CAPTURED, captured_amount=amount, captured_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release_authorization(self, payment_id: str, amount: int) -> bool:
        """Lower a not yet captured authorization by ``amount``."""
        stmt = (
            update(payments_tbl)
            .where(
                and_(
                    payments_tbl.c.id == payment_id,
                    payments_tbl.c.status == PaymentStatusEnum.AUTHORIZED,
                    payments_tbl.c.amount >= amount,
                )
            )
            .values(amount=payments_tbl.c.amount - amount)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_failed(self, payment_id: str, error_message: str) -> bool:
        return await self._transition(
            payment_id,
            PaymentStatusEnum.AUTHORIZED,
            status=PaymentStatusEnum.FAILED,
            error_message=error_message,
        )

    async def apply_refund(
        self, payment_id: str, new_status: PaymentStatusEnum, refunded_amount: int
    ) -> bool:
        return await self._transition(
            payment_id,
            PaymentStatusEnum.CAPTURED,
            status=new_status,
            refunded_amount=refunded_amount,
        )

    async def set_gateway_transaction(self, payment_id: str, transaction_id: str) -> None:
        stmt = (
            update(payments_tbl)
            .where(payments_tbl.c.id == payment_id)
            .values(gateway_transaction_id=transaction_id)
        )
        await self._session.execute(stmt)


class RefundRepository:
    class CreateDTO(BaseModel):
        payment_id: str
        line_item_id: str | None = None
        amount: int
        reason: str
        gateway_refund_id: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Refund:
        if row is None:
            raise DoesNotExist

        return Refund(**row._mapping)

    async def create(self, refund: CreateDTO) -> Refund:
        stmt = (
            insert(refunds_tbl)
            .values(refund.model_dump())
            .returning(*refunds_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def list_by_payment(self, payment_id: str) -> list[Refund]:
        stmt = (
            select(refunds_tbl)
            .where(refunds_tbl.c.payment_id == payment_id)
            .order_by(refunds_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]


class OutboxRepository:
    class CreateDTO(BaseModel):
        aggregate_id: str
        aggregate_type: AggregateType
        event_type: EventTypeEnum
        payload: dict
        idempotency_key: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> OutboxEvent:
        if row is None:
            raise DoesNotExist

        return OutboxEvent(**row._mapping)

    async def create(self, event: CreateDTO) -> OutboxEvent:
        stmt = (
            insert(outbox_tbl)
            .values(
                {
                    **event.model_dump(mode="json"),
                    "status": OutboxEventStatus.PENDING,
                    "retry_count": 0,
                }
            )
            .returning(*outbox_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, event_id: str) -> OutboxEvent:
        stmt = select(outbox_tbl).where(outbox_tbl.c.id == event_id)
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def list_by_aggregate(self, aggregate_id: str) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.aggregate_id == aggregate_id)
            .order_by(outbox_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def list_by_type(self, event_type: EventTypeEnum) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.event_type == event_type)
            .order_by(outbox_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def get_due_events(
        self, now: datetime, stale_claim_before: datetime, limit: int = 100
    ) -> list[OutboxEvent]:
        retryable = and_(
            outbox_tbl.c.status.in_(
                [OutboxEventStatus.PENDING, OutboxEventStatus.FAILED]
            ),
            (outbox_tbl.c.next_retry_at.is_(None))
            | (outbox_tbl.c.next_retry_at <= now),
        )
        abandoned = and_(
            outbox_tbl.c.status == OutboxEventStatus.PROCESSING,
            outbox_tbl.c.claimed_at <= stale_claim_before,
        )
        stmt = (
            select(outbox_tbl)
            .where(retryable | abandoned)
            .order_by(outbox_tbl.c.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def claim(self, event: OutboxEvent, now: datetime) -> bool:
        """Take ownership of an event; False if another dispatcher got there first."""
        if event.claimed_at is None:
            seen_claim = outbox_tbl.c.claimed_at.is_(None)
        else:
            seen_claim = outbox_tbl.c.claimed_at == event.claimed_at
        stmt = (
            update(outbox_tbl)
            .where(
                and_(
                    outbox_tbl.c.id == event.id,
                    outbox_tbl.c.status == event.status,
                    seen_claim,
                )
            )
            .values(
                status=OutboxEventStatus.PROCESSING,
                claimed_at=now,
                next_retry_at=None,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_as_dispatched(self, event_id: str, now: datetime) -> None:
        stmt = (
            update(outbox_tbl)
            .where(outbox_tbl.c.id == event_id)
            .values(
                status=OutboxEventStatus.DISPATCHED,
                dispatched_at=now,
                next_retry_at=None,
                claimed_at=None,
            )
        )
        await self._session.execute(stmt)

    async def mark_as_failed(
        self,
        event_id: str,
        retry_count: int,
        error_message: str,
        next_retry_at: datetime,
    ) -> None:
        stmt = (
            update(outbox_tbl)
            .where(outbox_tbl.c.id == event_id)
            .values(
                status=OutboxEventStatus.FAILED,
                retry_count=retry_count,
                error_message=error_message,
                next_retry_at=next_retry_at,
                claimed_at=None,
            )
        )
        await self._session.execute(stmt)

    async def delete(self, event_id: str) -> None:
        await self._session.execute(delete(outbox_tbl).where(outbox_tbl.c.id == event_id))

    async def delete_dispatched_before(self, cutoff: datetime) -> int:
        stmt = delete(outbox_tbl).where(
            and_(
                outbox_tbl.c.status == OutboxEventStatus.DISPATCHED,
                outbox_tbl.c.dispatched_at < cutoff,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(outbox_tbl.c.status, func.count()).group_by(outbox_tbl.c.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.fetchall()}

    async def oldest_undispatched_created_at(self) -> datetime | None:
        stmt = select(func.min(outbox_tbl.c.created_at)).where(
            outbox_tbl.c.status.in_(
                [OutboxEventStatus.PENDING, OutboxEventStatus.FAILED]
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar()


class DeadLetterRepository:
    class CreateDTO(BaseModel):
        original_event_id: str
        aggregate_id: str
        aggregate_type: AggregateType
        event_type: EventTypeEnum
        payload: dict
        error_message: str
        retry_count: int
        first_failed_at: datetime
        moved_to_dlq_at: datetime
        idempotency_key: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> DeadLetterRecord:
        if row is None:
            raise DoesNotExist

        return DeadLetterRecord(**row._mapping)

    async def create(self, record: CreateDTO) -> DeadLetterRecord:
        stmt = (
            insert(outbox_dlq_tbl)
            .values({**record.model_dump(), "reprocessed": False})
            .returning(*outbox_dlq_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, dlq_id: str) -> DeadLetterRecord:
        stmt = select(outbox_dlq_tbl).where(outbox_dlq_tbl.c.id == dlq_id)
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_original_event_id(self, event_id: str) -> DeadLetterRecord:
        stmt = select(outbox_dlq_tbl).where(
            outbox_dlq_tbl.c.original_event_id == event_id
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def list_records(
        self, include_reprocessed: bool = False, limit: int = 100
    ) -> list[DeadLetterRecord]:
        stmt = select(outbox_dlq_tbl).order_by(outbox_dlq_tbl.c.moved_to_dlq_at).limit(limit)
        if not include_reprocessed:
            stmt = stmt.where(outbox_dlq_tbl.c.reprocessed.is_(False))
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def mark_reprocessed(self, dlq_id: str, now: datetime) -> bool:
        stmt = (
            update(outbox_dlq_tbl)
            .where(
                and_(
                    outbox_dlq_tbl.c.id == dlq_id,
                    outbox_dlq_tbl.c.reprocessed.is_(False),
                )
            )
            .values(reprocessed=True, reprocessed_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(outbox_dlq_tbl))
        return result.scalar_one()


class InboxRepository:
    class CreateDTO(BaseModel):
        consumer: str
        idempotency_key: str
        event_type: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> InboxEvent:
        if row is None:
            raise DoesNotExist

        return InboxEvent(**row._mapping)

    async def exists(self, consumer: str, idempotency_key: str) -> bool:
        """Check if the consumer already committed the side effects of this event"""
        stmt = select(inbox_tbl.c.id).where(
            and_(
                inbox_tbl.c.consumer == consumer,
                inbox_tbl.c.idempotency_key == idempotency_key,
            )
        )
        result = await self._session.execute(stmt)
        return result.fetchone() is not None

    async def create(self, event: CreateDTO) -> InboxEvent:
        stmt = (
            insert(inbox_tbl)
            .values(event.model_dump())
            .returning(*inbox_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())


class CatalogRepository:
    class CreateServiceDTO(BaseModel):
        merchant_id: str
        provider_id: str | None = None
        name: str
        duration_minutes: int
        buffer_minutes: int = 0
        price: int
        currency: str = "USD"
        status: ServiceStatusEnum = ServiceStatusEnum.ACTIVE

    class CreateScheduleDTO(BaseModel):
        service_id: str
        provider_id: str | None = None
        timezone: str = "UTC"
        weekly_slots: dict
        exceptions: list = []

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_service(self, service: CreateServiceDTO) -> Service:
        stmt = (
            insert(services_tbl)
            .values(service.model_dump())
            .returning(*services_tbl.c)
        )
        result = await self._session.execute(stmt)
        return Service(**result.fetchone()._mapping)

    async def get_service(self, service_id: str) -> Service:
        stmt = select(services_tbl).where(services_tbl.c.id == service_id)
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            raise DoesNotExist(f"Service with id {service_id} not found")

        return Service(**row._mapping)

    async def create_schedule(self, schedule: CreateScheduleDTO) -> Schedule:
        stmt = (
            insert(schedules_tbl)
            .values(schedule.model_dump(mode="json"))
            .returning(*schedules_tbl.c)
        )
        result = await self._session.execute(stmt)
        return Schedule(**result.fetchone()._mapping)

    async def get_schedule(self, service_id: str, provider_id: str | None = None) -> Schedule | None:
        stmt = select(schedules_tbl).where(schedules_tbl.c.service_id == service_id)
        if provider_id is not None:
            stmt = stmt.where(schedules_tbl.c.provider_id == provider_id)
        result = await self._session.execute(stmt.limit(1))
        row = result.fetchone()

        if row is None:
            return None

        return Schedule(**row._mapping)


class BookingRepository:
    class CreateDTO(BaseModel):
        service_id: str
        provider_id: str | None = None
        customer_id: str
        order_line_item_id: str | None = None
        start_at: datetime
        end_at: datetime
        timezone: str = "UTC"
        status: BookingStatusEnum = BookingStatusEnum.PENDING
        customer_notes: str | None = None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> Booking:
        if row is None:
            raise DoesNotExist

        return Booking(**row._mapping)

    @staticmethod
    def _provider_clause(provider_id: str | None):
        if provider_id is None:
            return bookings_tbl.c.provider_id.is_(None)
        return bookings_tbl.c.provider_id == provider_id

    async def create(self, booking: CreateDTO) -> Booking:
        stmt = (
            insert(bookings_tbl)
            .values(booking.model_dump())
            .returning(*bookings_tbl.c)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, booking_id: str) -> Booking:
        stmt = select(bookings_tbl).where(bookings_tbl.c.id == booking_id)
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def find_live_for_slot(
        self, service_id: str, provider_id: str | None, start_at: datetime
    ) -> Booking | None:
        stmt = select(bookings_tbl).where(
            and_(
                bookings_tbl.c.service_id == service_id,
                self._provider_clause(provider_id),
                bookings_tbl.c.start_at == start_at,
                bookings_tbl.c.status != BookingStatusEnum.CANCELLED,
            )
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()

        if row is None:
            return None

        return self._construct(row)

    async def list_in_statuses_between(
        self,
        service_id: str,
        provider_id: str | None,
        statuses: frozenset[BookingStatusEnum],
        start: datetime,
        end: datetime,
    ) -> list[Booking]:
        stmt = select(bookings_tbl).where(
            and_(
                bookings_tbl.c.service_id == service_id,
                bookings_tbl.c.status.in_(list(statuses)),
                bookings_tbl.c.start_at < end,
                bookings_tbl.c.end_at > start,
            )
        )
        if provider_id is not None:
            stmt = stmt.where(bookings_tbl.c.provider_id == provider_id)
        result = await self._session.execute(stmt.order_by(bookings_tbl.c.start_at))
        return [self._construct(row) for row in result.fetchall()]

    async def list_by_line_item(
        self, line_item_id: str, status: BookingStatusEnum
    ) -> list[Booking]:
        stmt = select(bookings_tbl).where(
            and_(
                bookings_tbl.c.order_line_item_id == line_item_id,
                bookings_tbl.c.status == status,
            )
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def list_needing_reminder(
        self, window_start: datetime, window_end: datetime
    ) -> list[Booking]:
        stmt = (
            select(bookings_tbl)
            .where(
                and_(
                    bookings_tbl.c.status == BookingStatusEnum.CONFIRMED,
                    bookings_tbl.c.reminder_sent_at.is_(None),
                    bookings_tbl.c.start_at > window_start,
                    bookings_tbl.c.start_at <= window_end,
                )
            )
            .order_by(bookings_tbl.c.start_at)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def compare_and_set_status(
        self,
        booking_id: str,
        expected_status: BookingStatusEnum,
        new_status: BookingStatusEnum,
        **values,
    ) -> bool:
        stmt = (
            update(bookings_tbl)
            .where(
                and_(
                    bookings_tbl.c.id == booking_id,
                    bookings_tbl.c.status == expected_status,
                )
            )
            .values(status=new_status, **values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_reminder_sent(self, booking_id: str, now: datetime) -> bool:
        stmt = (
            update(bookings_tbl)
            .where(
                and_(
                    bookings_tbl.c.id == booking_id,
                    bookings_tbl.c.reminder_sent_at.is_(None),
                )
            )
            .values(reminder_sent_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1
