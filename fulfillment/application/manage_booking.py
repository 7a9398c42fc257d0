import logging
from datetime import timedelta
from typing import Callable

from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import (
    CancellationWindowViolation,
    InvalidState,
    NotAllowed,
    NotFound,
)
from fulfillment.core.models import (
    AggregateType,
    Booking,
    BookingStatusEnum,
    EventTypeEnum,
    LineItem,
    LineItemKind,
    OutboxEvent,
    ServiceItemStatus,
    make_idempotency_key,
    utcnow,
)
from fulfillment.core.state_machine import (
    CANCELLABLE_BOOKING_STATUSES,
    can_transition,
    ensure_booking_transition,
    transition_path,
)
from fulfillment.infrastructure.cache import AvailabilityCache
from fulfillment.infrastructure.repositories import DoesNotExist, OutboxRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


async def _get_booking(uow, booking_id: str) -> Booking:
    try:
        return await uow.bookings.get_by_id(booking_id)
    except DoesNotExist:
        raise NotFound(f"Booking {booking_id} not found")


async def _get_linked_line_item(uow, booking: Booking) -> LineItem | None:
    try:
        return await uow.line_items.get_by_id(booking.order_line_item_id)
    except DoesNotExist:
        logger.warning(
            f"Booking {booking.id} links missing line item {booking.order_line_item_id}, skipping it"
        )
        return None


class CancelBookingUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        availability_cache: AvailabilityCache,
        transition_line_item_use_case: TransitionLineItemUseCase,
        cancellation_window_hours: int = 24,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._availability_cache = availability_cache
        self._transition = transition_line_item_use_case
        self._cancellation_window = timedelta(hours=cancellation_window_hours)
        self._clock = clock

    async def __call__(self, booking_id: str, actor_id: str, reason: str | None = None) -> Booking:
        async with self._unit_of_work() as uow:
            booking = await _get_booking(uow, booking_id)

            if actor_id not in (booking.customer_id, booking.provider_id):
                raise NotAllowed(f"{actor_id} may not cancel booking {booking_id}")

            if booking.status not in CANCELLABLE_BOOKING_STATUSES:
                raise NotAllowed(f"Booking {booking_id} is {booking.status} and cannot be cancelled")

            now = self._clock()
            if booking.start_at - now < self._cancellation_window:
                raise CancellationWindowViolation(
                    f"Bookings must be cancelled at least "
                    f"{self._cancellation_window.total_seconds() / 3600:g} hours in advance"
                )

            swapped = await uow.bookings.compare_and_set_status(
                booking_id,
                booking.status,
                BookingStatusEnum.CANCELLED,
                cancellation_reason=reason,
                cancelled_by=actor_id,
                cancelled_at=now,
            )
            if not swapped:
                raise InvalidState(f"Booking {booking_id} was modified concurrently")

            if booking.order_line_item_id:
                await self._cancel_line_item(uow, booking, actor_id, reason)

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    aggregate_id=booking.id,
                    aggregate_type=AggregateType.BOOKING,
                    event_type=EventTypeEnum.BOOKING_CANCELLED,
                    payload={
                        "bookingId": booking.id,
                        "serviceId": booking.service_id,
                        "cancelledBy": actor_id,
                        "reason": reason,
                    },
                    idempotency_key=make_idempotency_key(
                        AggregateType.BOOKING, booking.id, EventTypeEnum.BOOKING_CANCELLED, "cancelled"
                    ),
                )
            )
            booking = await uow.bookings.get_by_id(booking_id)
            await uow.commit()

        await self._availability_cache.invalidate_service(booking.service_id)
        logger.info(f"Booking {booking_id} cancelled by {actor_id}")
        return booking

    async def _cancel_line_item(self, uow, booking: Booking, actor_id: str, reason: str | None):
        item = await _get_linked_line_item(uow, booking)
        if item is None:
            return
        if not can_transition(item.kind, item.status, ServiceItemStatus.CANCELLED):
            logger.warning(
                f"Line item {item.id} is {item.status}, leaving it as is for cancelled booking {booking.id}"
            )
            return

        await self._transition.apply(
            uow, item.id, ServiceItemStatus.CANCELLED, actor=actor_id, metadata={"bookingId": booking.id}
        )
        # The refund goes through the outbox like any other; the orchestrator decides
        await uow.outbox.create(
            OutboxRepository.CreateDTO(
                aggregate_id=item.id,
                aggregate_type=AggregateType.ORDER_LINE_ITEM,
                event_type=EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
                payload={
                    "lineItemId": item.id,
                    "orderId": item.order_id,
                    "amount": item.total,
                    "reason": reason or "booking cancelled",
                },
                idempotency_key=make_idempotency_key(
                    AggregateType.ORDER_LINE_ITEM,
                    item.id,
                    EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
                    f"booking:{booking.id}:cancelled",
                ),
            )
        )


class BookingLifecycleUseCase:
    """Confirmation and provider-side transitions, all compare-and-swap guarded."""

    # Status the linked service line item is walked to when the booking moves
    _LINE_ITEM_TARGETS = {
        BookingStatusEnum.IN_PROGRESS: ServiceItemStatus.IN_PROGRESS,
        BookingStatusEnum.COMPLETED: ServiceItemStatus.COMPLETED,
        BookingStatusEnum.NO_SHOW: ServiceItemStatus.NO_SHOW,
    }
    # Payment confirmation and cancellation are never implied by a booking move
    _NEVER_ENTERED = frozenset({ServiceItemStatus.PAYMENT_CONFIRMED, ServiceItemStatus.CANCELLED})

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        transition_line_item_use_case: TransitionLineItemUseCase,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._transition = transition_line_item_use_case
        self._clock = clock

    async def confirm(self, booking_id: str) -> Booking:
        return await self._move(booking_id, BookingStatusEnum.CONFIRMED)

    async def start(self, booking_id: str, provider_id: str | None = None) -> Booking:
        return await self._move(booking_id, BookingStatusEnum.IN_PROGRESS, provider_id)

    async def complete(
        self, booking_id: str, provider_id: str | None = None, notes: str | None = None
    ) -> Booking:
        values = {"completed_at": self._clock()}
        if notes is not None:
            values["provider_notes"] = notes
        return await self._move(booking_id, BookingStatusEnum.COMPLETED, provider_id, **values)

    async def mark_no_show(self, booking_id: str, provider_id: str | None = None) -> Booking:
        return await self._move(
            booking_id, BookingStatusEnum.NO_SHOW, provider_id, no_show_at=self._clock()
        )

    async def _move(
        self,
        booking_id: str,
        target: BookingStatusEnum,
        provider_id: str | None = None,
        **values,
    ) -> Booking:
        async with self._unit_of_work() as uow:
            booking = await _get_booking(uow, booking_id)

            if provider_id is not None and booking.provider_id not in (None, provider_id):
                raise NotAllowed(f"Provider {provider_id} is not assigned to booking {booking_id}")

            ensure_booking_transition(booking.status, target)

            if not await uow.bookings.compare_and_set_status(booking_id, booking.status, target, **values):
                raise InvalidState(f"Booking {booking_id} was modified concurrently")

            line_item_target = self._LINE_ITEM_TARGETS.get(target)
            if booking.order_line_item_id and line_item_target:
                await self._follow(uow, booking, line_item_target, provider_id)

            booking = await uow.bookings.get_by_id(booking_id)
            await uow.commit()

        logger.info(f"Booking {booking_id} moved to {target}")
        return booking

    async def _follow(self, uow, booking: Booking, target: str, provider_id: str | None) -> None:
        """Walk the linked line item through every legal step up to ``target``."""
        item = await _get_linked_line_item(uow, booking)
        if item is None:
            return

        path = transition_path(item.kind, item.status, target, avoid=self._NEVER_ENTERED)
        if path is None:
            raise InvalidState(
                f"Line item {item.id} is {item.status} and cannot follow booking {booking.id} to {target}"
            )

        for status in path:
            await self._transition.apply(
                uow, item.id, status, actor=provider_id, metadata={"bookingId": booking.id}
            )


class BookingConfirmationHandler:
    """Confirms pending bookings once their service line item reaches booking_confirmed."""

    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def __call__(self, event: OutboxEvent) -> None:
        payload = event.payload
        if payload.get("kind") != LineItemKind.SERVICE:
            return
        if payload.get("toStatus") != ServiceItemStatus.BOOKING_CONFIRMED:
            return

        async with self._unit_of_work() as uow:
            bookings = await uow.bookings.list_by_line_item(
                payload["lineItemId"], BookingStatusEnum.PENDING
            )
            for booking in bookings:
                await uow.bookings.compare_and_set_status(
                    booking.id, BookingStatusEnum.PENDING, BookingStatusEnum.CONFIRMED
                )
                logger.info(f"Booking {booking.id} confirmed after payment of line item {payload['lineItemId']}")
            await uow.commit()
