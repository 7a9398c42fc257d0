import logging
from datetime import timedelta
from typing import Callable

from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.models import (
    AggregateType,
    EventTypeEnum,
    ServiceItemStatus,
    make_idempotency_key,
    utcnow,
)
from fulfillment.infrastructure.repositories import DoesNotExist, OutboxRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class SendBookingRemindersUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        transition_line_item_use_case: TransitionLineItemUseCase,
        lead_hours: int = 24,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._transition = transition_line_item_use_case
        self._lead = timedelta(hours=lead_hours)
        self._clock = clock

    async def __call__(self) -> int:
        now = self._clock()
        async with self._unit_of_work() as uow:
            bookings = await uow.bookings.list_needing_reminder(now, now + self._lead)

        sent = 0
        for booking in bookings:
            async with self._unit_of_work() as uow:
                if not await uow.bookings.mark_reminder_sent(booking.id, now=self._clock()):
                    continue

                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        aggregate_id=booking.id,
                        aggregate_type=AggregateType.BOOKING,
                        event_type=EventTypeEnum.BOOKING_REMINDER_DUE,
                        payload={
                            "bookingId": booking.id,
                            "customerId": booking.customer_id,
                            "serviceId": booking.service_id,
                            "startAt": booking.start_at.isoformat(),
                        },
                        idempotency_key=make_idempotency_key(
                            AggregateType.BOOKING,
                            booking.id,
                            EventTypeEnum.BOOKING_REMINDER_DUE,
                            "reminder",
                        ),
                    )
                )

                if booking.order_line_item_id:
                    try:
                        item = await uow.line_items.get_by_id(booking.order_line_item_id)
                    except DoesNotExist:
                        logger.warning(
                            f"Booking {booking.id} links missing line item {booking.order_line_item_id}"
                        )
                        item = None
                    if item is not None and item.status == ServiceItemStatus.BOOKING_CONFIRMED:
                        await self._transition.apply(
                            uow, item.id, ServiceItemStatus.REMINDER_SENT, actor="reminders"
                        )

                await uow.commit()
                sent += 1

        if sent:
            logger.info(f"Sent {sent} booking reminders")
        return sent
