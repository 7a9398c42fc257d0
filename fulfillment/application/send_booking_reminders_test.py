from datetime import timedelta

import pytest

from fulfillment.application.send_booking_reminders import SendBookingRemindersUseCase
from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.models import BookingStatusEnum, EventTypeEnum, LineItemKind
from fulfillment.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def reminders_use_case(uow: UnitOfWork, clock) -> SendBookingRemindersUseCase:
    return SendBookingRemindersUseCase(
        uow, TransitionLineItemUseCase(uow, clock=clock), lead_hours=24, clock=clock
    )


class TestSendBookingRemindersUseCase:
    @pytest.mark.asyncio
    async def test_reminds_confirmed_bookings_inside_lead_window(
        self, reminders_use_case, service_factory, booking_factory, uow: UnitOfWork, clock
    ):
        # Given
        service = await service_factory()
        soon = await booking_factory(service, clock.now + timedelta(hours=5))
        later = await booking_factory(service, clock.now + timedelta(hours=30))
        pending = await booking_factory(
            service, clock.now + timedelta(hours=6), status=BookingStatusEnum.PENDING
        )

        # When
        sent = await reminders_use_case()

        # Then
        assert sent == 1
        async with uow() as unit:
            assert (await unit.bookings.get_by_id(soon.id)).reminder_sent_at == clock.now
            assert (await unit.bookings.get_by_id(later.id)).reminder_sent_at is None
            assert (await unit.bookings.get_by_id(pending.id)).reminder_sent_at is None
            events = await unit.outbox.list_by_type(EventTypeEnum.BOOKING_REMINDER_DUE)
        assert [e.aggregate_id for e in events] == [soon.id]

    @pytest.mark.asyncio
    async def test_reminder_is_sent_once(self, reminders_use_case, service_factory, booking_factory, uow, clock):
        # Given
        service = await service_factory()
        await booking_factory(service, clock.now + timedelta(hours=5))
        await reminders_use_case()

        # When
        clock.advance(minutes=5)
        sent = await reminders_use_case()

        # Then
        assert sent == 0
        async with uow() as unit:
            assert len(await unit.outbox.list_by_type(EventTypeEnum.BOOKING_REMINDER_DUE)) == 1

    @pytest.mark.asyncio
    async def test_linked_line_item_moves_to_reminder_sent(
        self, reminders_use_case, service_factory, booking_factory, order_factory, uow, clock
    ):
        # Given
        order = await order_factory(kinds=[LineItemKind.SERVICE], line_item_status="booking_confirmed")
        item = order.line_items[0]
        service = await service_factory()
        await booking_factory(service, clock.now + timedelta(hours=3), order_line_item_id=item.id)

        # When
        await reminders_use_case()

        # Then
        async with uow() as unit:
            assert (await unit.line_items.get_by_id(item.id)).status == "reminder_sent"

    @pytest.mark.asyncio
    async def test_missing_line_item_does_not_stop_the_sweep(
        self, reminders_use_case, service_factory, booking_factory, uow, clock
    ):
        # Given
        service = await service_factory()
        dangling = await booking_factory(
            service, clock.now + timedelta(hours=2), order_line_item_id="deleted-item"
        )
        plain = await booking_factory(service, clock.now + timedelta(hours=4))

        # When
        sent = await reminders_use_case()

        # Then
        assert sent == 2
        async with uow() as unit:
            assert (await unit.bookings.get_by_id(dangling.id)).reminder_sent_at == clock.now
            assert (await unit.bookings.get_by_id(plain.id)).reminder_sent_at == clock.now
