from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from fulfillment.application.event_bus import EventBus, build_event_bus
from fulfillment.application.relay_events import KafkaEventRelay
from fulfillment.core.models import AggregateType, EventTypeEnum, OutboxEvent, OutboxEventStatus


@pytest.fixture
def booking_event() -> OutboxEvent:
    return OutboxEvent(
        id="evt_1",
        aggregate_id="booking_1",
        aggregate_type=AggregateType.BOOKING,
        event_type=EventTypeEnum.BOOKING_CREATED,
        payload={"bookingId": "booking_1"},
        status=OutboxEventStatus.PROCESSING,
        idempotency_key="f" * 64,
        created_at=datetime(2030, 1, 1, 12, 0),
    )


class TestKafkaEventRelay:
    @pytest.mark.asyncio
    async def test_relays_event_keyed_by_aggregate(self, kafka_producer, booking_event: OutboxEvent):
        # When
        await KafkaEventRelay(kafka_producer)(booking_event)

        # Then
        kafka_producer.start.assert_not_awaited()
        kafka_producer.send_message.assert_awaited_once_with(
            message={
                "id": "evt_1",
                "event_type": EventTypeEnum.BOOKING_CREATED,
                "aggregate_type": AggregateType.BOOKING,
                "aggregate_id": "booking_1",
                "idempotency_key": "f" * 64,
                "payload": {"bookingId": "booking_1"},
                "created_at": "2030-01-01T12:00:00",
            },
            key="booking_1",
            event_type=EventTypeEnum.BOOKING_CREATED,
        )

    @pytest.mark.asyncio
    async def test_starts_producer_lazily(self, kafka_producer, booking_event: OutboxEvent):
        kafka_producer.is_started = False

        await KafkaEventRelay(kafka_producer)(booking_event)

        kafka_producer.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_failure_propagates_for_retry(self, kafka_producer, booking_event: OutboxEvent):
        kafka_producer.send_message.side_effect = ConnectionError("broker unavailable")

        with pytest.raises(ConnectionError):
            await KafkaEventRelay(kafka_producer)(booking_event)


class TestEventBus:
    def test_handlers_in_subscription_order(self):
        bus = EventBus()
        first, second = AsyncMock(), AsyncMock()
        bus.subscribe(EventTypeEnum.ORDER_CONFIRMED, first)
        bus.subscribe("order.confirmed", second)

        assert bus.handlers_for(EventTypeEnum.ORDER_CONFIRMED) == [first, second]
        assert bus.handlers_for(EventTypeEnum.PAYMENT_CAPTURED) == []

    def test_build_event_bus_routes(self, kafka_producer):
        orchestrator = AsyncMock()
        confirmation = AsyncMock()
        relay = KafkaEventRelay(kafka_producer)

        bus = build_event_bus(orchestrator, confirmation, relay)

        assert bus.handlers_for(EventTypeEnum.ORDER_CONFIRMED) == [orchestrator.on_order_confirmed]
        assert bus.handlers_for(EventTypeEnum.LINE_ITEM_STATUS_CHANGED) == [
            orchestrator.on_line_item_status_changed,
            confirmation,
        ]
        assert bus.handlers_for(EventTypeEnum.LINE_ITEM_REFUND_REQUESTED) == [orchestrator.on_refund_requested]
        for event_type in KafkaEventRelay.event_types:
            assert bus.handlers_for(event_type) == [relay]
