import logging

from fulfillment.core.models import EventTypeEnum, OutboxEvent
from fulfillment.infrastructure.kafka_producer import KafkaProducer

logger = logging.getLogger(__name__)


class KafkaEventRelay:
    """Forwards payment and booking facts to Kafka for notification and analytics consumers."""

    event_types = (
        EventTypeEnum.PAYMENT_CAPTURED,
        EventTypeEnum.PAYMENT_REFUNDED,
        EventTypeEnum.BOOKING_CREATED,
        EventTypeEnum.BOOKING_CANCELLED,
        EventTypeEnum.BOOKING_REMINDER_DUE,
    )

    def __init__(self, kafka_producer: KafkaProducer):
        self._kafka_producer = kafka_producer

    async def __call__(self, event: OutboxEvent) -> None:
        if not self._kafka_producer.is_started:
            await self._kafka_producer.start()

        # Keyed by aggregate so one aggregate's events stay on one partition
        await self._kafka_producer.send_message(
            message={
                "id": event.id,
                "event_type": event.event_type,
                "aggregate_type": event.aggregate_type,
                "aggregate_id": event.aggregate_id,
                "idempotency_key": event.idempotency_key,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            },
            key=event.aggregate_id,
            event_type=event.event_type,
        )
        logger.debug(f"Relayed {event.event_type} {event.id} to Kafka")
