import logging
from typing import Callable

from fulfillment.core.errors import InvalidState, NotFound
from fulfillment.core.models import OutboxEvent, utcnow
from fulfillment.infrastructure.repositories import DoesNotExist, OutboxRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class ReprocessDeadLetterUseCase:
    """Operator-triggered replay of a dead-lettered event as a fresh pending outbox row."""

    def __init__(self, unit_of_work: UnitOfWork, clock: Callable = utcnow):
        self._unit_of_work = unit_of_work
        self._clock = clock

    async def __call__(self, dlq_id: str) -> OutboxEvent:
        async with self._unit_of_work() as uow:
            try:
                record = await uow.dead_letters.get_by_id(dlq_id)
            except DoesNotExist:
                raise NotFound(f"Dead-letter record {dlq_id} not found")

            if not await uow.dead_letters.mark_reprocessed(dlq_id, now=self._clock()):
                raise InvalidState(f"Dead-letter record {dlq_id} was already reprocessed")

            event = await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    aggregate_id=record.aggregate_id,
                    aggregate_type=record.aggregate_type,
                    event_type=record.event_type,
                    payload=record.payload,
                    idempotency_key=record.idempotency_key,
                )
            )
            await uow.commit()

        logger.info(f"Re-queued dead-letter record {dlq_id} as outbox event {event.id}")
        return event
