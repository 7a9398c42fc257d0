import logging
from datetime import timedelta
from typing import Callable

from fulfillment.core.models import OutboxEventStatus, OutboxMetrics, utcnow
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class GetOutboxMetricsUseCase:
    def __init__(self, unit_of_work: UnitOfWork, clock: Callable = utcnow):
        self._unit_of_work = unit_of_work
        self._clock = clock

    async def __call__(self) -> OutboxMetrics:
        async with self._unit_of_work() as uow:
            counts = await uow.outbox.count_by_status()
            dlq_size = await uow.dead_letters.count()
            oldest = await uow.outbox.oldest_undispatched_created_at()

        oldest_age = (self._clock() - oldest).total_seconds() if oldest else 0.0
        return OutboxMetrics(
            pending=counts.get(OutboxEventStatus.PENDING, 0),
            processing=counts.get(OutboxEventStatus.PROCESSING, 0),
            dispatched=counts.get(OutboxEventStatus.DISPATCHED, 0),
            failed=counts.get(OutboxEventStatus.FAILED, 0),
            dlq_size=dlq_size,
            oldest_pending_age_seconds=max(oldest_age, 0.0),
        )


class CleanupDispatchedEventsUseCase:
    """Deletes dispatched outbox rows older than the retention period. DLQ rows are kept."""

    def __init__(self, unit_of_work: UnitOfWork, retention_days: int = 7, clock: Callable = utcnow):
        self._unit_of_work = unit_of_work
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    async def __call__(self) -> int:
        cutoff = self._clock() - self._retention
        async with self._unit_of_work() as uow:
            deleted = await uow.outbox.delete_dispatched_before(cutoff)
            await uow.commit()

        if deleted:
            logger.info(f"Removed {deleted} dispatched outbox events older than {cutoff.isoformat()}")
        return deleted
