import logging
from datetime import timedelta
from typing import Callable

from pydantic import BaseModel

from fulfillment.application.event_bus import EventBus
from fulfillment.core.errors import PermanentFailure
from fulfillment.core.models import OutboxEvent, utcnow
from fulfillment.core.retry_policy import RetryPolicy
from fulfillment.infrastructure.repositories import DeadLetterRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    dispatched: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0


class ProcessOutboxEventsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        event_bus: EventBus,
        retry_policy: RetryPolicy,
        batch_size: int = 100,
        claim_timeout_seconds: float = 300,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._event_bus = event_bus
        self._retry_policy = retry_policy
        self._batch_size = batch_size
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._clock = clock

    async def __call__(self) -> DispatchResult:
        """
        Sweep due outbox events: claim each one, run its handlers, then record
        the outcome (dispatched, scheduled for retry, or dead-lettered).
        """
        result = DispatchResult()
        now = self._clock()

        async with self._unit_of_work() as uow:
            events = await uow.outbox.get_due_events(
                now=now,
                stale_claim_before=now - self._claim_timeout,
                limit=self._batch_size,
            )

        for event in events:
            async with self._unit_of_work() as uow:
                claimed = await uow.outbox.claim(event, now=self._clock())
                await uow.commit()

            if not claimed:
                # Another dispatcher owns it
                result.skipped += 1
                continue

            try:
                await self._dispatch(event)
            except PermanentFailure as e:
                logger.error(f"Event {event.id} ({event.event_type}) failed permanently: {e}")
                await self._dead_letter(event, event.retry_count + 1, str(e))
                result.dead_lettered += 1
                continue
            except Exception as e:
                if await self._schedule_retry(event, e):
                    result.failed += 1
                else:
                    result.dead_lettered += 1
                continue

            async with self._unit_of_work() as uow:
                await uow.outbox.mark_as_dispatched(event.id, now=self._clock())
                await uow.commit()
            result.dispatched += 1

        if events:
            logger.info(
                f"Outbox sweep: {result.dispatched} dispatched, {result.failed} failed, "
                f"{result.dead_lettered} dead-lettered, {result.skipped} skipped"
            )
        return result

    async def _dispatch(self, event: OutboxEvent) -> None:
        handlers = self._event_bus.handlers_for(event.event_type)
        if not handlers:
            logger.debug(f"No handlers registered for {event.event_type}")
        for handler in handlers:
            await handler(event)

    async def _schedule_retry(self, event: OutboxEvent, error: Exception) -> bool:
        """Returns False when retries are exhausted and the event went to the DLQ."""
        retry_count = event.retry_count + 1
        if self._retry_policy.is_exhausted(retry_count):
            logger.error(
                f"Event {event.id} ({event.event_type}) exhausted {retry_count} attempts: {error}"
            )
            await self._dead_letter(event, retry_count, str(error))
            return False

        next_retry_at = self._retry_policy.next_retry_at(retry_count, self._clock())
        logger.warning(
            f"Event {event.id} ({event.event_type}) failed, attempt {retry_count}, "
            f"retrying at {next_retry_at.isoformat()}: {error}",
            exc_info=True,
        )
        async with self._unit_of_work() as uow:
            await uow.outbox.mark_as_failed(
                event.id,
                retry_count=retry_count,
                error_message=str(error),
                next_retry_at=next_retry_at,
            )
            await uow.commit()
        return True

    async def _dead_letter(self, event: OutboxEvent, retry_count: int, error_message: str) -> None:
        async with self._unit_of_work() as uow:
            await uow.dead_letters.create(
                DeadLetterRepository.CreateDTO(
                    original_event_id=event.id,
                    aggregate_id=event.aggregate_id,
                    aggregate_type=event.aggregate_type,
                    event_type=event.event_type,
                    payload=event.payload,
                    error_message=error_message,
                    retry_count=retry_count,
                    first_failed_at=event.created_at,
                    moved_to_dlq_at=self._clock(),
                    idempotency_key=event.idempotency_key,
                )
            )
            await uow.outbox.delete(event.id)
            await uow.commit()
