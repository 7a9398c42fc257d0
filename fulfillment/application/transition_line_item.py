import logging
from typing import Callable

from fulfillment.core.errors import InvalidState, NotFound
from fulfillment.core.models import (
    AggregateType,
    EventTypeEnum,
    LineItem,
    StatusHistoryEntry,
    make_idempotency_key,
    utcnow,
)
from fulfillment.core.state_machine import ensure_transition, project_order_status
from fulfillment.infrastructure.repositories import DoesNotExist, OutboxRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class TransitionLineItemUseCase:
    def __init__(self, unit_of_work: UnitOfWork, clock: Callable = utcnow):
        self._unit_of_work = unit_of_work
        self._clock = clock

    async def __call__(
        self,
        line_item_id: str,
        to_status: str,
        actor: str | None = None,
        metadata: dict | None = None,
    ) -> LineItem:
        async with self._unit_of_work() as uow:
            item = await self.apply(uow, line_item_id, to_status, actor, metadata)
            await uow.commit()

        logger.info(f"Line item {line_item_id} moved to {to_status}")
        return item

    async def apply(
        self,
        uow,
        line_item_id: str,
        to_status: str,
        actor: str | None = None,
        metadata: dict | None = None,
    ) -> LineItem:
        """Transition inside the caller's unit of work; the caller commits."""
        try:
            item = await uow.line_items.get_by_id(line_item_id)
        except DoesNotExist:
            raise NotFound(f"Line item {line_item_id} not found")

        from_status = item.status
        ensure_transition(item.kind, from_status, to_status)

        now = self._clock()
        history = [
            *item.status_history,
            StatusHistoryEntry(
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                timestamp=now,
                metadata=metadata or {},
            ),
        ]
        swapped = await uow.line_items.compare_and_set_status(
            line_item_id, from_status, to_status, history
        )
        if not swapped:
            raise InvalidState(
                f"Line item {line_item_id} was modified concurrently, expected {from_status}"
            )

        await uow.outbox.create(
            OutboxRepository.CreateDTO(
                aggregate_id=item.id,
                aggregate_type=AggregateType.ORDER_LINE_ITEM,
                event_type=EventTypeEnum.LINE_ITEM_STATUS_CHANGED,
                payload={
                    "lineItemId": item.id,
                    "orderId": item.order_id,
                    "kind": item.kind,
                    "fromStatus": from_status,
                    "toStatus": to_status,
                    "timestamp": now.isoformat(),
                    "actor": actor,
                },
                idempotency_key=make_idempotency_key(
                    AggregateType.ORDER_LINE_ITEM,
                    item.id,
                    EventTypeEnum.LINE_ITEM_STATUS_CHANGED,
                    f"{from_status}->{to_status}",
                ),
            )
        )

        items = await uow.line_items.list_by_order(item.order_id)
        await uow.orders.update_status(item.order_id, project_order_status(items))

        return item.model_copy(update={"status": to_status, "status_history": history})
