from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import InvalidRequest, NotFound
from fulfillment.core.models import (
    AggregateType,
    EventTypeEnum,
    LineItem,
    make_idempotency_key,
)
from fulfillment.infrastructure.repositories import DoesNotExist, OutboxRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork

REFUND_REQUESTED = "refund_requested"


class RequestRefundUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        transition_line_item_use_case: TransitionLineItemUseCase,
    ):
        self._unit_of_work = unit_of_work
        self._transition = transition_line_item_use_case

    async def __call__(
        self, line_item_id: str, amount: int, reason: str, actor: str | None = None
    ) -> LineItem:
        async with self._unit_of_work() as uow:
            try:
                item = await uow.line_items.get_by_id(line_item_id)
            except DoesNotExist:
                raise NotFound(f"Line item {line_item_id} not found")

            if amount <= 0 or amount > item.total:
                raise InvalidRequest(
                    f"Refund amount must be between 1 and {item.total}, got {amount}"
                )

            item = await self._transition.apply(
                uow,
                line_item_id,
                REFUND_REQUESTED,
                actor=actor,
                metadata={"amount": amount, "reason": reason},
            )
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    aggregate_id=item.id,
                    aggregate_type=AggregateType.ORDER_LINE_ITEM,
                    event_type=EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
                    payload={
                        "lineItemId": item.id,
                        "orderId": item.order_id,
                        "amount": amount,
                        "reason": reason,
                    },
                    idempotency_key=make_idempotency_key(
                        AggregateType.ORDER_LINE_ITEM,
                        item.id,
                        EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
                        REFUND_REQUESTED,
                    ),
                )
            )
            await uow.commit()

        return item
