import logging

from pydantic import BaseModel

from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import InvalidRequest, InvalidState, NotFound
from fulfillment.core.models import (
    AggregateType,
    EventTypeEnum,
    LineItemKind,
    Order,
    OrderStatusEnum,
    make_idempotency_key,
)
from fulfillment.infrastructure.repositories import (
    DoesNotExist,
    LineItemRepository,
    OrderRepository,
    OutboxRepository,
    PaymentRepository,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class LineItemDTO(BaseModel):
    kind: LineItemKind
    product_id: str
    name: str
    quantity: int = 1
    unit_price: int


class OrderDTO(BaseModel):
    customer_id: str
    currency: str = "USD"
    line_items: list[LineItemDTO]
    provider_payment_id: str | None = None


class PlaceOrderUseCase:
    """Creates the order with pending line items and, when given, its authorized payment."""

    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def __call__(self, order: OrderDTO) -> Order:
        if not order.line_items:
            raise InvalidRequest("Order must contain at least one line item")

        total_amount = sum(item.unit_price * item.quantity for item in order.line_items)

        async with self._unit_of_work() as uow:
            created = await uow.orders.create(
                OrderRepository.CreateDTO(
                    customer_id=order.customer_id,
                    currency=order.currency,
                    total_amount=total_amount,
                    status=OrderStatusEnum.PENDING,
                )
            )
            for item in order.line_items:
                await uow.line_items.create(
                    LineItemRepository.CreateDTO(
                        order_id=created.id,
                        **item.model_dump(),
                    )
                )
            if order.provider_payment_id:
                await uow.payments.create(
                    PaymentRepository.CreateDTO(
                        order_id=created.id,
                        provider_payment_id=order.provider_payment_id,
                        amount=total_amount,
                        currency=order.currency,
                    )
                )
            created = await uow.orders.get_by_id(created.id)
            await uow.commit()

        logger.info(f"Placed order {created.id} with {len(created.line_items)} line items")
        return created


class ConfirmOrderUseCase:
    """Moves every pending line item to payment_confirmed and emits order.confirmed."""

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        transition_line_item_use_case: TransitionLineItemUseCase,
    ):
        self._unit_of_work = unit_of_work
        self._transition = transition_line_item_use_case

    async def __call__(self, order_id: str, actor: str | None = None) -> Order:
        async with self._unit_of_work() as uow:
            try:
                order = await uow.orders.get_by_id(order_id)
            except DoesNotExist:
                raise NotFound(f"Order {order_id} not found")

            pending = [item for item in order.line_items if item.status == "pending"]
            if not pending:
                raise InvalidState(f"Order {order_id} has no pending line items to confirm")

            for item in pending:
                await self._transition.apply(uow, item.id, "payment_confirmed", actor=actor)

            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    aggregate_id=order_id,
                    aggregate_type=AggregateType.ORDER,
                    event_type=EventTypeEnum.ORDER_CONFIRMED,
                    payload={
                        "orderId": order_id,
                        "lineItems": [item.id for item in pending],
                    },
                    idempotency_key=make_idempotency_key(
                        AggregateType.ORDER,
                        order_id,
                        EventTypeEnum.ORDER_CONFIRMED,
                        "pending->confirmed",
                    ),
                )
            )
            order = await uow.orders.get_by_id(order_id)
            await uow.commit()

        return order
