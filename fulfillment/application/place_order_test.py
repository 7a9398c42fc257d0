import pytest

from fulfillment.application.place_order import (
    ConfirmOrderUseCase,
    LineItemDTO,
    OrderDTO,
    PlaceOrderUseCase,
)
from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import InvalidRequest, InvalidState, NotFound
from fulfillment.core.models import (
    EventTypeEnum,
    LineItemKind,
    OrderStatusEnum,
    PaymentStatusEnum,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def place_order_use_case(uow: UnitOfWork) -> PlaceOrderUseCase:
    return PlaceOrderUseCase(unit_of_work=uow)


@pytest.fixture
def confirm_order_use_case(uow: UnitOfWork, clock) -> ConfirmOrderUseCase:
    return ConfirmOrderUseCase(
        unit_of_work=uow,
        transition_line_item_use_case=TransitionLineItemUseCase(unit_of_work=uow, clock=clock),
    )


def _order_dto(**kwargs) -> OrderDTO:
    defaults = {
        "customer_id": "customer_1",
        "line_items": [
            LineItemDTO(kind=LineItemKind.PHYSICAL, product_id="p1", name="Mug", quantity=2, unit_price=1250),
            LineItemDTO(kind=LineItemKind.DIGITAL, product_id="p2", name="E-book", unit_price=999),
        ],
        "provider_payment_id": "pi_123",
    }
    defaults.update(kwargs)
    return OrderDTO(**defaults)


class TestPlaceOrderUseCase:
    @pytest.mark.asyncio
    async def test_place_order(self, place_order_use_case: PlaceOrderUseCase, uow: UnitOfWork):
        # When
        order = await place_order_use_case(_order_dto())

        # Then
        assert order.total_amount == 3499
        assert order.status == OrderStatusEnum.PENDING
        assert [item.status for item in order.line_items] == ["pending", "pending"]
        async with uow() as unit:
            payment = await unit.payments.get_by_order_id(order.id)
        assert payment.status == PaymentStatusEnum.AUTHORIZED
        assert payment.amount == 3499

    @pytest.mark.asyncio
    async def test_order_needs_line_items(self, place_order_use_case: PlaceOrderUseCase):
        with pytest.raises(InvalidRequest):
            await place_order_use_case(_order_dto(line_items=[]))


class TestConfirmOrderUseCase:
    @pytest.mark.asyncio
    async def test_confirm_moves_items_and_emits_order_confirmed(
        self,
        place_order_use_case: PlaceOrderUseCase,
        confirm_order_use_case: ConfirmOrderUseCase,
        uow: UnitOfWork,
    ):
        # Given
        order = await place_order_use_case(_order_dto())

        # When
        confirmed = await confirm_order_use_case(order.id)

        # Then
        assert confirmed.status == OrderStatusEnum.CONFIRMED
        assert {item.status for item in confirmed.line_items} == {"payment_confirmed"}
        async with uow() as unit:
            events = await unit.outbox.list_by_aggregate(order.id)
        assert len(events) == 1
        assert events[0].event_type == EventTypeEnum.ORDER_CONFIRMED
        assert events[0].payload["lineItems"] == [item.id for item in order.line_items]

    @pytest.mark.asyncio
    async def test_confirm_twice_is_rejected(
        self,
        place_order_use_case: PlaceOrderUseCase,
        confirm_order_use_case: ConfirmOrderUseCase,
    ):
        order = await place_order_use_case(_order_dto())
        await confirm_order_use_case(order.id)

        with pytest.raises(InvalidState):
            await confirm_order_use_case(order.id)

    @pytest.mark.asyncio
    async def test_missing_order(self, confirm_order_use_case: ConfirmOrderUseCase):
        with pytest.raises(NotFound):
            await confirm_order_use_case("missing")
