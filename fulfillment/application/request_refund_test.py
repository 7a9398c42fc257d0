import pytest

from fulfillment.application.request_refund import RequestRefundUseCase
from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import IllegalTransitionError, InvalidRequest
from fulfillment.core.models import EventTypeEnum, LineItemKind
from fulfillment.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def request_refund_use_case(uow: UnitOfWork, clock) -> RequestRefundUseCase:
    return RequestRefundUseCase(
        unit_of_work=uow,
        transition_line_item_use_case=TransitionLineItemUseCase(unit_of_work=uow, clock=clock),
    )


class TestRequestRefundUseCase:
    @pytest.mark.asyncio
    async def test_emits_status_change_and_refund_request(
        self, request_refund_use_case: RequestRefundUseCase, uow: UnitOfWork, order_factory
    ):
        # Given
        order = await order_factory(kinds=[LineItemKind.PHYSICAL], line_item_status="delivered")
        item = order.line_items[0]

        # When
        updated = await request_refund_use_case(item.id, amount=400, reason="damaged")

        # Then
        assert updated.status == "refund_requested"
        async with uow() as unit:
            events = await unit.outbox.list_by_aggregate(item.id)
        assert [e.event_type for e in events] == [
            EventTypeEnum.LINE_ITEM_STATUS_CHANGED,
            EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
        ]
        assert events[1].payload == {
            "lineItemId": item.id,
            "orderId": order.id,
            "amount": 400,
            "reason": "damaged",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1001])
    async def test_amount_must_fit_line_total(
        self, request_refund_use_case: RequestRefundUseCase, order_factory, amount: int
    ):
        order = await order_factory(kinds=[LineItemKind.PHYSICAL], line_item_status="delivered")

        with pytest.raises(InvalidRequest):
            await request_refund_use_case(order.line_items[0].id, amount=amount, reason="x")

    @pytest.mark.asyncio
    async def test_refund_not_reachable_before_delivery(
        self, request_refund_use_case: RequestRefundUseCase, uow: UnitOfWork, order_factory
    ):
        # Given
        order = await order_factory(kinds=[LineItemKind.PHYSICAL], line_item_status="shipped")
        item = order.line_items[0]

        # When
        with pytest.raises(IllegalTransitionError):
            await request_refund_use_case(item.id, amount=100, reason="x")

        # Then
        async with uow() as unit:
            assert await unit.outbox.list_by_aggregate(item.id) == []
