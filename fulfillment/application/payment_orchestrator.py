import logging
from typing import Callable

from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import DispatchFailure, PermanentFailure
from fulfillment.core.models import (
    AggregateType,
    EventTypeEnum,
    LineItemKind,
    OutboxEvent,
    Payment,
    PaymentStatusEnum,
    Refund,
    make_idempotency_key,
    utcnow,
)
from fulfillment.core.state_machine import is_capture_edge
from fulfillment.infrastructure.payment_gateway import (
    GatewayDeclinedError,
    GatewayError,
    PaymentGateway,
)
from fulfillment.infrastructure.repositories import (
    DoesNotExist,
    InboxRepository,
    OutboxRepository,
    RefundRepository,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

CONSUMER = "payment_orchestrator"


class PaymentOrchestrator:
    """
    Reacts to order and line-item events with capture and refund calls.

    Handlers never retry on their own: gateway errors propagate to the outbox
    dispatcher, which owns retry and dead-lettering. Every handler is safe to
    run more than once for the same event.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        payment_gateway: PaymentGateway,
        transition_line_item_use_case: TransitionLineItemUseCase,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._gateway = payment_gateway
        self._transition = transition_line_item_use_case
        self._clock = clock

    async def on_order_confirmed(self, event: OutboxEvent) -> None:
        order_id = event.payload["orderId"]
        async with self._unit_of_work() as uow:
            payment = await uow.payments.get_by_order_id(order_id)

        if payment is None or payment.status != PaymentStatusEnum.AUTHORIZED:
            logger.warning(f"Order {order_id} confirmed without an authorized payment")

    async def on_line_item_status_changed(self, event: OutboxEvent) -> None:
        payload = event.payload
        if not is_capture_edge(
            LineItemKind(payload["kind"]), payload["fromStatus"], payload["toStatus"]
        ):
            return
        await self.capture_payment(payload["orderId"])

    async def on_refund_requested(self, event: OutboxEvent) -> None:
        payload = event.payload
        await self.refund_payment(
            order_id=payload["orderId"],
            amount=payload["amount"],
            reason=payload.get("reason") or "refund requested",
            idempotency_key=event.idempotency_key,
            line_item_id=payload.get("lineItemId"),
        )

    async def capture_payment(self, order_id: str) -> Payment | None:
        """Capture the order's payment exactly once; returns None on the no-op paths."""
        declined: GatewayDeclinedError | None = None

        async with self._unit_of_work() as uow:
            payment = await uow.payments.get_by_order_id(order_id)
            if payment is None:
                logger.warning(f"No payment recorded for order {order_id}, nothing to capture")
                return None

            now = self._clock()
            if not await uow.payments.mark_captured(payment.id, payment.amount, now):
                current = await uow.payments.get_by_id(payment.id)
                if current.status == PaymentStatusEnum.AUTHORIZED:
                    raise DispatchFailure(f"Payment {payment.id} changed while capturing")
                logger.info(
                    f"Payment {payment.id} for order {order_id} is {payment.status}, "
                    f"skipping capture"
                )
                return None

            try:
                result = await self._gateway.capture(
                    payment.provider_payment_id,
                    payment.amount,
                    idempotency_key=f"capture:{payment.id}",
                )
            except GatewayDeclinedError as e:
                declined = e
            except GatewayError as e:
                logger.error(f"Capture of payment {payment.id} failed: {e}")
                raise DispatchFailure(str(e)) from e
            else:
                await uow.payments.set_gateway_transaction(payment.id, result.transaction_id)
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        aggregate_id=payment.id,
                        aggregate_type=AggregateType.PAYMENT,
                        event_type=EventTypeEnum.PAYMENT_CAPTURED,
                        payload={
                            "paymentId": payment.id,
                            "orderId": order_id,
                            "amount": payment.amount,
                        },
                        idempotency_key=make_idempotency_key(
                            AggregateType.PAYMENT,
                            payment.id,
                            EventTypeEnum.PAYMENT_CAPTURED,
                            "authorized->captured",
                        ),
                    )
                )
                await uow.commit()
                logger.info(f"Captured payment {payment.id} for order {order_id}")
                return await self._reload(payment.id)

        async with self._unit_of_work() as uow:
            await uow.payments.mark_failed(payment.id, str(declined))
            await uow.commit()
        logger.error(f"Capture of payment {payment.id} declined: {declined}")
        raise PermanentFailure(f"Capture declined for payment {payment.id}: {declined}")

    async def refund_payment(
        self,
        order_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
        line_item_id: str | None = None,
    ) -> Refund | None:
        declined: GatewayDeclinedError | None = None

        async with self._unit_of_work() as uow:
            if await uow.inbox.exists(CONSUMER, idempotency_key):
                logger.info(f"Refund {idempotency_key} already processed, skipping")
                return None

            payment = await uow.payments.get_by_order_id(order_id)
            if payment is None or payment.status == PaymentStatusEnum.FAILED:
                status = payment.status if payment else "missing"
                logger.warning(f"Payment for order {order_id} is {status}, cannot refund")
                return None

            if payment.status == PaymentStatusEnum.AUTHORIZED:
                await self._release_authorization(uow, payment, amount, idempotency_key)
                return None

            if payment.status != PaymentStatusEnum.CAPTURED:
                logger.error(
                    f"Payment {payment.id} for order {order_id} is {payment.status}, "
                    f"refund {idempotency_key} needs manual handling"
                )
                raise PermanentFailure(
                    f"Payment {payment.id} is {payment.status}, only one refund per capture is supported"
                )

            if amount > payment.remaining_amount:
                raise PermanentFailure(
                    f"Refund amount {amount} exceeds available {payment.remaining_amount} "
                    f"on payment {payment.id}"
                )

            refunded_amount = payment.refunded_amount + amount
            new_status = (
                PaymentStatusEnum.REFUNDED
                if refunded_amount >= payment.captured_amount
                else PaymentStatusEnum.PARTIALLY_REFUNDED
            )
            if not await uow.payments.apply_refund(payment.id, new_status, refunded_amount):
                raise DispatchFailure(f"Payment {payment.id} changed while refunding")

            try:
                result = await self._gateway.refund(
                    payment.provider_payment_id,
                    amount,
                    idempotency_key=f"refund:{idempotency_key}",
                )
            except GatewayDeclinedError as e:
                declined = e
            except GatewayError as e:
                logger.error(f"Refund on payment {payment.id} failed: {e}")
                raise DispatchFailure(str(e)) from e
            else:
                refund = await uow.refunds.create(
                    RefundRepository.CreateDTO(
                        payment_id=payment.id,
                        line_item_id=line_item_id,
                        amount=amount,
                        reason=reason,
                        gateway_refund_id=result.transaction_id,
                    )
                )
                if line_item_id is not None:
                    await self._settle_line_item(uow, line_item_id, amount)

                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        aggregate_id=payment.id,
                        aggregate_type=AggregateType.PAYMENT,
                        event_type=EventTypeEnum.PAYMENT_REFUNDED,
                        payload={
                            "refundId": refund.id,
                            "paymentId": payment.id,
                            "orderId": order_id,
                            "amount": amount,
                        },
                        idempotency_key=make_idempotency_key(
                            AggregateType.PAYMENT,
                            payment.id,
                            EventTypeEnum.PAYMENT_REFUNDED,
                            refund.id,
                        ),
                    )
                )
                await uow.inbox.create(
                    InboxRepository.CreateDTO(
                        consumer=CONSUMER,
                        idempotency_key=idempotency_key,
                        event_type=EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
                    )
                )
                await uow.commit()
                logger.info(f"Refunded {amount} on payment {payment.id} for order {order_id}")
                return refund

        logger.error(f"Refund on payment {payment.id} declined: {declined}")
        raise PermanentFailure(f"Refund declined for payment {payment.id}: {declined}")

    async def _release_authorization(
        self, uow, payment: Payment, amount: int, idempotency_key: str
    ) -> None:
        """Nothing was charged yet, so the refund shrinks what capture will take."""
        if not await uow.payments.release_authorization(payment.id, amount):
            current = await uow.payments.get_by_id(payment.id)
            if current.status == PaymentStatusEnum.AUTHORIZED:
                raise PermanentFailure(
                    f"Refund amount {amount} exceeds authorized {current.amount} "
                    f"on payment {payment.id}"
                )
            raise DispatchFailure(f"Payment {payment.id} changed while releasing authorization")

        await uow.inbox.create(
            InboxRepository.CreateDTO(
                consumer=CONSUMER,
                idempotency_key=idempotency_key,
                event_type=EventTypeEnum.LINE_ITEM_REFUND_REQUESTED,
            )
        )
        await uow.commit()
        logger.info(f"Released {amount} of the authorization on payment {payment.id} before capture")

    async def _settle_line_item(self, uow, line_item_id: str, amount: int) -> None:
        try:
            item = await uow.line_items.get_by_id(line_item_id)
        except DoesNotExist:
            logger.warning(f"Refunded line item {line_item_id} does not exist")
            return

        if item.status != "refund_requested":
            return

        to_status = "refunded" if amount >= item.total else "partially_refunded"
        await self._transition.apply(uow, line_item_id, to_status, actor=CONSUMER)

    async def _reload(self, payment_id: str) -> Payment:
        async with self._unit_of_work() as uow:
            return await uow.payments.get_by_id(payment_id)
