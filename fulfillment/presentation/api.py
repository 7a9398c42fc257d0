import logging
from datetime import date
from http import HTTPStatus

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fulfillment.application.container import ApplicationContainer
from fulfillment.application.create_booking import BookingRequest, CreateBookingUseCase
from fulfillment.application.manage_booking import BookingLifecycleUseCase, CancelBookingUseCase
from fulfillment.application.outbox_maintenance import GetOutboxMetricsUseCase
from fulfillment.application.payment_orchestrator import PaymentOrchestrator
from fulfillment.application.place_order import ConfirmOrderUseCase, OrderDTO, PlaceOrderUseCase
from fulfillment.application.reprocess_dead_letter import ReprocessDeadLetterUseCase
from fulfillment.application.request_refund import RequestRefundUseCase
from fulfillment.application.slot_availability import GetAvailableSlotsUseCase
from fulfillment.application.transition_line_item import TransitionLineItemUseCase
from fulfillment.core.errors import (
    CancellationWindowViolation,
    DispatchFailure,
    FulfillmentError,
    IllegalTransitionError,
    InvalidRequest,
    InvalidState,
    NotAllowed,
    NotFound,
    PermanentFailure,
    SlotNotAvailable,
)
from fulfillment.core.models import (
    AvailableSlot,
    Booking,
    DeadLetterRecord,
    LineItem,
    Order,
    OutboxEvent,
    OutboxMetrics,
    Payment,
)
from fulfillment.infrastructure.repositories import DoesNotExist
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS_CODES: dict[type[FulfillmentError], HTTPStatus] = {
    NotFound: HTTPStatus.NOT_FOUND,
    InvalidRequest: HTTPStatus.BAD_REQUEST,
    CancellationWindowViolation: HTTPStatus.UNPROCESSABLE_ENTITY,
    NotAllowed: HTTPStatus.FORBIDDEN,
    SlotNotAvailable: HTTPStatus.CONFLICT,
    InvalidState: HTTPStatus.CONFLICT,
    DispatchFailure: HTTPStatus.BAD_GATEWAY,
    PermanentFailure: HTTPStatus.BAD_GATEWAY,
}


async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[cls]
            break

    content = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, IllegalTransitionError):
        content["allowed_transitions"] = exc.allowed
    return JSONResponse(content=content, status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)


class OrderCreateRequest(OrderDTO):
    pass


class ActorRequest(BaseModel):
    actor: str | None = None


class TransitionRequest(BaseModel):
    to_status: str
    actor: str | None = None
    metadata: dict | None = None


class RefundRequest(BaseModel):
    amount: int
    reason: str
    actor: str | None = None


class CancelBookingRequest(BaseModel):
    actor_id: str
    reason: str | None = None


class ProviderActionRequest(BaseModel):
    provider_id: str | None = None
    notes: str | None = None


@router.post("/orders", status_code=HTTPStatus.CREATED, response_model=Order)
@inject
async def place_order(
    order: OrderCreateRequest,
    place_order_use_case: PlaceOrderUseCase = Depends(
        Provide[ApplicationContainer.place_order_use_case]
    ),
):
    return await place_order_use_case(order=order)


@router.post("/orders/{order_id}/confirm", response_model=Order)
@inject
async def confirm_order(
    order_id: str,
    body: ActorRequest | None = None,
    confirm_order_use_case: ConfirmOrderUseCase = Depends(
        Provide[ApplicationContainer.confirm_order_use_case]
    ),
):
    return await confirm_order_use_case(order_id, actor=body.actor if body else None)


@router.get("/orders/{order_id}", response_model=Order)
@inject
async def get_order(
    order_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        try:
            return await uow.orders.get_by_id(order_id)
        except DoesNotExist:
            raise NotFound(f"Order {order_id} not found")


@router.post("/line-items/{line_item_id}/transitions", response_model=LineItem)
@inject
async def transition_line_item(
    line_item_id: str,
    body: TransitionRequest,
    transition_use_case: TransitionLineItemUseCase = Depends(
        Provide[ApplicationContainer.transition_line_item_use_case]
    ),
):
    return await transition_use_case(
        line_item_id, body.to_status, actor=body.actor, metadata=body.metadata
    )


@router.post(
    "/line-items/{line_item_id}/refund-requests",
    status_code=HTTPStatus.ACCEPTED,
    response_model=LineItem,
)
@inject
async def request_refund(
    line_item_id: str,
    body: RefundRequest,
    request_refund_use_case: RequestRefundUseCase = Depends(
        Provide[ApplicationContainer.request_refund_use_case]
    ),
):
    return await request_refund_use_case(
        line_item_id, amount=body.amount, reason=body.reason, actor=body.actor
    )


@router.post("/payments/{order_id}/capture", response_model=Payment)
@inject
async def capture_payment(
    order_id: str,
    payment_orchestrator: PaymentOrchestrator = Depends(
        Provide[ApplicationContainer.payment_orchestrator]
    ),
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    payment = await payment_orchestrator.capture_payment(order_id)
    if payment is not None:
        return payment

    # Already captured (or not capturable): report the current state
    async with unit_of_work() as uow:
        payment = await uow.payments.get_by_order_id(order_id)
    if payment is None:
        raise NotFound(f"No payment for order {order_id}")
    return payment


@router.post("/bookings", status_code=HTTPStatus.CREATED, response_model=Booking)
@inject
async def create_booking(
    body: BookingRequest,
    create_booking_use_case: CreateBookingUseCase = Depends(
        Provide[ApplicationContainer.create_booking_use_case]
    ),
):
    return await create_booking_use_case(body)


@router.post("/bookings/{booking_id}/cancel", response_model=Booking)
@inject
async def cancel_booking(
    booking_id: str,
    body: CancelBookingRequest,
    cancel_booking_use_case: CancelBookingUseCase = Depends(
        Provide[ApplicationContainer.cancel_booking_use_case]
    ),
):
    return await cancel_booking_use_case(booking_id, body.actor_id, body.reason)


@router.post("/bookings/{booking_id}/confirm", response_model=Booking)
@inject
async def confirm_booking(
    booking_id: str,
    lifecycle: BookingLifecycleUseCase = Depends(
        Provide[ApplicationContainer.booking_lifecycle_use_case]
    ),
):
    return await lifecycle.confirm(booking_id)


@router.post("/bookings/{booking_id}/start", response_model=Booking)
@inject
async def start_booking(
    booking_id: str,
    body: ProviderActionRequest,
    lifecycle: BookingLifecycleUseCase = Depends(
        Provide[ApplicationContainer.booking_lifecycle_use_case]
    ),
):
    return await lifecycle.start(booking_id, provider_id=body.provider_id)


@router.post("/bookings/{booking_id}/complete", response_model=Booking)
@inject
async def complete_booking(
    booking_id: str,
    body: ProviderActionRequest,
    lifecycle: BookingLifecycleUseCase = Depends(
        Provide[ApplicationContainer.booking_lifecycle_use_case]
    ),
):
    return await lifecycle.complete(booking_id, provider_id=body.provider_id, notes=body.notes)


@router.post("/bookings/{booking_id}/no-show", response_model=Booking)
@inject
async def mark_no_show(
    booking_id: str,
    body: ProviderActionRequest,
    lifecycle: BookingLifecycleUseCase = Depends(
        Provide[ApplicationContainer.booking_lifecycle_use_case]
    ),
):
    return await lifecycle.mark_no_show(booking_id, provider_id=body.provider_id)


@router.get("/services/{service_id}/slots", response_model=list[AvailableSlot])
@inject
async def get_available_slots(
    service_id: str,
    day: date = Query(alias="date"),
    provider_id: str | None = None,
    get_available_slots_use_case: GetAvailableSlotsUseCase = Depends(
        Provide[ApplicationContainer.get_available_slots_use_case]
    ),
):
    return await get_available_slots_use_case(service_id, day, provider_id)


@router.get("/outbox/metrics", response_model=OutboxMetrics)
@inject
async def get_outbox_metrics(
    get_outbox_metrics_use_case: GetOutboxMetricsUseCase = Depends(
        Provide[ApplicationContainer.get_outbox_metrics_use_case]
    ),
):
    return await get_outbox_metrics_use_case()


@router.get("/outbox/dlq", response_model=list[DeadLetterRecord])
@inject
async def list_dead_letters(
    include_reprocessed: bool = False,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.dead_letters.list_records(include_reprocessed=include_reprocessed)


@router.post("/outbox/dlq/{dlq_id}/reprocess", response_model=OutboxEvent)
@inject
async def reprocess_dead_letter(
    dlq_id: str,
    reprocess_dead_letter_use_case: ReprocessDeadLetterUseCase = Depends(
        Provide[ApplicationContainer.reprocess_dead_letter_use_case]
    ),
):
    return await reprocess_dead_letter_use_case(dlq_id)
