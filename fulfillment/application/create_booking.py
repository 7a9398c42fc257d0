import logging
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from fulfillment.core.errors import InvalidRequest, InvalidState, NotFound, SlotNotAvailable
from fulfillment.core.models import (
    AggregateType,
    Booking,
    EventTypeEnum,
    as_utc,
    make_idempotency_key,
    utcnow,
)
from fulfillment.infrastructure.cache import AvailabilityCache
from fulfillment.infrastructure.lock_coordinator import LockCoordinator, booking_lock_key
from fulfillment.infrastructure.repositories import (
    BookingRepository,
    DoesNotExist,
    OutboxRepository,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class BookingRequest(BaseModel):
    customer_id: str
    service_id: str
    provider_id: str | None = None
    start_at: datetime
    timezone: str = "UTC"
    customer_notes: str | None = None
    order_line_item_id: str | None = None


class CreateBookingUseCase:
    """
    Admits at most one booking per (service, provider, start_at) slot.

    A TTL lease on the slot key serializes admission across replicas, the
    transactional re-check covers a straggler whose lease already expired, and
    the partial unique index on bookings is the final backstop. The lease is
    not released on success; it expires on its own.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        lock_coordinator: LockCoordinator,
        availability_cache: AvailabilityCache,
        lock_ttl_seconds: int = 900,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._lock_coordinator = lock_coordinator
        self._availability_cache = availability_cache
        self._lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock

    async def __call__(self, request: BookingRequest) -> Booking:
        start_at = as_utc(request.start_at)

        async with self._unit_of_work() as uow:
            try:
                service = await uow.catalog.get_service(request.service_id)
            except DoesNotExist:
                raise NotFound(f"Service {request.service_id} not found")

        if not service.is_active:
            raise InvalidState(f"Service {service.id} is {service.status}")

        if start_at <= self._clock():
            raise InvalidRequest("Booking start time must be in the future")

        end_at = start_at + timedelta(minutes=service.duration_minutes)
        lock_key = booking_lock_key(service.id, request.provider_id, start_at.isoformat())

        lock_token = await self._lock_coordinator.try_acquire(lock_key, self._lock_ttl_seconds)
        if lock_token is None:
            raise SlotNotAvailable(f"Slot {start_at.isoformat()} is being booked")

        try:
            booking = await self._admit(request, start_at, end_at)
        except Exception:
            await self._lock_coordinator.release(lock_key, lock_token)
            raise

        await self._availability_cache.invalidate_service(service.id)
        logger.info(f"Booking {booking.id} created for service {service.id} at {start_at.isoformat()}")
        return booking

    async def _admit(self, request: BookingRequest, start_at: datetime, end_at: datetime) -> Booking:
        async with self._unit_of_work() as uow:
            existing = await uow.bookings.find_live_for_slot(
                request.service_id, request.provider_id, start_at
            )
            if existing is not None:
                raise SlotNotAvailable(f"Slot {start_at.isoformat()} is already booked")

            try:
                booking = await uow.bookings.create(
                    BookingRepository.CreateDTO(
                        service_id=request.service_id,
                        provider_id=request.provider_id,
                        customer_id=request.customer_id,
                        order_line_item_id=request.order_line_item_id,
                        start_at=start_at,
                        end_at=end_at,
                        timezone=request.timezone,
                        customer_notes=request.customer_notes,
                    )
                )
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        aggregate_id=booking.id,
                        aggregate_type=AggregateType.BOOKING,
                        event_type=EventTypeEnum.BOOKING_CREATED,
                        payload={
                            "bookingId": booking.id,
                            "serviceId": booking.service_id,
                            "providerId": booking.provider_id,
                            "customerId": booking.customer_id,
                            "startAt": booking.start_at.isoformat(),
                            "endAt": booking.end_at.isoformat(),
                        },
                        idempotency_key=make_idempotency_key(
                            AggregateType.BOOKING, booking.id, EventTypeEnum.BOOKING_CREATED, "created"
                        ),
                    )
                )
                await uow.commit()
            except IntegrityError as e:
                raise SlotNotAvailable(f"Slot {start_at.isoformat()} is already booked") from e

        return booking
