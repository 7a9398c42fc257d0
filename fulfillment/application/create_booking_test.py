import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from fulfillment.application.create_booking import BookingRequest, CreateBookingUseCase
from fulfillment.core.errors import InvalidRequest, InvalidState, NotFound, SlotNotAvailable
from fulfillment.core.models import BookingStatusEnum, EventTypeEnum, ServiceStatusEnum
from fulfillment.infrastructure.lock_coordinator import booking_lock_key
from fulfillment.infrastructure.repositories import BookingRepository
from fulfillment.infrastructure.unit_of_work import UnitOfWork


@pytest.fixture
def create_booking_use_case(uow: UnitOfWork, lock_coordinator, availability_cache, clock):
    return CreateBookingUseCase(
        unit_of_work=uow,
        lock_coordinator=lock_coordinator,
        availability_cache=availability_cache,
        lock_ttl_seconds=900,
        clock=clock,
    )


def _request(service, start_at, customer_id: str = "customer_1") -> BookingRequest:
    return BookingRequest(
        customer_id=customer_id,
        service_id=service.id,
        provider_id=service.provider_id,
        start_at=start_at,
    )


class TestCreateBookingUseCase:
    @pytest.mark.asyncio
    async def test_create_booking(
        self, create_booking_use_case, service_factory, uow: UnitOfWork, lock_coordinator, availability_cache, clock
    ):
        # Given
        service = await service_factory(duration_minutes=45)
        start_at = clock.now.replace(hour=10, minute=0) + timedelta(days=3)
        availability_cache.entries[f"availability:{service.id}:x:any"] = []

        # When
        booking = await create_booking_use_case(_request(service, start_at))

        # Then
        assert booking.status == BookingStatusEnum.PENDING
        assert booking.end_at == start_at + timedelta(minutes=45)
        assert booking_lock_key(service.id, service.provider_id, start_at.isoformat()) in lock_coordinator.leases
        assert availability_cache.invalidated == [service.id]
        assert availability_cache.entries == {}
        async with uow() as unit:
            events = await unit.outbox.list_by_aggregate(booking.id)
        assert [e.event_type for e in events] == [EventTypeEnum.BOOKING_CREATED]
        assert events[0].payload["startAt"] == start_at.isoformat()

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_one(
        self, create_booking_use_case, service_factory, uow: UnitOfWork, clock
    ):
        # Given
        service = await service_factory()
        start_at = clock.now.replace(hour=9, minute=0) + timedelta(days=2)

        # When
        results = await asyncio.gather(
            *(create_booking_use_case(_request(service, start_at, f"customer_{i}")) for i in range(5)),
            return_exceptions=True,
        )

        # Then
        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, SlotNotAvailable)]
        assert len(admitted) == 1
        assert len(rejected) == 4
        async with uow() as unit:
            live = await unit.bookings.find_live_for_slot(service.id, service.provider_id, start_at)
        assert live.id == admitted[0].id

    @pytest.mark.asyncio
    async def test_existing_booking_rejects_and_releases_lock(
        self, create_booking_use_case, service_factory, booking_factory, lock_coordinator, clock
    ):
        # Given - an earlier lease has expired but its booking exists
        service = await service_factory()
        start_at = clock.now.replace(hour=11, minute=0) + timedelta(days=2)
        await booking_factory(service, start_at)

        # When
        with pytest.raises(SlotNotAvailable):
            await create_booking_use_case(_request(service, start_at, "customer_2"))

        # Then
        key = booking_lock_key(service.id, service.provider_id, start_at.isoformat())
        assert key not in lock_coordinator.leases
        assert lock_coordinator.released == [key]

    @pytest.mark.asyncio
    async def test_cancelled_booking_frees_the_slot(
        self, create_booking_use_case, service_factory, booking_factory, clock
    ):
        # Given
        service = await service_factory()
        start_at = clock.now.replace(hour=11, minute=0) + timedelta(days=2)
        await booking_factory(service, start_at, status=BookingStatusEnum.CANCELLED)

        # When
        booking = await create_booking_use_case(_request(service, start_at))

        # Then
        assert booking.status == BookingStatusEnum.PENDING

    @pytest.mark.asyncio
    async def test_unique_index_backstops_admission(
        self, create_booking_use_case, service_factory, booking_factory, lock_coordinator, monkeypatch, clock
    ):
        # Given - the transactional re-check misses a concurrent insert
        service = await service_factory()
        start_at = clock.now.replace(hour=9, minute=0) + timedelta(days=4)
        await booking_factory(service, start_at)
        monkeypatch.setattr(BookingRepository, "find_live_for_slot", AsyncMock(return_value=None))

        # When
        with pytest.raises(SlotNotAvailable):
            await create_booking_use_case(_request(service, start_at, "customer_2"))

        # Then
        assert lock_coordinator.leases == {}

    @pytest.mark.asyncio
    async def test_failed_admission_keeps_lease_taken_over_by_another_caller(
        self, create_booking_use_case, service_factory, booking_factory, lock_coordinator, monkeypatch, clock
    ):
        # Given - our lease expires mid-admission and another caller takes the slot key
        service = await service_factory()
        start_at = clock.now.replace(hour=10, minute=0) + timedelta(days=5)
        existing = await booking_factory(service, start_at)
        key = booking_lock_key(service.id, service.provider_id, start_at.isoformat())

        async def find_after_takeover(*args, **kwargs):
            lock_coordinator.leases[key] = "other-caller-token"
            return existing

        monkeypatch.setattr(BookingRepository, "find_live_for_slot", AsyncMock(side_effect=find_after_takeover))

        # When
        with pytest.raises(SlotNotAvailable):
            await create_booking_use_case(_request(service, start_at, "customer_2"))

        # Then
        assert lock_coordinator.leases == {key: "other-caller-token"}
        assert lock_coordinator.released == []

    @pytest.mark.asyncio
    async def test_past_start_is_rejected(self, create_booking_use_case, service_factory, lock_coordinator, clock):
        service = await service_factory()

        with pytest.raises(InvalidRequest):
            await create_booking_use_case(_request(service, clock.now - timedelta(minutes=1)))
        assert lock_coordinator.leases == {}

    @pytest.mark.asyncio
    async def test_inactive_service_is_rejected(self, create_booking_use_case, service_factory, clock):
        service = await service_factory(status=ServiceStatusEnum.INACTIVE)

        with pytest.raises(InvalidState):
            await create_booking_use_case(_request(service, clock.now + timedelta(days=1)))

    @pytest.mark.asyncio
    async def test_unknown_service(self, create_booking_use_case, clock):
        with pytest.raises(NotFound):
            await create_booking_use_case(
                BookingRequest(customer_id="c", service_id="missing", start_at=clock.now + timedelta(days=1))
            )
