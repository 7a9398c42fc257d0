import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from fulfillment.core.errors import NotFound
from fulfillment.core.models import AvailableSlot, Schedule, TimeRange, utcnow
from fulfillment.core.state_machine import ACTIVE_BOOKING_STATUSES
from fulfillment.infrastructure.cache import AvailabilityCache, availability_key
from fulfillment.infrastructure.repositories import DoesNotExist
from fulfillment.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def _ranges_for_day(schedule: Schedule, day: date) -> list[TimeRange]:
    for exception in schedule.exceptions:
        if exception.date == day:
            if exception.type == "holiday":
                return []
            return exception.slots or []
    return schedule.weekly_slots.get(day.strftime("%A").lower(), [])


def _to_utc(day: date, hhmm: str, tz: ZoneInfo) -> datetime:
    local = datetime.combine(day, time.fromisoformat(hhmm), tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


class GetAvailableSlotsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        availability_cache: AvailabilityCache,
        ttl_seconds: int = 300,
        clock: Callable = utcnow,
    ):
        self._unit_of_work = unit_of_work
        self._availability_cache = availability_cache
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    async def __call__(
        self, service_id: str, day: date, provider_id: str | None = None
    ) -> list[AvailableSlot]:
        key = availability_key(service_id, day.isoformat(), provider_id)
        cached = await self._availability_cache.get(key)
        if cached is not None:
            return [AvailableSlot(**slot) for slot in cached]

        slots = await self._compute(service_id, day, provider_id)
        await self._availability_cache.set(
            key, [slot.model_dump(mode="json") for slot in slots], self._ttl_seconds
        )
        return slots

    async def _compute(
        self, service_id: str, day: date, provider_id: str | None
    ) -> list[AvailableSlot]:
        async with self._unit_of_work() as uow:
            try:
                service = await uow.catalog.get_service(service_id)
            except DoesNotExist:
                raise NotFound(f"Service {service_id} not found")

            if not service.is_active:
                return []

            schedule = await uow.catalog.get_schedule(service_id, provider_id)
            if schedule is None and provider_id is not None:
                schedule = await uow.catalog.get_schedule(service_id)
            if schedule is None:
                return []

            tz = ZoneInfo(schedule.timezone)
            duration = timedelta(minutes=service.duration_minutes)
            step = duration + timedelta(minutes=service.buffer_minutes)
            now = self._clock()

            candidates: list[AvailableSlot] = []
            for time_range in _ranges_for_day(schedule, day):
                cursor = _to_utc(day, time_range.start, tz)
                range_end = _to_utc(day, time_range.end, tz)
                while cursor + duration <= range_end:
                    if cursor > now:
                        candidates.append(AvailableSlot(start=cursor, end=cursor + duration))
                    cursor += step

            if not candidates:
                return []

            bookings = await uow.bookings.list_in_statuses_between(
                service_id,
                provider_id,
                ACTIVE_BOOKING_STATUSES,
                candidates[0].start,
                candidates[-1].end,
            )

        return [
            slot
            for slot in candidates
            if not any(slot.start < b.end_at and slot.end > b.start_at for b in bookings)
        ]
