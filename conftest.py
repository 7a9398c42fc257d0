import fnmatch
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from dependency_injector import providers
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.application.container import ApplicationContainer
from fulfillment.core.models import (
    Booking,
    BookingStatusEnum,
    LineItemKind,
    Order,
    PaymentStatusEnum,
    Schedule,
    Service,
    utcnow,
)
from fulfillment.infrastructure.db_schema import metadata
from fulfillment.infrastructure.kafka_producer import KafkaProducer
from fulfillment.infrastructure.payment_gateway import GatewayResult, HttpPaymentGateway
from fulfillment.infrastructure.repositories import (
    BookingRepository,
    CatalogRepository,
    LineItemRepository,
    OrderRepository,
    OutboxRepository,
    PaymentRepository,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.presentation import api

CONFIG_PATH = Path(__file__).parent / "fulfillment" / "config.yaml"
TEST_DB_DSN = "sqlite+aiosqlite:///./test_fulfillment.db"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryLockCoordinator:
    def __init__(self):
        self.leases: dict[str, str] = {}
        self.released: list[str] = []

    async def try_acquire(self, key: str, ttl_seconds: int) -> str | None:
        if key in self.leases:
            return None
        self.leases[key] = uuid.uuid4().hex
        return self.leases[key]

    async def release(self, key: str, token: str) -> None:
        if self.leases.get(key) == token:
            del self.leases[key]
            self.released.append(key)


class InMemoryAvailabilityCache:
    def __init__(self):
        self.entries: dict[str, list[dict[str, Any]]] = {}
        self.invalidated: list[str] = []

    async def get(self, key: str) -> list[dict[str, Any]] | None:
        return self.entries.get(key)

    async def set(self, key: str, value: list[dict[str, Any]], ttl_seconds: int) -> None:
        self.entries[key] = value

    async def invalidate_service(self, service_id: str) -> None:
        self.invalidated.append(service_id)
        for key in fnmatch.filter(list(self.entries), f"availability:{service_id}:*"):
            del self.entries[key]


@pytest.fixture()
def lock_coordinator() -> InMemoryLockCoordinator:
    return InMemoryLockCoordinator()


@pytest.fixture()
def availability_cache() -> InMemoryAvailabilityCache:
    return InMemoryAvailabilityCache()


@pytest.fixture()
def payment_gateway():
    """Mock payment gateway for tests"""
    gateway = AsyncMock(spec=HttpPaymentGateway)
    gateway.capture = AsyncMock(return_value=GatewayResult(transaction_id="txn_capture"))
    gateway.refund = AsyncMock(return_value=GatewayResult(transaction_id="txn_refund"))
    return gateway


@pytest.fixture()
def kafka_producer():
    """Mock Kafka producer for tests"""
    producer = AsyncMock(spec=KafkaProducer)
    producer.send_message = AsyncMock()
    producer.is_started = True
    return producer


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(utcnow().replace(microsecond=0))


@pytest.fixture()
async def container(
    lock_coordinator, availability_cache, payment_gateway, kafka_producer
) -> ApplicationContainer:
    container = ApplicationContainer()
    container.config.from_yaml(str(CONFIG_PATH), required=True)
    container.config.infrastructure.db.dsn.from_value(TEST_DB_DSN)

    infrastructure = container.infrastructure_container
    infrastructure.lock_coordinator.override(providers.Object(lock_coordinator))
    infrastructure.availability_cache.override(providers.Object(availability_cache))
    infrastructure.payment_gateway.override(providers.Object(payment_gateway))
    infrastructure.kafka_producer.override(providers.Object(kafka_producer))
    return container


@pytest.fixture()
async def session_factory(
    container: ApplicationContainer,
) -> async_sessionmaker[AsyncSession]:
    return container.infrastructure_container.session_factory()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def uow(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWork:
    return UnitOfWork(session_factory)


@pytest.fixture()
def fast_api_app(container: ApplicationContainer):
    app = FastAPI()
    app.include_router(api.router)
    api.register_error_handlers(app)
    container.wire(modules=[api])
    app.container = container
    return app


@pytest_asyncio.fixture(autouse=True)
async def setup_database(container: ApplicationContainer):
    engine = container.infrastructure_container.async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture()
async def test_async_client(fast_api_app) -> AsyncClient:
    async with AsyncClient(
        transport=ASGITransport(app=fast_api_app),
        base_url="http://test.com",
    ) as client:
        client.app = fast_api_app
        yield client


@pytest.fixture
async def outbox_repo(session: AsyncSession) -> OutboxRepository:
    return OutboxRepository(session)


@pytest.fixture
def order_factory(uow: UnitOfWork):
    """Order with one line item per kind given, all pending, plus an authorized payment."""

    async def _create_order(
        kinds: list[LineItemKind] = (LineItemKind.PHYSICAL,),
        unit_price: int = 1000,
        quantity: int = 1,
        payment_status: PaymentStatusEnum | None = PaymentStatusEnum.AUTHORIZED,
        line_item_status: str = "pending",
    ) -> Order:
        async with uow() as unit:
            order = await unit.orders.create(
                OrderRepository.CreateDTO(
                    customer_id=str(uuid.uuid4()),
                    currency="USD",
                    total_amount=unit_price * quantity * len(kinds),
                )
            )
            for kind in kinds:
                await unit.line_items.create(
                    LineItemRepository.CreateDTO(
                        order_id=order.id,
                        kind=kind,
                        product_id=str(uuid.uuid4()),
                        name=f"Test {kind} item",
                        quantity=quantity,
                        unit_price=unit_price,
                        status=line_item_status,
                    )
                )
            if payment_status is not None:
                payment = await unit.payments.create(
                    PaymentRepository.CreateDTO(
                        order_id=order.id,
                        provider_payment_id=f"pi_{uuid.uuid4().hex[:12]}",
                        amount=order.total_amount,
                        currency="USD",
                    )
                )
                if payment_status == PaymentStatusEnum.CAPTURED:
                    await unit.payments.mark_captured(payment.id, payment.amount, utcnow())
                elif payment_status == PaymentStatusEnum.FAILED:
                    await unit.payments.mark_failed(payment.id, "card declined")
            order = await unit.orders.get_by_id(order.id)
            await unit.commit()
        return order

    return _create_order


@pytest.fixture
def service_factory(uow: UnitOfWork):
    async def _create_service(**kwargs) -> Service:
        defaults = {
            "merchant_id": "merchant_1",
            "provider_id": "provider_1",
            "name": "Haircut",
            "duration_minutes": 60,
            "buffer_minutes": 0,
            "price": 5000,
        }
        defaults.update(kwargs)
        async with uow() as unit:
            service = await unit.catalog.create_service(CatalogRepository.CreateServiceDTO(**defaults))
            await unit.commit()
        return service

    return _create_service


@pytest.fixture
def schedule_factory(uow: UnitOfWork):
    async def _create_schedule(service_id: str, **kwargs) -> Schedule:
        defaults = {
            "service_id": service_id,
            "timezone": "UTC",
            "weekly_slots": {
                day: [{"start": "09:00", "end": "12:00"}]
                for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
            },
        }
        defaults.update(kwargs)
        async with uow() as unit:
            schedule = await unit.catalog.create_schedule(CatalogRepository.CreateScheduleDTO(**defaults))
            await unit.commit()
        return schedule

    return _create_schedule


@pytest.fixture
def booking_factory(uow: UnitOfWork):
    """Inserts a booking row directly, bypassing admission."""

    async def _create_booking(
        service: Service,
        start_at: datetime,
        status: BookingStatusEnum = BookingStatusEnum.CONFIRMED,
        **kwargs,
    ) -> Booking:
        defaults = {
            "service_id": service.id,
            "provider_id": service.provider_id,
            "customer_id": "customer_1",
            "start_at": start_at,
            "end_at": start_at + timedelta(minutes=service.duration_minutes),
            "status": status,
        }
        defaults.update(kwargs)
        async with uow() as unit:
            booking = await unit.bookings.create(BookingRepository.CreateDTO(**defaults))
            await unit.commit()
        return booking

    return _create_booking
