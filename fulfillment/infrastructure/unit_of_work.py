from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.infrastructure.repositories import (
    BookingRepository,
    CatalogRepository,
    DeadLetterRepository,
    InboxRepository,
    LineItemRepository,
    OrderRepository,
    OutboxRepository,
    PaymentRepository,
    RefundRepository,
)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                yield _UnitOfWorkImplementation(session)
                # Rollback if commit wasn't explicitly called
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImplementation:
    def __init__(self, session: AsyncSession):
        self._session = session
        self._order_repo = OrderRepository(session)
        self._line_item_repo = LineItemRepository(session)
        self._payment_repo = PaymentRepository(session)
        self._refund_repo = RefundRepository(session)
        self._outbox_repo = OutboxRepository(session)
        self._dead_letter_repo = DeadLetterRepository(session)
        self._inbox_repo = InboxRepository(session)
        self._catalog_repo = CatalogRepository(session)
        self._booking_repo = BookingRepository(session)

    @property
    def orders(self) -> OrderRepository:
        return self._order_repo

    @property
    def line_items(self) -> LineItemRepository:
        return self._line_item_repo

    @property
    def payments(self) -> PaymentRepository:
        return self._payment_repo

    @property
    def refunds(self) -> RefundRepository:
        return self._refund_repo

    @property
    def outbox(self) -> OutboxRepository:
        return self._outbox_repo

    @property
    def dead_letters(self) -> DeadLetterRepository:
        return self._dead_letter_repo

    @property
    def inbox(self) -> InboxRepository:
        return self._inbox_repo

    @property
    def catalog(self) -> CatalogRepository:
        return self._catalog_repo

    @property
    def bookings(self) -> BookingRepository:
        return self._booking_repo

    async def commit(self):
        await self._session.commit()
