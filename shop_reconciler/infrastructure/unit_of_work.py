from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shop_reconciler.infrastructure.event_queue import ProviderEventRepository
from shop_reconciler.infrastructure.repositories import (
    InventoryRepository,
    JobStateRepository,
    OrderRepository,
    OutboxRepository,
    PaymentAttemptRepository,
    PaymentCancelRepository,
)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                yield _UnitOfWorkImplementation(session)
                # Anything not explicitly committed is discarded
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImplementation:
    def __init__(self, session: AsyncSession):
        self._session = session
        self._orders = OrderRepository(session)
        self._inventory = InventoryRepository(session)
        self._payment_attempts = PaymentAttemptRepository(session)
        self._provider_events = ProviderEventRepository(session)
        self._outbox = OutboxRepository(session)
        self._payment_cancels = PaymentCancelRepository(session)
        self._job_state = JobStateRepository(session)

    @property
    def orders(self) -> OrderRepository:
        return self._orders

    @property
    def inventory(self) -> InventoryRepository:
        return self._inventory

    @property
    def payment_attempts(self) -> PaymentAttemptRepository:
        return self._payment_attempts

    @property
    def provider_events(self) -> ProviderEventRepository:
        return self._provider_events

    @property
    def outbox(self) -> OutboxRepository:
        return self._outbox

    @property
    def payment_cancels(self) -> PaymentCancelRepository:
        return self._payment_cancels

    @property
    def job_state(self) -> JobStateRepository:
        return self._job_state

    async def commit(self):
        await self._session.commit()
