import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Awaitable, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shop_reconciler.application.checkout import (
    CheckoutDTO,
    CheckoutItemDTO,
    CreateOrderUseCase,
)
from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.core.models import (
    InventoryStatus,
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    Product,
)
from shop_reconciler.infrastructure.db_schema import metadata
from shop_reconciler.infrastructure.repositories import (
    InventoryRepository,
    OutboxRepository,
)
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork
from shop_reconciler.presentation.app import build_api

CONFIG_PATH = Path(__file__).resolve().parent / "shop_reconciler" / "config.yaml"

TEST_JANITOR_SECRET = "test-janitor-secret"
TEST_ADMIN_TOKEN = "test-admin-token"
TEST_CSRF_SECRET = "test-csrf-secret"

_database_reachable: bool | None = None


@pytest.fixture()
async def container() -> ApplicationContainer:
    container = ApplicationContainer()
    container.config.from_yaml(CONFIG_PATH, required=True)
    container.config.from_dict(
        {
            "infrastructure": {"redis": {"url": ""}},
            "payments": {"refund_enabled": {"stripe": True, "monobank": True}},
            "janitor": {"min_interval_seconds": 0},
            "security": {
                "janitor_secret": TEST_JANITOR_SECRET,
                "admin_api_enabled": True,
                "admin_token": TEST_ADMIN_TOKEN,
                "csrf_secret": TEST_CSRF_SECRET,
            },
        }
    )
    return container


@pytest.fixture()
async def session_factory(
    container: ApplicationContainer,
) -> async_sessionmaker[AsyncSession]:
    return container.infrastructure_container.session_factory()


@pytest.fixture()
async def unit_of_work(container: ApplicationContainer) -> UnitOfWork:
    return container.infrastructure_container.unit_of_work()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def setup_database(container: ApplicationContainer):
    """Fresh schema per test; skips the test when PostgreSQL is not reachable."""
    global _database_reachable
    if _database_reachable is False:
        pytest.skip("PostgreSQL is not reachable")

    engine = container.infrastructure_container.async_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)
            await conn.run_sync(metadata.create_all)
    except (OSError, SQLAlchemyError) as e:
        _database_reachable = False
        await engine.dispose()
        pytest.skip(f"PostgreSQL is not reachable: {e}")
    _database_reachable = True

    yield

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def fast_api_app(container: ApplicationContainer) -> FastAPI:
    return build_api(container)


@pytest_asyncio.fixture()
async def test_async_client(fast_api_app: FastAPI) -> AsyncClient:
    async with AsyncClient(
        transport=ASGITransport(app=fast_api_app),
        base_url="http://test.com",
    ) as client:
        client.app = fast_api_app
        yield client


@pytest.fixture
def product_factory(
    unit_of_work: UnitOfWork,
) -> Callable[..., Awaitable[Product]]:
    async def _create_product(**kwargs) -> Product:
        defaults = {
            "title": f"Test product {uuid.uuid4().hex[:6]}",
            "price": Decimal("12.34"),
            "currency": "UAH",
            "stock": 10,
        }
        defaults.update(kwargs)
        async with unit_of_work() as uow:
            product = await uow.inventory.create_product(
                InventoryRepository.CreateProductDTO(**defaults)
            )
            await uow.commit()
        return product

    return _create_product


@pytest.fixture
def order_factory(
    unit_of_work: UnitOfWork,
    product_factory: Callable[..., Awaitable[Product]],
) -> Callable[..., Awaitable[Order]]:
    """Checks out a fresh product through the real checkout use case."""

    async def _create_order(
        provider: PaymentProvider = PaymentProvider.STRIPE,
        quantity: int = 1,
        **product_kwargs,
    ) -> Order:
        product = await product_factory(**product_kwargs)
        result = await CreateOrderUseCase(unit_of_work)(
            str(uuid.uuid4()),
            CheckoutDTO(
                currency=product.currency,
                payment_provider=provider,
                items=[CheckoutItemDTO(product_id=product.id, quantity=quantity)],
            ),
        )
        return result.order

    return _create_order


@pytest.fixture
async def outbox_repo(session: AsyncSession) -> OutboxRepository:
    return OutboxRepository(session)


@pytest.fixture
def order_model_factory() -> Callable[..., Order]:
    """In-memory order for tests that never touch the database."""

    def _create_order_model(**kwargs) -> Order:
        now = datetime.now(timezone.utc)
        defaults = {
            "id": str(uuid.uuid4()),
            "user_id": None,
            "total_amount_minor": 1234,
            "total_amount": Decimal("12.34"),
            "currency": "UAH",
            "payment_provider": PaymentProvider.STRIPE,
            "payment_status": PaymentStatus.PENDING,
            "status": OrderStatus.CREATED,
            "inventory_status": InventoryStatus.RESERVED,
            "idempotency_key": str(uuid.uuid4()),
            "idempotency_request_hash": "0" * 64,
            "created_at": now,
            "updated_at": now,
        }
        defaults.update(kwargs)
        return Order(**defaults)

    return _create_order_model
