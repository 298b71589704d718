import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shop_reconciler.core.models import (
    EventTypeEnum,
    InventoryMoveType,
    InventoryStatus,
    OrderItem,
    OrderStatus,
    OutboxEventStatus,
    PaymentProvider,
    PaymentStatus,
    ReleaseOutcome,
)
from shop_reconciler.core.payment_state import TransitionRejection
from shop_reconciler.infrastructure.db_schema import orders_tbl
from shop_reconciler.infrastructure.repositories import (
    DoesNotExist,
    InventoryRepository,
    OrderRepository,
    OutboxRepository,
    PaymentAttemptRepository,
)

pytestmark = pytest.mark.usefixtures("setup_database")


@pytest.fixture
async def inventory_repo(session: AsyncSession) -> InventoryRepository:
    return InventoryRepository(session)


@pytest.fixture
async def order_repo(session: AsyncSession) -> OrderRepository:
    return OrderRepository(session)


@pytest.fixture
async def attempt_repo(session: AsyncSession) -> PaymentAttemptRepository:
    return PaymentAttemptRepository(session)


def _order_dto(
    provider: PaymentProvider = PaymentProvider.STRIPE,
    idempotency_key: str | None = None,
    items: list[OrderItem] | None = None,
) -> OrderRepository.CreateDTO:
    return OrderRepository.CreateDTO(
        user_id=None,
        currency="UAH",
        payment_provider=provider,
        total_amount_minor=1234,
        items=items or [],
        idempotency_key=idempotency_key or str(uuid.uuid4()),
        idempotency_request_hash="h" * 64,
    )


async def _make_stale(session: AsyncSession, order_id: str, age: timedelta) -> None:
    await session.execute(
        update(orders_tbl)
        .where(orders_tbl.c.id == uuid.UUID(order_id))
        .values(updated_at=func.now() - age, created_at=func.now() - age)
    )
    await session.commit()


class TestInventoryRepository:
    @pytest.mark.asyncio
    async def test_reserve_decrements_and_records_move(
        self, inventory_repo: InventoryRepository, order_repo: OrderRepository, session
    ):
        # Given
        product = await inventory_repo.create_product(
            InventoryRepository.CreateProductDTO(
                title="Mug", price=Decimal("12.34"), currency="UAH", stock=5
            )
        )
        order = await order_repo.create_if_absent(_order_dto())

        # When
        reserved = await inventory_repo.reserve(order.id, product.id, 2)

        # Then
        assert reserved is True
        assert (await inventory_repo.get_product(product.id)).stock == 3
        moves = await inventory_repo.list_moves(order.id)
        assert [(m.type, m.quantity, m.move_key) for m in moves] == [
            (InventoryMoveType.RESERVE, 2, f"reserve:{order.id}:{product.id}")
        ]

    @pytest.mark.asyncio
    async def test_reserve_beyond_stock_is_refused(
        self, inventory_repo: InventoryRepository, order_repo: OrderRepository
    ):
        # Given
        product = await inventory_repo.create_product(
            InventoryRepository.CreateProductDTO(
                title="Mug", price=Decimal("1.00"), currency="UAH", stock=1
            )
        )
        order = await order_repo.create_if_absent(_order_dto())

        # When
        reserved = await inventory_repo.reserve(order.id, product.id, 2)

        # Then
        assert reserved is False
        assert (await inventory_repo.get_product(product.id)).stock == 1
        assert await inventory_repo.list_moves(order.id) == []

    @pytest.mark.asyncio
    async def test_release_is_applied_once(
        self, inventory_repo: InventoryRepository, order_repo: OrderRepository
    ):
        # Given
        product = await inventory_repo.create_product(
            InventoryRepository.CreateProductDTO(
                title="Mug", price=Decimal("1.00"), currency="UAH", stock=4
            )
        )
        order = await order_repo.create_if_absent(_order_dto())
        await inventory_repo.reserve(order.id, product.id, 3)

        # When
        first = await inventory_repo.apply_release_move(order.id, product.id, 3)
        second = await inventory_repo.apply_release_move(order.id, product.id, 3)

        # Then
        assert first == ReleaseOutcome.APPLIED
        assert second == ReleaseOutcome.ALREADY
        assert (await inventory_repo.get_product(product.id)).stock == 4

    @pytest.mark.asyncio
    async def test_release_without_reserve(
        self, inventory_repo: InventoryRepository, order_repo: OrderRepository
    ):
        # Given
        product = await inventory_repo.create_product(
            InventoryRepository.CreateProductDTO(
                title="Mug", price=Decimal("1.00"), currency="UAH", stock=4
            )
        )
        order = await order_repo.create_if_absent(_order_dto())

        # When
        outcome = await inventory_repo.apply_release_move(order.id, product.id, 1)

        # Then
        assert outcome == ReleaseOutcome.NO_RESERVE
        assert (await inventory_repo.get_product(product.id)).stock == 4

    @pytest.mark.asyncio
    async def test_lock_products_skips_unknown_ids(
        self, inventory_repo: InventoryRepository
    ):
        # Given
        product = await inventory_repo.create_product(
            InventoryRepository.CreateProductDTO(
                title="Mug", price=Decimal("1.00"), currency="UAH", stock=4
            )
        )

        # When
        locked = await inventory_repo.lock_products(
            [product.id, str(uuid.uuid4()), "not-a-uuid"]
        )

        # Then
        assert list(locked) == [product.id]


class TestOrderRepository:
    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key_returns_none(
        self, order_repo: OrderRepository
    ):
        # Given
        first = await order_repo.create_if_absent(_order_dto(idempotency_key="k-1"))

        # When
        second = await order_repo.create_if_absent(_order_dto(idempotency_key="k-1"))

        # Then
        assert first is not None
        assert first.total_amount == Decimal("12.34")
        assert first.payment_status == PaymentStatus.PENDING
        assert first.inventory_status == InventoryStatus.NONE
        assert second is None
        assert (await order_repo.get_by_idempotency_key("k-1")).id == first.id

    @pytest.mark.asyncio
    async def test_get_by_id_with_junk_id(self, order_repo: OrderRepository):
        with pytest.raises(DoesNotExist):
            await order_repo.get_by_id("not-a-uuid")

    @pytest.mark.asyncio
    async def test_guarded_update_applies_allowed_transition(
        self, order_repo: OrderRepository
    ):
        # Given
        order = await order_repo.create_if_absent(_order_dto())

        # When
        result = await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.PAID, status=OrderStatus.PAID
        )

        # Then
        assert result.applied is True
        reloaded = await order_repo.get_by_id(order.id)
        assert reloaded.payment_status == PaymentStatus.PAID
        assert reloaded.status == OrderStatus.PAID

    @pytest.mark.asyncio
    async def test_guarded_update_reports_rejections(self, order_repo: OrderRepository):
        # Given
        order = await order_repo.create_if_absent(_order_dto())
        await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.PAID
        )

        # When
        again = await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.PAID
        )
        backwards = await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.FAILED
        )
        mismatch = await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.MONOBANK, PaymentStatus.REFUNDED
        )
        missing = await order_repo.guarded_payment_status_update(
            str(uuid.uuid4()), PaymentProvider.STRIPE, PaymentStatus.PAID
        )

        # Then
        assert again.rejection == TransitionRejection.ALREADY_IN_STATE
        assert backwards.rejection == TransitionRejection.INVALID_TRANSITION
        assert backwards.previous_status == PaymentStatus.PAID
        assert mismatch.rejection == TransitionRejection.PROVIDER_MISMATCH
        assert missing.rejection == TransitionRejection.NOT_FOUND

    @pytest.mark.asyncio
    async def test_needs_review_blocks_settlement(self, order_repo: OrderRepository):
        # Given
        order = await order_repo.create_if_absent(_order_dto())
        await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.NEEDS_REVIEW
        )

        # When
        result = await order_repo.guarded_payment_status_update(
            order.id, PaymentProvider.STRIPE, PaymentStatus.PAID
        )

        # Then
        assert result.applied is False
        assert result.rejection == TransitionRejection.BLOCKED

    @pytest.mark.asyncio
    async def test_stock_restored_flag_flips_once(self, order_repo: OrderRepository):
        # Given
        order = await order_repo.create_if_absent(_order_dto())

        # When
        first = await order_repo.mark_stock_restored_once(order.id)
        second = await order_repo.mark_stock_restored_once(order.id)

        # Then
        assert (first, second) == (True, False)
        reloaded = await order_repo.get_by_id(order.id)
        assert reloaded.stock_restored is True
        assert reloaded.restocked_at is not None

    @pytest.mark.asyncio
    async def test_claim_stale_orders_only_takes_old_open_orders(
        self, order_repo: OrderRepository, session: AsyncSession
    ):
        # Given
        stale = await order_repo.create_if_absent(_order_dto())
        fresh = await order_repo.create_if_absent(_order_dto())
        paid = await order_repo.create_if_absent(_order_dto())
        await order_repo.guarded_payment_status_update(
            paid.id, PaymentProvider.STRIPE, PaymentStatus.PAID
        )
        await session.commit()
        await _make_stale(session, stale.id, timedelta(hours=2))
        await _make_stale(session, paid.id, timedelta(hours=2))

        # When
        claimed = await order_repo.claim_stale_orders(
            older_than=timedelta(minutes=60),
            batch_size=10,
            claim_ttl=timedelta(minutes=5),
            run_id="run-1",
            claimed_by="test",
        )
        reclaimed = await order_repo.claim_stale_orders(
            older_than=timedelta(minutes=60),
            batch_size=10,
            claim_ttl=timedelta(minutes=5),
            run_id="run-2",
            claimed_by="test",
        )

        # Then
        assert claimed == [stale.id]
        assert fresh.id not in claimed
        assert reclaimed == []


class TestPaymentAttemptRepository:
    @pytest.mark.asyncio
    async def test_second_active_attempt_violates_unique_index(
        self, order_repo: OrderRepository, attempt_repo: PaymentAttemptRepository
    ):
        # Given
        order = await order_repo.create_if_absent(_order_dto())
        dto = PaymentAttemptRepository.CreateDTO(
            order_id=order.id,
            provider=PaymentProvider.STRIPE,
            attempt_number=1,
            idempotency_key=f"pi:stripe:{order.id}:1",
            expected_amount_minor=1234,
            currency="UAH",
        )
        await attempt_repo.create(dto)

        # When / Then
        with pytest.raises(IntegrityError):
            await attempt_repo.create(
                dto.model_copy(
                    update={
                        "attempt_number": 2,
                        "idempotency_key": f"pi:stripe:{order.id}:2",
                    }
                )
            )

    @pytest.mark.asyncio
    async def test_find_for_event_by_reference_or_intent(
        self, order_repo: OrderRepository, attempt_repo: PaymentAttemptRepository
    ):
        # Given
        order = await order_repo.create_if_absent(_order_dto(PaymentProvider.MONOBANK))
        attempt = await attempt_repo.create(
            PaymentAttemptRepository.CreateDTO(
                order_id=order.id,
                provider=PaymentProvider.MONOBANK,
                attempt_number=1,
                idempotency_key=f"mono:{order.id}:1",
                expected_amount_minor=1234,
                currency="UAH",
            )
        )
        await attempt_repo.update(attempt.id, provider_payment_intent_id="inv_1")

        # When
        by_reference = await attempt_repo.find_for_event(
            PaymentProvider.MONOBANK, None, attempt.id
        )
        by_invoice = await attempt_repo.find_for_event(
            PaymentProvider.MONOBANK, "inv_1", "junk"
        )
        other_provider = await attempt_repo.find_for_event(
            PaymentProvider.STRIPE, "inv_1", attempt.id
        )

        # Then
        assert by_reference.id == attempt.id
        assert by_invoice.id == attempt.id
        assert other_provider is None


class TestOutboxRepository:
    @pytest.mark.asyncio
    async def test_create_and_list_for_order(self, outbox_repo: OutboxRepository):
        # Given
        order_id = str(uuid.uuid4())
        await outbox_repo.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_PAID, payload={"order_id": order_id}
            )
        )
        await outbox_repo.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_PAID,
                payload={"order_id": str(uuid.uuid4())},
            )
        )

        # When
        events = await outbox_repo.list_for_order(order_id)

        # Then
        assert [e.event_type for e in events] == [EventTypeEnum.ORDER_PAID]
        assert events[0].status == OutboxEventStatus.PENDING

    @pytest.mark.asyncio
    async def test_mark_as_sent(self, outbox_repo: OutboxRepository):
        # Given
        event = await outbox_repo.create(
            OutboxRepository.CreateDTO(
                event_type=EventTypeEnum.ORDER_CANCELED, payload={"order_id": "o-1"}
            )
        )

        # When
        await outbox_repo.mark_as_sent(event.id)

        # Then
        assert (await outbox_repo.get_by_id(event.id)).status == OutboxEventStatus.SENT
        assert await outbox_repo.get_pending_events() == []
        assert await outbox_repo.lock_pending_event(event.id) is None
