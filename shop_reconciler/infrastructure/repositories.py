import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import Row, func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from shop_reconciler.core.inventory import release_move_key, reserve_move_key
from shop_reconciler.core.models import (
    EventTypeEnum,
    InventoryMove,
    InventoryMoveType,
    InventoryStatus,
    Order,
    OrderItem,
    OrderStatus,
    OutboxEvent,
    OutboxEventStatus,
    PaymentAttempt,
    PaymentCancel,
    PaymentCancelStatus,
    PaymentAttemptStatus,
    PaymentProvider,
    PaymentStatus,
    Product,
    ReleaseOutcome,
)
from shop_reconciler.core.money import to_db_money
from shop_reconciler.core.payment_state import (
    OPEN_PAYMENT_STATUSES,
    TransitionRejection,
    allowed_from,
    check_transition,
)
from shop_reconciler.infrastructure.db_schema import (
    internal_job_state_tbl,
    inventory_moves_tbl,
    order_items_tbl,
    orders_tbl,
    outbox_tbl,
    payment_attempts_tbl,
    payment_cancels_tbl,
    products_tbl,
)


class DoesNotExist(Exception):
    pass


def as_uuid(value: str | None) -> uuid.UUID | None:
    """Parse an externally supplied id; junk input becomes None, not a DB error."""
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class InventoryRepository:
    class CreateProductDTO(BaseModel):
        title: str
        price: Decimal | None
        currency: str
        stock: int
        is_active: bool = True

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct_product(row: Row | None) -> Product:
        if row is None:
            raise DoesNotExist

        return Product(
            id=str(row._mapping["id"]),
            title=row._mapping["title"],
            price=row._mapping["price"],
            currency=row._mapping["currency"],
            stock=row._mapping["stock"],
            is_active=row._mapping["is_active"],
        )

    @staticmethod
    def _construct_move(row: Row) -> InventoryMove:
        return InventoryMove(
            id=str(row._mapping["id"]),
            order_id=str(row._mapping["order_id"]),
            product_id=str(row._mapping["product_id"]),
            type=row._mapping["type"],
            quantity=row._mapping["quantity"],
            move_key=row._mapping["move_key"],
            created_at=row._mapping["created_at"],
        )

    async def create_product(self, product: CreateProductDTO) -> Product:
        stmt = (
            insert(products_tbl)
            .values(product.model_dump())
            .returning(literal_column("*"))
        )
        result = await self._session.execute(stmt)
        return self._construct_product(result.fetchone())

    async def get_product(self, product_id: str) -> Product:
        stmt = select(products_tbl).where(products_tbl.c.id == as_uuid(product_id))
        result = await self._session.execute(stmt)
        return self._construct_product(result.fetchone())

    async def lock_products(self, product_ids: list[str]) -> dict[str, Product]:
        """Lock product rows in id order for the rest of the transaction."""
        ids = [pid for pid in (as_uuid(p) for p in product_ids) if pid is not None]
        if not ids:
            return {}

        stmt = (
            select(products_tbl)
            .where(products_tbl.c.id.in_(ids))
            .order_by(products_tbl.c.id)
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        products = [self._construct_product(row) for row in result.fetchall()]
        return {product.id: product for product in products}

    async def reserve(self, order_id: str, product_id: str, quantity: int) -> bool:
        """Conditionally decrement stock and record the reserve move."""
        stmt = (
            update(products_tbl)
            .where(
                products_tbl.c.id == as_uuid(product_id),
                products_tbl.c.stock >= quantity,
            )
            .values(stock=products_tbl.c.stock - quantity, updated_at=func.now())
            .returning(products_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        if result.fetchone() is None:
            return False

        await self._session.execute(
            insert(inventory_moves_tbl).values(
                {
                    "order_id": as_uuid(order_id),
                    "product_id": as_uuid(product_id),
                    "type": InventoryMoveType.RESERVE,
                    "quantity": quantity,
                    "move_key": reserve_move_key(order_id, product_id),
                }
            )
        )
        return True

    async def apply_release_move(
        self, order_id: str, product_id: str, quantity: int
    ) -> ReleaseOutcome:
        """Return reserved stock once; the unique move key absorbs repeats."""
        reserve_exists = await self._session.execute(
            select(inventory_moves_tbl.c.id).where(
                inventory_moves_tbl.c.move_key == reserve_move_key(order_id, product_id)
            )
        )
        if reserve_exists.fetchone() is None:
            return ReleaseOutcome.NO_RESERVE

        stmt = (
            insert(inventory_moves_tbl)
            .values(
                {
                    "order_id": as_uuid(order_id),
                    "product_id": as_uuid(product_id),
                    "type": InventoryMoveType.RELEASE,
                    "quantity": quantity,
                    "move_key": release_move_key(order_id, product_id),
                }
            )
            .on_conflict_do_nothing(index_elements=["move_key"])
            .returning(inventory_moves_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        if result.fetchone() is None:
            return ReleaseOutcome.ALREADY

        await self._session.execute(
            update(products_tbl)
            .where(products_tbl.c.id == as_uuid(product_id))
            .values(stock=products_tbl.c.stock + quantity, updated_at=func.now())
        )
        return ReleaseOutcome.APPLIED

    async def list_moves(
        self, order_id: str, move_type: InventoryMoveType | None = None
    ) -> list[InventoryMove]:
        stmt = (
            select(inventory_moves_tbl)
            .where(inventory_moves_tbl.c.order_id == as_uuid(order_id))
            .order_by(inventory_moves_tbl.c.product_id)
        )
        if move_type is not None:
            stmt = stmt.where(inventory_moves_tbl.c.type == move_type)
        result = await self._session.execute(stmt)
        return [self._construct_move(row) for row in result.fetchall()]


class GuardedUpdateResult(BaseModel):
    applied: bool
    rejection: TransitionRejection | None = None
    previous_status: PaymentStatus | None = None


class OrderRepository:
    class CreateDTO(BaseModel):
        user_id: str | None
        currency: str
        payment_provider: PaymentProvider
        total_amount_minor: int
        items: list[OrderItem]
        idempotency_key: str
        idempotency_request_hash: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None, items: list[OrderItem] | None = None) -> Order:
        if row is None:
            raise DoesNotExist

        return Order(
            id=str(row._mapping["id"]),
            user_id=row._mapping["user_id"],
            total_amount_minor=row._mapping["total_amount_minor"],
            total_amount=row._mapping["total_amount"],
            currency=row._mapping["currency"],
            payment_provider=row._mapping["payment_provider"],
            payment_status=row._mapping["payment_status"],
            status=row._mapping["status"],
            inventory_status=row._mapping["inventory_status"],
            payment_intent_id=row._mapping["payment_intent_id"],
            psp_metadata=row._mapping["psp_metadata"] or {},
            failure_code=row._mapping["failure_code"],
            failure_message=row._mapping["failure_message"],
            stock_restored=row._mapping["stock_restored"],
            restocked_at=row._mapping["restocked_at"],
            idempotency_key=row._mapping["idempotency_key"],
            idempotency_request_hash=row._mapping["idempotency_request_hash"],
            items=items or [],
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
        )

    async def create_if_absent(self, order: CreateDTO) -> Order | None:
        """Insert the order unless its idempotency key is already taken.

        Returns None on a key conflict; a concurrent insert with the same key
        blocks here until the other transaction settles.
        """
        stmt = (
            insert(orders_tbl)
            .values(
                {
                    "user_id": order.user_id,
                    "total_amount_minor": order.total_amount_minor,
                    "total_amount": to_db_money(order.total_amount_minor),
                    "currency": order.currency,
                    "payment_provider": order.payment_provider,
                    "payment_status": PaymentStatus.PENDING,
                    "status": OrderStatus.CREATED,
                    "inventory_status": InventoryStatus.NONE,
                    "psp_metadata": {},
                    "idempotency_key": order.idempotency_key,
                    "idempotency_request_hash": order.idempotency_request_hash,
                }
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(literal_column("*"))
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            return None

        if order.items:
            await self._session.execute(
                insert(order_items_tbl).values(
                    [
                        {
                            "order_id": row._mapping["id"],
                            "product_id": as_uuid(item.product_id),
                            "quantity": item.quantity,
                            "unit_price_minor": item.unit_price_minor,
                            "line_total_minor": item.line_total_minor,
                        }
                        for item in order.items
                    ]
                )
            )
        return self._construct(row, order.items)

    async def _get_items(self, order_id: uuid.UUID) -> list[OrderItem]:
        stmt = (
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id == order_id)
            .order_by(order_items_tbl.c.product_id)
        )
        result = await self._session.execute(stmt)
        return [
            OrderItem(
                product_id=str(row._mapping["product_id"]),
                quantity=row._mapping["quantity"],
                unit_price_minor=row._mapping["unit_price_minor"],
                line_total_minor=row._mapping["line_total_minor"],
            )
            for row in result.fetchall()
        ]

    async def get_by_id(self, order_id: str, for_update: bool = False) -> Order:
        key = as_uuid(order_id)
        if key is None:
            raise DoesNotExist

        stmt = select(orders_tbl).where(orders_tbl.c.id == key)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            raise DoesNotExist

        return self._construct(row, await self._get_items(key))

    async def get_by_idempotency_key(self, idempotency_key: str) -> Order:
        stmt = select(orders_tbl).where(orders_tbl.c.idempotency_key == idempotency_key)
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            raise DoesNotExist

        return self._construct(row, await self._get_items(row._mapping["id"]))

    async def find_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        stmt = select(orders_tbl.c.id).where(
            orders_tbl.c.payment_intent_id == payment_intent_id
        )
        result = await self._session.execute(stmt)
        row = result.fetchone()
        if row is None:
            return None
        return await self.get_by_id(str(row._mapping["id"]), for_update=True)

    async def update_fields(self, order_id: str, **values) -> None:
        if not values:
            return
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == as_uuid(order_id))
            .values(updated_at=func.now(), **values)
        )
        await self._session.execute(stmt)

    async def guarded_payment_status_update(
        self,
        order_id: str,
        provider: PaymentProvider,
        target: PaymentStatus,
        **values,
    ) -> GuardedUpdateResult:
        """Move ``payment_status`` to ``target`` only from an allowed state.

        The eligibility check lives in the WHERE clause, so two racing callers
        can never both apply the same transition.
        """
        eligible = allowed_from(provider, target)
        if eligible:
            stmt = (
                update(orders_tbl)
                .where(
                    orders_tbl.c.id == as_uuid(order_id),
                    orders_tbl.c.payment_provider == provider,
                    orders_tbl.c.payment_status.in_(list(eligible)),
                )
                .values(payment_status=target, updated_at=func.now(), **values)
                .returning(orders_tbl.c.id)
            )
            result = await self._session.execute(stmt)
            if result.fetchone() is not None:
                return GuardedUpdateResult(applied=True)

        stmt = select(orders_tbl.c.payment_status, orders_tbl.c.payment_provider).where(
            orders_tbl.c.id == as_uuid(order_id)
        )
        row = (await self._session.execute(stmt)).fetchone()
        if row is None:
            return GuardedUpdateResult(
                applied=False, rejection=TransitionRejection.NOT_FOUND
            )

        current = PaymentStatus(row._mapping["payment_status"])
        if row._mapping["payment_provider"] != provider:
            return GuardedUpdateResult(
                applied=False,
                rejection=TransitionRejection.PROVIDER_MISMATCH,
                previous_status=current,
            )
        return GuardedUpdateResult(
            applied=False,
            rejection=check_transition(provider, current, target)
            or TransitionRejection.BLOCKED,
            previous_status=current,
        )

    async def mark_stock_restored_once(self, order_id: str) -> bool:
        """Flip ``stock_restored`` false -> true; True only for the winner."""
        stmt = (
            update(orders_tbl)
            .where(
                orders_tbl.c.id == as_uuid(order_id),
                orders_tbl.c.stock_restored.is_(False),
            )
            .values(stock_restored=True, restocked_at=func.now(), updated_at=func.now())
            .returning(orders_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        return result.fetchone() is not None

    async def list_needs_review(self, *, older_than: timedelta, limit: int) -> list[Order]:
        stmt = (
            select(orders_tbl)
            .where(
                orders_tbl.c.payment_status == PaymentStatus.NEEDS_REVIEW,
                orders_tbl.c.updated_at <= func.now() - older_than,
            )
            .order_by(orders_tbl.c.updated_at, orders_tbl.c.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def claim_stale_orders(
        self,
        *,
        older_than: timedelta,
        batch_size: int,
        claim_ttl: timedelta,
        run_id: str,
        claimed_by: str,
    ) -> list[str]:
        claim_gate = (
            orders_tbl.c.status == OrderStatus.CREATED,
            orders_tbl.c.payment_status.in_(list(OPEN_PAYMENT_STATUSES)),
            orders_tbl.c.stock_restored.is_(False),
            orders_tbl.c.updated_at < func.now() - older_than,
            or_(
                orders_tbl.c.sweep_claim_expires_at.is_(None),
                orders_tbl.c.sweep_claim_expires_at < func.now(),
            ),
        )
        candidates = (
            select(orders_tbl.c.id)
            .where(*claim_gate)
            .order_by(orders_tbl.c.updated_at, orders_tbl.c.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        # updated_at is left alone: the claim must not reset staleness.
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id.in_(candidates), *claim_gate)
            .values(
                sweep_claimed_at=func.now(),
                sweep_claim_expires_at=func.now() + claim_ttl,
                sweep_run_id=run_id,
                sweep_claimed_by=claimed_by,
            )
            .returning(orders_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        return [str(row._mapping["id"]) for row in result.fetchall()]


class PaymentAttemptRepository:
    class CreateDTO(BaseModel):
        order_id: str
        provider: PaymentProvider
        attempt_number: int
        idempotency_key: str
        expected_amount_minor: int
        currency: str

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> PaymentAttempt:
        if row is None:
            raise DoesNotExist

        return PaymentAttempt(
            id=str(row._mapping["id"]),
            order_id=str(row._mapping["order_id"]),
            provider=row._mapping["provider"],
            attempt_number=row._mapping["attempt_number"],
            status=row._mapping["status"],
            idempotency_key=row._mapping["idempotency_key"],
            provider_payment_intent_id=row._mapping["provider_payment_intent_id"],
            expected_amount_minor=row._mapping["expected_amount_minor"],
            currency=row._mapping["currency"],
            provider_modified_at=row._mapping["provider_modified_at"],
            last_error_code=row._mapping["last_error_code"],
            last_error_message=row._mapping["last_error_message"],
            finalized_at=row._mapping["finalized_at"],
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
        )

    async def create(self, attempt: CreateDTO) -> PaymentAttempt:
        """Insert an active attempt.

        Raises ``IntegrityError`` when another active attempt exists for the
        same order and provider.
        """
        stmt = (
            insert(payment_attempts_tbl)
            .values(
                {
                    "order_id": as_uuid(attempt.order_id),
                    "provider": attempt.provider,
                    "attempt_number": attempt.attempt_number,
                    "status": PaymentAttemptStatus.ACTIVE,
                    "idempotency_key": attempt.idempotency_key,
                    "expected_amount_minor": attempt.expected_amount_minor,
                    "currency": attempt.currency,
                }
            )
            .returning(literal_column("*"))
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_by_id(self, attempt_id: str) -> PaymentAttempt:
        stmt = select(payment_attempts_tbl).where(
            payment_attempts_tbl.c.id == as_uuid(attempt_id)
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_active(
        self, order_id: str, provider: PaymentProvider
    ) -> PaymentAttempt | None:
        stmt = select(payment_attempts_tbl).where(
            payment_attempts_tbl.c.order_id == as_uuid(order_id),
            payment_attempts_tbl.c.provider == provider,
            payment_attempts_tbl.c.status == PaymentAttemptStatus.ACTIVE,
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def latest_attempt_number(self, order_id: str, provider: PaymentProvider) -> int:
        stmt = select(func.coalesce(func.max(payment_attempts_tbl.c.attempt_number), 0)).where(
            payment_attempts_tbl.c.order_id == as_uuid(order_id),
            payment_attempts_tbl.c.provider == provider,
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def find_for_event(
        self,
        provider: PaymentProvider,
        invoice_id: str | None,
        reference: str | None,
    ) -> PaymentAttempt | None:
        """Correlate a provider event with an attempt.

        ``reference`` is the attempt id we sent to the provider; the provider's
        own payment id is the fallback.
        """
        conditions = []
        reference_id = as_uuid(reference)
        if reference_id is not None:
            conditions.append(payment_attempts_tbl.c.id == reference_id)
        if invoice_id:
            conditions.append(
                payment_attempts_tbl.c.provider_payment_intent_id == invoice_id
            )
        if not conditions:
            return None

        stmt = (
            select(payment_attempts_tbl)
            .where(payment_attempts_tbl.c.provider == provider, or_(*conditions))
            .order_by(payment_attempts_tbl.c.attempt_number.desc())
            .limit(1)
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def update(self, attempt_id: str, **values) -> None:
        stmt = (
            update(payment_attempts_tbl)
            .where(payment_attempts_tbl.c.id == as_uuid(attempt_id))
            .values(updated_at=func.now(), **values)
        )
        await self._session.execute(stmt)

    async def finalize(
        self,
        attempt_id: str,
        status: PaymentAttemptStatus,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
        provider_modified_at: datetime | None = None,
    ) -> None:
        values = {
            "status": status,
            "finalized_at": func.now(),
            "last_error_code": error_code,
            "last_error_message": error_message,
        }
        if provider_modified_at is not None:
            values["provider_modified_at"] = provider_modified_at
        stmt = (
            update(payment_attempts_tbl)
            .where(
                payment_attempts_tbl.c.id == as_uuid(attempt_id),
                payment_attempts_tbl.c.status == PaymentAttemptStatus.ACTIVE,
            )
            .values(updated_at=func.now(), **values)
        )
        await self._session.execute(stmt)


class OutboxRepository:
    class CreateDTO(BaseModel):
        event_type: EventTypeEnum
        payload: dict

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> OutboxEvent:
        if row is None:
            raise DoesNotExist

        return OutboxEvent(
            id=str(row._mapping["id"]),
            event_type=row._mapping["event_type"],
            payload=row._mapping["payload"],
            status=row._mapping["status"],
            created_at=row._mapping["created_at"],
        )

    async def create(self, event: CreateDTO) -> OutboxEvent:
        stmt = (
            insert(outbox_tbl)
            .values(
                {
                    "event_type": event.event_type,
                    "payload": event.payload,
                    "status": OutboxEventStatus.PENDING,
                }
            )
            .returning(literal_column("*"))
        )
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def get_pending_events(self, limit: int = 100) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.status == OutboxEventStatus.PENDING)
            .order_by(outbox_tbl.c.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def lock_pending_event(self, event_id: str) -> OutboxEvent | None:
        """Lock one row while it is still pending; None if sent or held elsewhere."""
        stmt = (
            select(outbox_tbl)
            .where(
                outbox_tbl.c.id == as_uuid(event_id),
                outbox_tbl.c.status == OutboxEventStatus.PENDING,
            )
            .with_for_update(skip_locked=True)
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def get_by_id(self, event_id: str) -> OutboxEvent:
        stmt = select(outbox_tbl).where(outbox_tbl.c.id == as_uuid(event_id))
        result = await self._session.execute(stmt)
        return self._construct(result.fetchone())

    async def list_for_order(self, order_id: str) -> list[OutboxEvent]:
        stmt = (
            select(outbox_tbl)
            .where(outbox_tbl.c.payload["order_id"].as_string() == order_id)
            .order_by(outbox_tbl.c.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._construct(row) for row in result.fetchall()]

    async def mark_as_sent(self, event_id: str) -> None:
        stmt = (
            outbox_tbl.update()
            .where(outbox_tbl.c.id == as_uuid(event_id))
            .values(status=OutboxEventStatus.SENT)
        )
        await self._session.execute(stmt)


class PaymentCancelRepository:
    class CreateDTO(BaseModel):
        order_id: str
        ext_ref: str
        invoice_id: str
        attempt_id: str | None

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _construct(row: Row | None) -> PaymentCancel:
        if row is None:
            raise DoesNotExist

        attempt_id = row._mapping["attempt_id"]
        return PaymentCancel(
            id=str(row._mapping["id"]),
            order_id=str(row._mapping["order_id"]),
            ext_ref=row._mapping["ext_ref"],
            invoice_id=row._mapping["invoice_id"],
            attempt_id=None if attempt_id is None else str(attempt_id),
            status=row._mapping["status"],
            error_code=row._mapping["error_code"],
            error_message=row._mapping["error_message"],
            psp_response=row._mapping["psp_response"],
            created_at=row._mapping["created_at"],
            updated_at=row._mapping["updated_at"],
        )

    async def create_if_absent(self, cancel: CreateDTO) -> PaymentCancel | None:
        """Insert a requested row; None means another caller owns ``ext_ref``."""
        stmt = (
            insert(payment_cancels_tbl)
            .values(
                {
                    "order_id": as_uuid(cancel.order_id),
                    "ext_ref": cancel.ext_ref,
                    "invoice_id": cancel.invoice_id,
                    "attempt_id": as_uuid(cancel.attempt_id),
                    "status": PaymentCancelStatus.REQUESTED,
                }
            )
            .on_conflict_do_nothing(index_elements=["ext_ref"])
            .returning(literal_column("*"))
        )
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def get_by_ext_ref(self, ext_ref: str) -> PaymentCancel | None:
        stmt = select(payment_cancels_tbl).where(payment_cancels_tbl.c.ext_ref == ext_ref)
        row = (await self._session.execute(stmt)).fetchone()
        return None if row is None else self._construct(row)

    async def transition(
        self,
        ext_ref: str,
        status: PaymentCancelStatus,
        *,
        from_statuses: set[PaymentCancelStatus],
        **values,
    ) -> bool:
        """Move the row to ``status`` only from one of ``from_statuses``."""
        stmt = (
            update(payment_cancels_tbl)
            .where(
                payment_cancels_tbl.c.ext_ref == ext_ref,
                payment_cancels_tbl.c.status.in_(list(from_statuses)),
            )
            .values(status=status, updated_at=func.now(), **values)
            .returning(payment_cancels_tbl.c.id)
        )
        result = await self._session.execute(stmt)
        return result.fetchone() is not None


class JobStateRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def acquire_slot(
        self, job_name: str, run_id: str, min_interval: timedelta
    ) -> bool:
        """Take the next run slot of ``job_name`` unless the interval has not passed."""
        tbl = internal_job_state_tbl
        stmt = (
            insert(tbl)
            .values(
                job_name=job_name,
                next_allowed_at=func.now() + min_interval,
                last_run_id=run_id,
                updated_at=func.now(),
            )
            .on_conflict_do_update(
                index_elements=[tbl.c.job_name],
                set_={
                    "next_allowed_at": func.now() + min_interval,
                    "last_run_id": run_id,
                    "updated_at": func.now(),
                },
                where=tbl.c.next_allowed_at <= func.now(),
            )
            .returning(tbl.c.job_name)
        )
        result = await self._session.execute(stmt)
        return result.fetchone() is not None

    async def seconds_until_allowed(self, job_name: str) -> int:
        tbl = internal_job_state_tbl
        stmt = select(
            func.greatest(
                func.ceil(func.extract("epoch", tbl.c.next_allowed_at - func.now())), 0
            )
        ).where(tbl.c.job_name == job_name)
        value = (await self._session.execute(stmt)).scalar_one_or_none()
        return int(value or 0)
