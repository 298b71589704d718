import logging

from pydantic import BaseModel, Field

from shop_reconciler.core.errors import (
    IdempotencyConflictError,
    InsufficientStockError,
    InvalidPayloadError,
    PriceConfigError,
)
from shop_reconciler.core.idempotency import hash_idempotency_request
from shop_reconciler.core.inventory import ensure_sufficient_stock, merge_requested_items
from shop_reconciler.core.models import (
    EventTypeEnum,
    InventoryStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    Product,
)
from shop_reconciler.core.money import (
    calculate_line_total,
    sum_line_totals,
    to_minor_units,
)
from shop_reconciler.application.restock import order_event_payload
from shop_reconciler.infrastructure.repositories import (
    DoesNotExist,
    OrderRepository,
    OutboxRepository,
)
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 128


class CheckoutItemDTO(BaseModel):
    product_id: str
    quantity: int = Field(gt=0, le=1000)


class CheckoutDTO(BaseModel):
    user_id: str | None = None
    currency: str = Field(min_length=3, max_length=3)
    payment_provider: PaymentProvider
    items: list[CheckoutItemDTO] = Field(min_length=1)


class CheckoutResult(BaseModel):
    order: Order
    created: bool


def _price_lines(
    requested: dict[str, int], products: dict[str, Product], currency: str
) -> list[OrderItem]:
    lines = []
    for product_id, quantity in requested.items():
        product = products[product_id]
        if not product.is_active:
            raise InvalidPayloadError("Product is not available", product_id=product_id)
        if product.currency.upper() != currency:
            raise PriceConfigError(product_id=product_id, currency=currency)

        unit_price_minor = to_minor_units(
            product.price, field="products.price", entity_id=product_id
        )
        lines.append(
            OrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_price_minor=unit_price_minor,
                line_total_minor=calculate_line_total(unit_price_minor, quantity),
            )
        )
    return lines


class CreateOrderUseCase:
    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    @staticmethod
    def _replay(existing: Order, request_hash: str) -> CheckoutResult:
        if existing.idempotency_request_hash != request_hash:
            raise IdempotencyConflictError(order_id=existing.id)
        return CheckoutResult(order=existing, created=False)

    async def __call__(self, idempotency_key: str, checkout: CheckoutDTO) -> CheckoutResult:
        idempotency_key = (idempotency_key or "").strip()
        if not idempotency_key or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidPayloadError("Idempotency-Key header is missing or too long")

        currency = checkout.currency.upper()
        requested = merge_requested_items(
            (item.product_id, item.quantity) for item in checkout.items
        )
        request_hash = hash_idempotency_request(
            currency=currency,
            user_id=checkout.user_id,
            payment_provider=checkout.payment_provider,
            items=requested,
        )

        async with self._unit_of_work() as uow:
            try:
                existing = await uow.orders.get_by_idempotency_key(idempotency_key)
            except DoesNotExist:
                existing = None
            if existing is not None:
                return self._replay(existing, request_hash)

            products = await uow.inventory.lock_products(list(requested))
            ensure_sufficient_stock(
                requested, {pid: product.stock for pid, product in products.items()}
            )
            lines = _price_lines(requested, products, currency)

            order = await uow.orders.create_if_absent(
                OrderRepository.CreateDTO(
                    user_id=checkout.user_id,
                    currency=currency,
                    payment_provider=checkout.payment_provider,
                    total_amount_minor=sum_line_totals(
                        [line.line_total_minor for line in lines]
                    ),
                    items=lines,
                    idempotency_key=idempotency_key,
                    idempotency_request_hash=request_hash,
                )
            )
            if order is None:
                # Lost a race on the same key; the winner has committed by now.
                existing = await uow.orders.get_by_idempotency_key(idempotency_key)
                return self._replay(existing, request_hash)

            for product_id, quantity in requested.items():
                if not await uow.inventory.reserve(order.id, product_id, quantity):
                    raise InsufficientStockError(
                        product_id=product_id,
                        requested=quantity,
                        available=products[product_id].stock,
                    )
            await uow.orders.update_fields(
                order.id, inventory_status=InventoryStatus.RESERVED
            )

            if checkout.payment_provider == PaymentProvider.NONE:
                await uow.orders.guarded_payment_status_update(
                    order.id,
                    PaymentProvider.NONE,
                    PaymentStatus.PAID,
                    status=OrderStatus.PAID,
                    inventory_status=InventoryStatus.RELEASED,
                )
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.ORDER_PAID,
                        payload=order_event_payload(order.id, "checkout"),
                    )
                )

            order = await uow.orders.get_by_id(order.id)
            await uow.commit()

        log_event(
            logger,
            logging.INFO,
            "order_created",
            order_id=order.id,
            payment_provider=order.payment_provider,
            total_amount_minor=order.total_amount_minor,
            currency=order.currency,
        )
        return CheckoutResult(order=order, created=True)
