import logging

from pydantic import BaseModel

from shop_reconciler.core.errors import OrderNotFoundError, OrderStateInvalidError
from shop_reconciler.core.models import (
    EventTypeEnum,
    InventoryMoveType,
    InventoryStatus,
    OrderStatus,
    PaymentStatus,
    ReleaseOutcome,
    RestockReason,
)
from shop_reconciler.infrastructure.repositories import DoesNotExist, OutboxRepository
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

STALE_ORPHAN = "STALE_ORPHAN"
STALE_ORPHAN_MESSAGE = "Orphan order: no inventory reservation was recorded."
STALE_PENDING = "STALE_PENDING"
STALE_PENDING_MESSAGE = "Payment was not completed before the checkout timeout."

_STATUS_AFTER_RESTOCK = {
    RestockReason.FAILED: OrderStatus.INVENTORY_FAILED,
    RestockReason.STALE: OrderStatus.INVENTORY_FAILED,
    RestockReason.CANCELED: OrderStatus.CANCELED,
    RestockReason.REFUNDED: None,
}

OUTBOX_EVENT_BY_REASON = {
    RestockReason.FAILED: EventTypeEnum.ORDER_INVENTORY_FAILED,
    RestockReason.STALE: EventTypeEnum.ORDER_INVENTORY_FAILED,
    RestockReason.CANCELED: EventTypeEnum.ORDER_CANCELED,
    RestockReason.REFUNDED: EventTypeEnum.ORDER_REFUNDED,
}


class RestockOutcome(BaseModel):
    order_id: str
    restocked: bool
    orphan: bool = False
    released_lines: int = 0


def order_event_payload(order_id: str, source: str, **extra) -> dict:
    return {"order_id": order_id, "source": source, **extra}


async def restock_order(uow, order_id: str, reason: RestockReason) -> RestockOutcome:
    """Release an order's reserved stock exactly once, inside the caller's transaction.

    The order row is locked first and ``stock_restored`` is flipped with a
    guarded update before any stock moves, so concurrent callers serialize on
    the row and every caller after the first gets a no-op.
    """
    try:
        order = await uow.orders.get_by_id(order_id, for_update=True)
    except DoesNotExist:
        raise OrderNotFoundError(order_id=order_id) from None

    if order.stock_restored:
        return RestockOutcome(order_id=order.id, restocked=False)

    if order.payment_status == PaymentStatus.PAID and reason != RestockReason.REFUNDED:
        raise OrderStateInvalidError(
            "Paid order can only be restocked by a refund",
            order_id=order.id,
            field="payment_status",
            raw_value=str(order.payment_status),
            reason=str(reason),
        )

    if not await uow.orders.mark_stock_restored_once(order.id):
        return RestockOutcome(order_id=order.id, restocked=False)

    reserve_moves = await uow.inventory.list_moves(order.id, InventoryMoveType.RESERVE)
    released = 0
    for move in reserve_moves:
        outcome = await uow.inventory.apply_release_move(
            order.id, move.product_id, move.quantity
        )
        if outcome == ReleaseOutcome.APPLIED:
            released += 1

    orphan = not reserve_moves
    values: dict = {"inventory_status": InventoryStatus.RELEASED}
    status = _STATUS_AFTER_RESTOCK[reason]
    if status is not None:
        values["status"] = status

    if reason == RestockReason.STALE:
        default_code, default_message = (
            (STALE_ORPHAN, STALE_ORPHAN_MESSAGE)
            if orphan
            else (STALE_PENDING, STALE_PENDING_MESSAGE)
        )
        values["failure_code"] = order.failure_code or default_code
        values["failure_message"] = order.failure_message or default_message

    await uow.orders.update_fields(order.id, **values)

    if reason == RestockReason.STALE:
        await uow.orders.guarded_payment_status_update(
            order.id, order.payment_provider, PaymentStatus.FAILED
        )

    log_event(
        logger,
        logging.WARNING if orphan else logging.INFO,
        "stale_orphan_restocked" if orphan else "order_restocked",
        order_id=order.id,
        reason=reason,
        released_lines=released,
        payment_provider=order.payment_provider,
    )
    return RestockOutcome(
        order_id=order.id, restocked=True, orphan=orphan, released_lines=released
    )


class RestockOrderUseCase:
    def __init__(self, unit_of_work: UnitOfWork):
        self._unit_of_work = unit_of_work

    async def __call__(self, order_id: str, reason: RestockReason) -> RestockOutcome:
        async with self._unit_of_work() as uow:
            outcome = await restock_order(uow, order_id, reason)
            if outcome.restocked:
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=OUTBOX_EVENT_BY_REASON[reason],
                        payload=order_event_payload(
                            order_id, "restock", reason=str(reason), orphan=outcome.orphan
                        ),
                    )
                )
            await uow.commit()
            return outcome
