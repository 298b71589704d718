import logging

from pydantic import BaseModel

from shop_reconciler.application.restock import order_event_payload, restock_order
from shop_reconciler.core.errors import (
    OrderNotFoundError,
    RefundDisabledError,
    RefundNotAllowedError,
)
from shop_reconciler.core.idempotency import build_refund_idempotency_key
from shop_reconciler.core.models import (
    EventTypeEnum,
    Order,
    PaymentProvider,
    PaymentStatus,
    RestockReason,
)
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.repositories import DoesNotExist, OutboxRepository
from shop_reconciler.infrastructure.stripe_gateway import StripeGateway
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

_COMPLETED_REFUND_STATUSES = frozenset({"succeeded", "success"})


class RefundOutcome(BaseModel):
    order: Order
    refund_id: str | None = None
    refund_status: str
    completed: bool


class RefundOrderUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        stripe_gateway: StripeGateway,
        monobank_gateway: MonobankGateway,
        refund_enabled: dict[str, bool] | None = None,
    ):
        self._unit_of_work = unit_of_work
        self._stripe_gateway = stripe_gateway
        self._monobank_gateway = monobank_gateway
        self._refund_enabled = {
            PaymentProvider(provider): bool(enabled)
            for provider, enabled in (refund_enabled or {}).items()
        }

    async def _load_refundable(self, order_id: str) -> Order:
        async with self._unit_of_work() as uow:
            try:
                order = await uow.orders.get_by_id(order_id)
            except DoesNotExist:
                raise OrderNotFoundError(order_id=order_id) from None

        if order.payment_provider == PaymentProvider.NONE:
            raise RefundNotAllowedError(
                "Order was not paid through a provider", order_id=order.id
            )
        if not self._refund_enabled.get(order.payment_provider, False):
            raise RefundDisabledError(provider=str(order.payment_provider))
        return order

    async def _issue(self, order: Order, idempotency_key: str) -> tuple[str | None, str]:
        if order.payment_provider == PaymentProvider.STRIPE:
            refund = await self._stripe_gateway.create_refund(
                payment_intent_id=order.payment_intent_id,
                amount_minor=order.total_amount_minor,
                idempotency_key=idempotency_key,
            )
            return refund.refund_id, refund.status

        canceled = await self._monobank_gateway.cancel_invoice(
            invoice_id=order.payment_intent_id,
            ext_ref=idempotency_key,
            amount_minor=order.total_amount_minor,
        )
        return None, canceled.status

    async def __call__(self, order_id: str) -> RefundOutcome:
        order = await self._load_refundable(order_id)
        if order.payment_status == PaymentStatus.REFUNDED:
            return RefundOutcome(order=order, refund_status="refunded", completed=True)
        if order.payment_status != PaymentStatus.PAID or not order.payment_intent_id:
            raise RefundNotAllowedError(
                order_id=order.id, payment_status=str(order.payment_status)
            )

        idempotency_key = build_refund_idempotency_key(
            order.id, order.total_amount_minor, order.currency
        )
        refund_id, refund_status = await self._issue(order, idempotency_key)
        completed = refund_status in _COMPLETED_REFUND_STATUSES

        async with self._unit_of_work() as uow:
            current = await uow.orders.get_by_id(order.id, for_update=True)
            refunds = list(current.psp_metadata.get("refunds") or [])
            if not any(r.get("idempotency_key") == idempotency_key for r in refunds):
                refunds.append(
                    {
                        "idempotency_key": idempotency_key,
                        "refund_id": refund_id,
                        "status": refund_status,
                        "amount_minor": order.total_amount_minor,
                        "currency": order.currency,
                    }
                )
            await uow.orders.update_fields(
                order.id, psp_metadata={**current.psp_metadata, "refunds": refunds}
            )

            if completed:
                update = await uow.orders.guarded_payment_status_update(
                    order.id, order.payment_provider, PaymentStatus.REFUNDED
                )
                if update.applied:
                    await restock_order(uow, order.id, RestockReason.REFUNDED)
                    await uow.outbox.create(
                        OutboxRepository.CreateDTO(
                            event_type=EventTypeEnum.ORDER_REFUNDED,
                            payload=order_event_payload(
                                order.id, "admin_refund", refund_id=refund_id
                            ),
                        )
                    )

            refreshed = await uow.orders.get_by_id(order.id)
            await uow.commit()

        log_event(
            logger,
            logging.INFO,
            "order_refund_requested",
            order_id=order.id,
            provider=order.payment_provider,
            refund_status=refund_status,
            completed=completed,
        )
        return RefundOutcome(
            order=refreshed,
            refund_id=refund_id,
            refund_status=refund_status,
            completed=completed,
        )
