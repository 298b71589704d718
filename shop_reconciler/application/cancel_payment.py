import asyncio
import logging
from enum import StrEnum

from pydantic import BaseModel

from shop_reconciler.application.restock import order_event_payload, restock_order
from shop_reconciler.core.errors import (
    CancelDisabledError,
    CancelInProgressError,
    CancelNotAllowedError,
    ErrorCode,
    OrderNotFoundError,
    PspUnavailableError,
)
from shop_reconciler.core.models import (
    EventTypeEnum,
    InventoryStatus,
    Order,
    OrderStatus,
    PaymentAttemptStatus,
    PaymentCancel,
    PaymentCancelStatus,
    PaymentProvider,
    PaymentStatus,
    RestockReason,
)
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.repositories import (
    DoesNotExist,
    OutboxRepository,
    PaymentCancelRepository,
)
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

PAYMENT_CANCELED = "PAYMENT_CANCELED"
PAYMENT_CANCELED_MESSAGE = "Payment was canceled by an administrator."
REQUESTED_POLL_ATTEMPTS = 5
REQUESTED_POLL_DELAY_SECONDS = 0.075


class CancelNotAllowedReason(StrEnum):
    PROVIDER_NOT_MONOBANK = "provider_not_monobank"
    ALREADY_PAID = "already_paid"
    MISSING_PROVIDER_REF = "missing_provider_ref"


class CancelOutcome(BaseModel):
    order: Order
    cancel_id: str | None
    ext_ref: str
    status: PaymentCancelStatus
    deduped: bool


def cancel_ext_ref(order_id: str) -> str:
    return f"mono_cancel:{order_id}"


def _is_paid_like(order: Order) -> bool:
    return (
        order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED)
        or order.status == OrderStatus.PAID
    )


def _is_final_canceled(order: Order) -> bool:
    return (
        order.status == OrderStatus.CANCELED
        and order.inventory_status == InventoryStatus.RELEASED
        and order.stock_restored
    )


class CancelMonobankPaymentUseCase:
    """Invalidate the Monobank invoice of an unpaid order and cancel the order.

    One row per order in ``payment_cancels`` elects a single caller to talk to
    Monobank. The provider call runs outside any transaction; the row moves
    ``requested -> processing -> success`` (or ``failure``) around it, and a
    ``processing`` row is finalized by whoever sees it next.
    """

    def __init__(self, unit_of_work: UnitOfWork, monobank_gateway: MonobankGateway):
        self._unit_of_work = unit_of_work
        self._monobank_gateway = monobank_gateway

    async def _load_order(self, order_id: str) -> Order:
        async with self._unit_of_work() as uow:
            try:
                return await uow.orders.get_by_id(order_id)
            except DoesNotExist:
                raise OrderNotFoundError(order_id=order_id) from None

    async def _resolve_invoice(self, order: Order) -> tuple[str | None, str | None]:
        """Return ``(invoice_id, attempt_id)``; the order's own reference wins."""
        async with self._unit_of_work() as uow:
            attempt = await uow.payment_attempts.get_active(
                order.id, PaymentProvider.MONOBANK
            )
        attempt_id = attempt.id if attempt is not None else None
        direct = (order.payment_intent_id or "").strip()
        if direct:
            return direct, attempt_id
        if attempt is not None and (attempt.provider_payment_intent_id or "").strip():
            return attempt.provider_payment_intent_id.strip(), attempt_id
        return None, attempt_id

    async def _get_cancel(self, ext_ref: str) -> PaymentCancel | None:
        async with self._unit_of_work() as uow:
            return await uow.payment_cancels.get_by_ext_ref(ext_ref)

    async def _outcome(
        self, order_id: str, cancel: PaymentCancel | None, ext_ref: str, deduped: bool
    ) -> CancelOutcome:
        return CancelOutcome(
            order=await self._load_order(order_id),
            cancel_id=cancel.id if cancel is not None else None,
            ext_ref=ext_ref,
            status=cancel.status if cancel is not None else PaymentCancelStatus.SUCCESS,
            deduped=deduped,
        )

    async def _wait_for_requested(self, ext_ref: str) -> PaymentCancel | None:
        cancel = await self._get_cancel(ext_ref)
        for _ in range(REQUESTED_POLL_ATTEMPTS):
            if cancel is None or cancel.status != PaymentCancelStatus.REQUESTED:
                break
            await asyncio.sleep(REQUESTED_POLL_DELAY_SECONDS)
            cancel = await self._get_cancel(ext_ref)
        return cancel

    async def _finalize(self, order_id: str, cancel: PaymentCancel) -> None:
        async with self._unit_of_work() as uow:
            try:
                order = await uow.orders.get_by_id(order_id, for_update=True)
            except DoesNotExist:
                raise OrderNotFoundError(order_id=order_id) from None

            await uow.orders.guarded_payment_status_update(
                order.id,
                order.payment_provider,
                PaymentStatus.FAILED,
                failure_code=PAYMENT_CANCELED,
                failure_message=PAYMENT_CANCELED_MESSAGE,
            )
            outcome = await restock_order(uow, order.id, RestockReason.CANCELED)
            if cancel.attempt_id is not None:
                await uow.payment_attempts.finalize(
                    cancel.attempt_id,
                    PaymentAttemptStatus.CANCELED,
                    error_code=PAYMENT_CANCELED,
                    error_message=PAYMENT_CANCELED_MESSAGE,
                )
            if outcome.restocked:
                await uow.outbox.create(
                    OutboxRepository.CreateDTO(
                        event_type=EventTypeEnum.ORDER_CANCELED,
                        payload=order_event_payload(
                            order.id, "admin_cancel_payment", ext_ref=cancel.ext_ref
                        ),
                    )
                )
            await uow.payment_cancels.transition(
                cancel.ext_ref,
                PaymentCancelStatus.SUCCESS,
                from_statuses={PaymentCancelStatus.PROCESSING},
            )
            await uow.commit()

    async def _finalize_processing(
        self, order_id: str, cancel: PaymentCancel, deduped: bool = True
    ) -> CancelOutcome:
        try:
            await self._finalize(order_id, cancel)
        except Exception:
            log_event(
                logger,
                logging.ERROR,
                "cancel_payment_finalize_failed",
                order_id=order_id,
                ext_ref=cancel.ext_ref,
                exc_info=True,
            )
            raise
        return await self._outcome(
            order_id, await self._get_cancel(cancel.ext_ref), cancel.ext_ref, deduped
        )

    async def _follow(self, order_id: str, ext_ref: str) -> PaymentCancel | CancelOutcome:
        """Handle a cancel row owned by someone else.

        Returns the row when this caller took over a failed cancel, else the
        outcome to hand back.
        """
        current = await self._get_cancel(ext_ref)
        if current is None:
            raise PspUnavailableError("Cancel idempotency state unavailable", order_id=order_id)

        if current.status == PaymentCancelStatus.REQUESTED:
            current = await self._wait_for_requested(ext_ref)
            if current is None or current.status == PaymentCancelStatus.REQUESTED:
                raise CancelInProgressError(order_id=order_id)

        if current.status == PaymentCancelStatus.SUCCESS:
            return await self._outcome(order_id, current, ext_ref, True)
        if current.status == PaymentCancelStatus.PROCESSING:
            return await self._finalize_processing(order_id, current)

        async with self._unit_of_work() as uow:
            retried = await uow.payment_cancels.transition(
                ext_ref,
                PaymentCancelStatus.REQUESTED,
                from_statuses={PaymentCancelStatus.FAILURE},
                error_code=None,
                error_message=None,
            )
            await uow.commit()
        after = await self._get_cancel(ext_ref)
        if after is None:
            raise PspUnavailableError("Cancel state missing after retry", order_id=order_id)
        if retried:
            return after
        if after.status == PaymentCancelStatus.PROCESSING:
            return await self._finalize_processing(order_id, after)
        return await self._outcome(order_id, after, ext_ref, True)

    async def _remove_invoice(self, order_id: str, cancel: PaymentCancel) -> dict:
        try:
            return await self._monobank_gateway.remove_invoice(invoice_id=cancel.invoice_id)
        except PspUnavailableError as e:
            async with self._unit_of_work() as uow:
                await uow.payment_cancels.transition(
                    cancel.ext_ref,
                    PaymentCancelStatus.FAILURE,
                    from_statuses={PaymentCancelStatus.REQUESTED},
                    error_code=str(ErrorCode.PSP_UNAVAILABLE),
                    error_message=e.message[:500],
                )
                await uow.commit()
            log_event(
                logger,
                logging.WARNING,
                "cancel_payment_psp_unavailable",
                order_id=order_id,
                ext_ref=cancel.ext_ref,
                invoice_id=cancel.invoice_id,
            )
            raise

    async def __call__(self, order_id: str) -> CancelOutcome:
        if not self._monobank_gateway.configured:
            raise CancelDisabledError()

        order = await self._load_order(order_id)
        if order.payment_provider != PaymentProvider.MONOBANK:
            raise CancelNotAllowedError(
                "Cancel payment is supported only for Monobank orders",
                order_id=order.id,
                reason=str(CancelNotAllowedReason.PROVIDER_NOT_MONOBANK),
            )
        if _is_paid_like(order):
            raise CancelNotAllowedError(
                "Order is already paid or refunded",
                order_id=order.id,
                reason=str(CancelNotAllowedReason.ALREADY_PAID),
            )

        ext_ref = cancel_ext_ref(order.id)
        if _is_final_canceled(order):
            return await self._outcome(order.id, await self._get_cancel(ext_ref), ext_ref, True)

        invoice_id, attempt_id = await self._resolve_invoice(order)
        if invoice_id is None:
            raise CancelNotAllowedError(
                "Order has no Monobank invoice to cancel",
                order_id=order.id,
                reason=str(CancelNotAllowedReason.MISSING_PROVIDER_REF),
            )

        async with self._unit_of_work() as uow:
            cancel = await uow.payment_cancels.create_if_absent(
                PaymentCancelRepository.CreateDTO(
                    order_id=order.id,
                    ext_ref=ext_ref,
                    invoice_id=invoice_id,
                    attempt_id=attempt_id,
                )
            )
            await uow.commit()

        if cancel is None:
            followed = await self._follow(order.id, ext_ref)
            if isinstance(followed, CancelOutcome):
                return followed
            cancel = followed

        psp_response = await self._remove_invoice(order.id, cancel)

        async with self._unit_of_work() as uow:
            await uow.payment_cancels.transition(
                ext_ref,
                PaymentCancelStatus.PROCESSING,
                from_statuses={PaymentCancelStatus.REQUESTED},
                psp_response=psp_response,
            )
            await uow.commit()
        cancel = cancel.model_copy(update={"status": PaymentCancelStatus.PROCESSING})

        outcome = await self._finalize_processing(order.id, cancel, deduped=False)
        log_event(
            logger,
            logging.INFO,
            "cancel_payment_succeeded",
            order_id=order.id,
            ext_ref=ext_ref,
            invoice_id=cancel.invoice_id,
        )
        return outcome
