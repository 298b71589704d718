import logging

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from shop_reconciler.core.errors import (
    ErrorCode,
    InvalidPayloadError,
    OrderNotFoundError,
    OrderStateInvalidError,
    PaymentAttemptsExhaustedError,
    PriceConfigError,
    PspUnavailableError,
)
from shop_reconciler.core.idempotency import build_attempt_idempotency_key
from shop_reconciler.core.models import (
    Order,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentProvider,
    PaymentStatus,
)
from shop_reconciler.core.payment_state import OPEN_PAYMENT_STATUSES
from shop_reconciler.core.webhook_payloads import UAH_NUMERIC_CODE
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.repositories import (
    DoesNotExist,
    PaymentAttemptRepository,
)
from shop_reconciler.infrastructure.stripe_gateway import StripeGateway
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class PaymentSession(BaseModel):
    order_id: str
    attempt_id: str
    attempt_number: int
    provider: PaymentProvider
    payment_intent_id: str | None
    client_secret: str | None = None
    page_url: str | None = None
    reused: bool = False


def _session_from_metadata(order: Order, attempt: PaymentAttempt) -> PaymentSession:
    checkout = order.psp_metadata.get("checkout") or {}
    return PaymentSession(
        order_id=order.id,
        attempt_id=attempt.id,
        attempt_number=attempt.attempt_number,
        provider=attempt.provider,
        payment_intent_id=attempt.provider_payment_intent_id,
        client_secret=checkout.get("client_secret"),
        page_url=checkout.get("page_url"),
        reused=True,
    )


class StartPaymentAttemptUseCase:
    """Open (or reuse) the single active PSP attempt of an order.

    The attempt row is committed before the provider is called and the result
    is recorded in a second transaction, so no DB lock is held across network
    I/O. The provider sees the attempt's idempotency key, which makes a retry
    of the same attempt safe.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        stripe_gateway: StripeGateway,
        monobank_gateway: MonobankGateway,
        max_attempts: int = 3,
        monobank_destination: str = "Order payment",
        monobank_redirect_url: str | None = None,
        monobank_webhook_url: str | None = None,
    ):
        self._unit_of_work = unit_of_work
        self._stripe_gateway = stripe_gateway
        self._monobank_gateway = monobank_gateway
        self._max_attempts = int(max_attempts)
        self._monobank_destination = monobank_destination
        self._monobank_redirect_url = monobank_redirect_url or None
        self._monobank_webhook_url = monobank_webhook_url or None

    async def _open_attempt(self, order_id: str) -> tuple[Order, PaymentAttempt, bool]:
        async with self._unit_of_work() as uow:
            try:
                order = await uow.orders.get_by_id(order_id, for_update=True)
            except DoesNotExist:
                raise OrderNotFoundError(order_id=order_id) from None

            if order.payment_provider == PaymentProvider.NONE:
                raise InvalidPayloadError(
                    "Order does not take online payment", order_id=order.id
                )
            if order.payment_status not in OPEN_PAYMENT_STATUSES:
                raise OrderStateInvalidError(
                    "Order is not awaiting payment",
                    order_id=order.id,
                    field="payment_status",
                    raw_value=str(order.payment_status),
                )

            active = await uow.payment_attempts.get_active(
                order.id, order.payment_provider
            )
            if active is not None:
                return order, active, True

            attempt_number = (
                await uow.payment_attempts.latest_attempt_number(
                    order.id, order.payment_provider
                )
                + 1
            )
            if attempt_number > self._max_attempts:
                raise PaymentAttemptsExhaustedError(
                    order_id=order.id, max_attempts=self._max_attempts
                )

            attempt = await uow.payment_attempts.create(
                PaymentAttemptRepository.CreateDTO(
                    order_id=order.id,
                    provider=order.payment_provider,
                    attempt_number=attempt_number,
                    idempotency_key=build_attempt_idempotency_key(
                        order.payment_provider, order.id, attempt_number
                    ),
                    expected_amount_minor=order.total_amount_minor,
                    currency=order.currency,
                )
            )
            await uow.commit()
            return order, attempt, False

    async def _load_winner(self, order_id: str) -> tuple[Order, PaymentAttempt]:
        async with self._unit_of_work() as uow:
            order = await uow.orders.get_by_id(order_id)
            active = await uow.payment_attempts.get_active(
                order.id, order.payment_provider
            )
            if active is None:
                raise OrderStateInvalidError(
                    "Concurrent payment attempt disappeared", order_id=order.id
                )
            return order, active

    async def _call_provider(self, order: Order, attempt: PaymentAttempt) -> PaymentSession:
        if attempt.provider == PaymentProvider.STRIPE:
            intent = await self._stripe_gateway.create_payment_intent(
                amount_minor=attempt.expected_amount_minor,
                currency=attempt.currency,
                order_id=order.id,
                attempt_id=attempt.id,
                idempotency_key=attempt.idempotency_key,
            )
            return PaymentSession(
                order_id=order.id,
                attempt_id=attempt.id,
                attempt_number=attempt.attempt_number,
                provider=attempt.provider,
                payment_intent_id=intent.payment_intent_id,
                client_secret=intent.client_secret,
            )

        if attempt.currency != "UAH":
            raise PriceConfigError(
                "Monobank accepts UAH only", order_id=order.id, currency=attempt.currency
            )
        invoice = await self._monobank_gateway.create_invoice(
            amount_minor=attempt.expected_amount_minor,
            ccy=UAH_NUMERIC_CODE,
            reference=attempt.id,
            destination=self._monobank_destination,
            redirect_url=self._monobank_redirect_url,
            webhook_url=self._monobank_webhook_url,
        )
        return PaymentSession(
            order_id=order.id,
            attempt_id=attempt.id,
            attempt_number=attempt.attempt_number,
            provider=attempt.provider,
            payment_intent_id=invoice.invoice_id,
            page_url=invoice.page_url,
        )

    async def _record_failure(self, attempt: PaymentAttempt, error: Exception) -> None:
        async with self._unit_of_work() as uow:
            await uow.payment_attempts.finalize(
                attempt.id,
                PaymentAttemptStatus.FAILED,
                error_code=ErrorCode.PSP_UNAVAILABLE,
                error_message=str(error)[:500],
            )
            await uow.commit()

    async def _record_session(self, order: Order, session: PaymentSession) -> None:
        checkout = {
            "attempt_id": session.attempt_id,
            "client_secret": session.client_secret,
            "page_url": session.page_url,
        }
        async with self._unit_of_work() as uow:
            current = await uow.orders.get_by_id(order.id, for_update=True)
            await uow.payment_attempts.update(
                session.attempt_id, provider_payment_intent_id=session.payment_intent_id
            )
            await uow.orders.update_fields(
                order.id,
                payment_intent_id=session.payment_intent_id,
                psp_metadata={**current.psp_metadata, "checkout": checkout},
            )
            # A webhook may already have settled the order; that is not an error.
            await uow.orders.guarded_payment_status_update(
                order.id, order.payment_provider, PaymentStatus.REQUIRES_PAYMENT
            )
            await uow.commit()

    async def __call__(self, order_id: str) -> PaymentSession:
        try:
            order, attempt, reused = await self._open_attempt(order_id)
        except IntegrityError:
            order, attempt = await self._load_winner(order_id)
            reused = True

        if reused and attempt.provider_payment_intent_id:
            return _session_from_metadata(order, attempt)

        try:
            session = await self._call_provider(order, attempt)
        except (PspUnavailableError, PriceConfigError) as e:
            await self._record_failure(attempt, e)
            log_event(
                logger,
                logging.WARNING,
                "payment_attempt_failed",
                order_id=order.id,
                attempt_id=attempt.id,
                provider=attempt.provider,
                error_code=e.code,
            )
            raise

        await self._record_session(order, session)
        log_event(
            logger,
            logging.INFO,
            "payment_attempt_started",
            order_id=order.id,
            attempt_id=attempt.id,
            attempt_number=attempt.attempt_number,
            provider=attempt.provider,
        )
        return session
