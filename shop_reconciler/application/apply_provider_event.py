import logging
from collections import Counter
from datetime import timedelta
from enum import StrEnum

from pydantic import BaseModel

from shop_reconciler.application.restock import order_event_payload, restock_order
from shop_reconciler.core.errors import DomainError, ErrorCode
from shop_reconciler.core.models import (
    AppliedResult,
    Order,
    PaymentAttempt,
    PaymentProvider,
    ProviderEvent,
    WebhookMode,
)
from shop_reconciler.core.reconciliation import (
    Decision,
    decide_monobank_transition,
    decide_stripe_transition,
)
from shop_reconciler.core.webhook_payloads import NormalizedEvent
from shop_reconciler.infrastructure.event_queue import DEFAULT_CLAIM_TTL
from shop_reconciler.infrastructure.repositories import DoesNotExist, OutboxRepository
from shop_reconciler.infrastructure.structured_log import log_event
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
MAX_ERROR_MESSAGE_LENGTH = 500


class FailureDisposition(StrEnum):
    PERMANENT = "permanent"
    RETRYABLE = "retryable"


# Data or business-state faults; the event is closed as failed.
PERMANENT_ERROR_CODES = frozenset(
    {
        ErrorCode.INVALID_PAYLOAD,
        ErrorCode.ORDER_STATE_INVALID,
        ErrorCode.MONEY_VALUE_INVALID,
        ErrorCode.ORDER_NOT_FOUND,
    }
)


def classify_apply_error(error: Exception) -> FailureDisposition:
    if isinstance(error, DomainError) and error.code in PERMANENT_ERROR_CODES:
        return FailureDisposition.PERMANENT
    return FailureDisposition.RETRYABLE


def _error_code(error: Exception) -> str:
    if isinstance(error, DomainError):
        return str(error.code)
    return type(error).__name__


def _parse_webhook_modes(raw: dict[str, str]) -> dict[PaymentProvider, WebhookMode]:
    modes = {}
    for provider, mode in raw.items():
        try:
            parsed = WebhookMode(str(mode).strip().lower())
        except ValueError:
            log_event(
                logger,
                logging.WARNING,
                "webhook_mode_invalid",
                provider=provider,
                mode=mode,
                fallback=WebhookMode.APPLY,
            )
            parsed = WebhookMode.APPLY
        modes[PaymentProvider(provider)] = parsed
    return modes


class EventOutcome(BaseModel):
    event_id: str
    result: AppliedResult | None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False


class ApplyProviderEventUseCase:
    """Apply one claimed provider event to its order.

    The order row is locked before the decision is made, so the decision
    always sees the state it is about to change. The webhook mode is checked
    after deciding and before executing anything.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        webhook_modes: dict[str, str] | None = None,
        max_apply_attempts: int = 5,
    ):
        self._unit_of_work = unit_of_work
        self._webhook_modes = _parse_webhook_modes(webhook_modes or {})
        self._max_apply_attempts = int(max_apply_attempts)

    def mode_for(self, provider: PaymentProvider) -> WebhookMode:
        return self._webhook_modes.get(provider, WebhookMode.APPLY)

    async def _correlate(
        self, uow, event: NormalizedEvent
    ) -> tuple[Order | None, PaymentAttempt | None]:
        attempt_reference = (
            event.reference if event.provider == PaymentProvider.MONOBANK else None
        )
        attempt = await uow.payment_attempts.find_for_event(
            event.provider, event.invoice_id, attempt_reference
        )

        order_id = attempt.order_id if attempt is not None else None
        if order_id is None and event.provider == PaymentProvider.STRIPE and event.reference:
            order_id = event.reference
        if order_id is None and event.invoice_id:
            by_intent = await uow.orders.find_by_payment_intent(event.invoice_id)
            order_id = by_intent.id if by_intent is not None else None
        if order_id is None:
            return None, attempt

        try:
            order = await uow.orders.get_by_id(order_id, for_update=True)
        except DoesNotExist:
            return None, attempt
        if order.payment_provider != event.provider:
            return None, attempt

        # Re-read under the order lock.
        if attempt is not None:
            attempt = await uow.payment_attempts.get_by_id(attempt.id)
        return order, attempt

    @staticmethod
    def _decide(
        order: Order, attempt: PaymentAttempt | None, event: NormalizedEvent
    ) -> Decision:
        if event.provider == PaymentProvider.MONOBANK:
            return decide_monobank_transition(order, attempt, event)
        return decide_stripe_transition(order, event)

    async def _execute(
        self,
        uow,
        provider_event: ProviderEvent,
        order: Order,
        attempt: PaymentAttempt | None,
        event: NormalizedEvent,
        decision: Decision,
    ) -> Decision:
        if decision.mutates_order:
            values = {}
            if decision.order_status is not None:
                values["status"] = decision.order_status
            if decision.inventory_status is not None:
                values["inventory_status"] = decision.inventory_status
            if decision.failure_code is not None:
                values["failure_code"] = decision.failure_code
                values["failure_message"] = decision.failure_message
            update = await uow.orders.guarded_payment_status_update(
                order.id,
                order.payment_provider,
                decision.target_payment_status,
                **values,
            )
            if not update.applied:
                return Decision(
                    applied_result=AppliedResult.APPLIED_NOOP,
                    error_code=str(update.rejection),
                    error_message=(
                        f"Transition {update.previous_status} -> "
                        f"{decision.target_payment_status} was rejected"
                    ),
                )

        if attempt is not None:
            if decision.attempt_status is not None:
                await uow.payment_attempts.finalize(
                    attempt.id,
                    decision.attempt_status,
                    error_code=decision.attempt_error_code,
                    error_message=decision.failure_message,
                    provider_modified_at=event.provider_modified_at,
                )
            elif event.provider_modified_at is not None and (
                attempt.provider_modified_at is None
                or event.provider_modified_at > attempt.provider_modified_at
            ):
                await uow.payment_attempts.update(
                    attempt.id, provider_modified_at=event.provider_modified_at
                )

        if decision.mutates_order and decision.restock_reason is not None:
            await restock_order(uow, order.id, decision.restock_reason)

        if decision.mutates_order and decision.outbox_event is not None:
            await uow.outbox.create(
                OutboxRepository.CreateDTO(
                    event_type=decision.outbox_event,
                    payload=order_event_payload(
                        order.id,
                        f"{event.provider}_webhook",
                        event_id=provider_event.id,
                        payment_status=str(decision.target_payment_status),
                    ),
                )
            )
        return decision

    async def _apply(
        self, uow, provider_event: ProviderEvent, mode: WebhookMode | None
    ) -> Decision:
        event = NormalizedEvent.model_validate(provider_event.normalized_payload)
        order, attempt = await self._correlate(uow, event)
        if event.provider == PaymentProvider.MONOBANK and attempt is None:
            return Decision(
                applied_result=AppliedResult.IGNORED,
                error_code=ATTEMPT_NOT_FOUND,
                error_message="No payment attempt matches the Monobank invoice",
            )
        if order is None:
            return Decision(
                applied_result=AppliedResult.IGNORED,
                error_code=ORDER_NOT_FOUND,
                error_message="No order matches the provider event",
            )
        decision = self._decide(order, attempt, event)

        mode = mode or self.mode_for(event.provider)
        if mode == WebhookMode.STORE:
            return Decision(applied_result=AppliedResult.STORED)
        if mode == WebhookMode.DROP:
            return Decision(applied_result=AppliedResult.DROPPED)

        return await self._execute(uow, provider_event, order, attempt, event, decision)

    async def _record_failure(
        self, provider_event: ProviderEvent, error: Exception
    ) -> EventOutcome:
        disposition = classify_apply_error(error)
        error_code = _error_code(error)
        error_message = str(error)[:MAX_ERROR_MESSAGE_LENGTH]
        exhausted = provider_event.apply_attempts >= self._max_apply_attempts

        async with self._unit_of_work() as uow:
            if disposition == FailureDisposition.PERMANENT or exhausted:
                if disposition == FailureDisposition.RETRYABLE:
                    error_message = f"{error_code}: {error_message}"[:MAX_ERROR_MESSAGE_LENGTH]
                    error_code = RETRY_EXHAUSTED
                await uow.provider_events.mark_applied(
                    provider_event.id,
                    AppliedResult.FAILED,
                    error_code=error_code,
                    error_message=error_message,
                )
                outcome = EventOutcome(
                    event_id=provider_event.id,
                    result=AppliedResult.FAILED,
                    error_code=error_code,
                    error_message=error_message,
                )
            else:
                await uow.provider_events.record_retryable_failure(
                    provider_event.id, error_code=error_code, error_message=error_message
                )
                outcome = EventOutcome(
                    event_id=provider_event.id,
                    result=None,
                    error_code=error_code,
                    error_message=error_message,
                    retryable=True,
                )
            await uow.commit()

        log_event(
            logger,
            logging.WARNING if outcome.retryable else logging.ERROR,
            "provider_event_apply_failed",
            event_id=provider_event.id,
            provider=provider_event.provider,
            error_code=error_code,
            apply_attempts=provider_event.apply_attempts,
            retryable=outcome.retryable,
            exc_info=not isinstance(error, DomainError),
        )
        return outcome

    async def __call__(
        self, provider_event: ProviderEvent, mode: WebhookMode | None = None
    ) -> EventOutcome:
        """Apply ``provider_event``; ``mode`` overrides the configured webhook mode."""
        try:
            async with self._unit_of_work() as uow:
                decision = await self._apply(uow, provider_event, mode)
                if decision.applied_result == AppliedResult.STORED:
                    await uow.provider_events.mark_stored(provider_event.id)
                else:
                    await uow.provider_events.mark_applied(
                        provider_event.id,
                        decision.applied_result,
                        error_code=decision.error_code,
                        error_message=decision.error_message,
                    )
                await uow.commit()
        except Exception as e:
            return await self._record_failure(provider_event, e)

        log_event(
            logger,
            logging.INFO,
            "provider_event_applied",
            event_id=provider_event.id,
            provider=provider_event.provider,
            status=provider_event.status,
            result=decision.applied_result,
            error_code=decision.error_code,
        )
        return EventOutcome(
            event_id=provider_event.id,
            result=decision.applied_result,
            error_code=decision.error_code,
            error_message=decision.error_message,
        )


class DrainResult(BaseModel):
    processed: int
    results: dict[str, int]
    retryable: int


class DrainProviderEventsUseCase:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        apply_use_case: ApplyProviderEventUseCase,
        claim_ttl_seconds: int = int(DEFAULT_CLAIM_TTL.total_seconds()),
    ):
        self._unit_of_work = unit_of_work
        self._apply_use_case = apply_use_case
        self._claim_ttl = timedelta(seconds=int(claim_ttl_seconds))

    async def __call__(self, worker_id: str, max_events: int = 100) -> DrainResult:
        results: Counter[str] = Counter()
        retryable = 0
        processed = 0
        while processed < max_events:
            async with self._unit_of_work() as uow:
                event = await uow.provider_events.claim_next_event(
                    worker_id, self._claim_ttl
                )
                await uow.commit()
            if event is None:
                break

            outcome = await self._apply_use_case(event)
            processed += 1
            if outcome.retryable:
                retryable += 1
            else:
                results[str(outcome.result)] += 1

        return DrainResult(processed=processed, results=dict(results), retryable=retryable)
