"""Pure transition decisions for provider events.

Each ``decide_*`` function looks only at the current order and attempt state
plus the normalized event and returns a :class:`Decision`. Nothing here
touches the database; the apply use case executes the decision under the
order row lock, so every rule below is evaluated against fresh state.
"""

from pydantic import BaseModel

from shop_reconciler.core.models import (
    AppliedResult,
    EventTypeEnum,
    InventoryStatus,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentAttemptStatus,
    PaymentStatus,
    RestockReason,
)
from shop_reconciler.core.payment_state import OPEN_PAYMENT_STATUSES
from shop_reconciler.core.webhook_payloads import UAH_NUMERIC_CODE, NormalizedEvent

MONOBANK_SUCCESS = "success"
MONOBANK_PENDING_STATUSES = frozenset({"processing", "created", "hold"})
MONOBANK_FAILURE_STATUSES = frozenset({"failure", "expired"})
MONOBANK_REVERSED = "reversed"

STRIPE_SUCCEEDED = "payment_intent.succeeded"
STRIPE_PAYMENT_FAILED = "payment_intent.payment_failed"
STRIPE_CANCELED = "payment_intent.canceled"
STRIPE_CHARGE_REFUNDED = "charge.refunded"
STRIPE_PENDING_EVENTS = frozenset(
    {
        "payment_intent.created",
        "payment_intent.processing",
        "payment_intent.requires_action",
    }
)


class Decision(BaseModel):
    applied_result: AppliedResult
    error_code: str | None = None
    error_message: str | None = None
    target_payment_status: PaymentStatus | None = None
    order_status: OrderStatus | None = None
    inventory_status: InventoryStatus | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    attempt_status: PaymentAttemptStatus | None = None
    attempt_error_code: str | None = None
    restock_reason: RestockReason | None = None
    outbox_event: EventTypeEnum | None = None

    @property
    def mutates_order(self) -> bool:
        return self.target_payment_status is not None


def _noop(error_code: str | None = None, message: str | None = None) -> Decision:
    return Decision(
        applied_result=AppliedResult.APPLIED_NOOP,
        error_code=error_code,
        error_message=message,
    )


def _paid() -> Decision:
    return Decision(
        applied_result=AppliedResult.APPLIED,
        target_payment_status=PaymentStatus.PAID,
        order_status=OrderStatus.PAID,
        inventory_status=InventoryStatus.RELEASED,
        attempt_status=PaymentAttemptStatus.SUCCEEDED,
        outbox_event=EventTypeEnum.ORDER_PAID,
    )


def _failed(
    reason: RestockReason,
    failure_code: str,
    failure_message: str,
    attempt_status: PaymentAttemptStatus,
) -> Decision:
    outbox_event = (
        EventTypeEnum.ORDER_CANCELED
        if reason == RestockReason.CANCELED
        else EventTypeEnum.ORDER_INVENTORY_FAILED
    )
    return Decision(
        applied_result=AppliedResult.APPLIED,
        target_payment_status=PaymentStatus.FAILED,
        failure_code=failure_code,
        failure_message=failure_message,
        attempt_status=attempt_status,
        attempt_error_code=failure_code,
        restock_reason=reason,
        outbox_event=outbox_event,
    )


def _refunded(attempt_status: PaymentAttemptStatus | None) -> Decision:
    return Decision(
        applied_result=AppliedResult.APPLIED,
        target_payment_status=PaymentStatus.REFUNDED,
        attempt_status=attempt_status,
        restock_reason=RestockReason.REFUNDED,
        outbox_event=EventTypeEnum.ORDER_REFUNDED,
    )


def _needs_review(
    failure_code: str,
    failure_message: str,
    attempt_status: PaymentAttemptStatus | None = None,
    attempt_error_code: str | None = None,
) -> Decision:
    return Decision(
        applied_result=AppliedResult.APPLIED_WITH_ISSUE,
        error_code=failure_code,
        error_message=failure_message,
        target_payment_status=PaymentStatus.NEEDS_REVIEW,
        failure_code=failure_code,
        failure_message=failure_message,
        attempt_status=attempt_status,
        attempt_error_code=attempt_error_code,
        outbox_event=EventTypeEnum.ORDER_NEEDS_REVIEW,
    )


def _monobank_amount_matches(
    order: Order, attempt: PaymentAttempt, event: NormalizedEvent
) -> bool:
    return (
        order.currency.upper() == "UAH"
        and event.ccy == UAH_NUMERIC_CODE
        and event.amount == attempt.expected_amount_minor
    )


def decide_monobank_transition(
    order: Order, attempt: PaymentAttempt, event: NormalizedEvent
) -> Decision:
    status = event.status
    current = order.payment_status

    if (
        event.provider_modified_at is not None
        and attempt.provider_modified_at is not None
        and event.provider_modified_at <= attempt.provider_modified_at
    ):
        return _noop("OUT_OF_ORDER", "Event is older than the last applied one")

    if (
        status == MONOBANK_SUCCESS
        and current != PaymentStatus.PAID
        and not _monobank_amount_matches(order, attempt, event)
    ):
        return _needs_review(
            "MONO_AMOUNT_MISMATCH",
            "Paid amount or currency does not match the payment attempt",
            attempt_status=PaymentAttemptStatus.FAILED,
            attempt_error_code="AMOUNT_MISMATCH",
        )

    if current == PaymentStatus.PAID and (
        status == MONOBANK_SUCCESS or status in MONOBANK_PENDING_STATUSES
    ):
        return _noop()

    if current == PaymentStatus.NEEDS_REVIEW:
        return _noop("ORDER_NEEDS_REVIEW")

    if status == MONOBANK_SUCCESS:
        if current in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            return _needs_review(
                "MONO_OUT_OF_ORDER",
                f"Success reported for an order that is already {current}",
            )
        return _paid()

    if status in MONOBANK_PENDING_STATUSES:
        return _noop()

    if status in MONOBANK_FAILURE_STATUSES:
        if current not in OPEN_PAYMENT_STATUSES:
            return _noop("LATE_FAILURE_IGNORED")
        failure_reason = event.extra.get("failure_reason")
        return _failed(
            RestockReason.FAILED,
            failure_code=f"PAYMENT_{status.upper()}",
            failure_message=failure_reason or f"Monobank reported invoice {status}",
            attempt_status=PaymentAttemptStatus.FAILED,
        )

    if status == MONOBANK_REVERSED:
        if current != PaymentStatus.PAID:
            return _noop("REVERSAL_ON_UNPAID_ORDER")
        return _refunded(PaymentAttemptStatus.CANCELED)

    return _noop("UNKNOWN_STATUS", f"Unknown Monobank status {status!r}")


def _stripe_amount_matches(order: Order, event: NormalizedEvent) -> bool:
    return (
        event.amount == order.total_amount_minor
        and (event.currency or "").upper() == order.currency.upper()
    )


def decide_stripe_transition(order: Order, event: NormalizedEvent) -> Decision:
    event_type = event.status
    current = order.payment_status

    if event_type == STRIPE_SUCCEEDED:
        if current == PaymentStatus.PAID:
            return _noop()
        if current == PaymentStatus.NEEDS_REVIEW:
            return _noop("ORDER_NEEDS_REVIEW")
        if not _stripe_amount_matches(order, event):
            return _needs_review(
                "STRIPE_AMOUNT_MISMATCH",
                "Received amount or currency does not match the order",
                attempt_status=PaymentAttemptStatus.FAILED,
                attempt_error_code="AMOUNT_MISMATCH",
            )
        if current in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            return _needs_review(
                "STRIPE_OUT_OF_ORDER",
                f"Success reported for an order that is already {current}",
            )
        return _paid()

    if event_type in (STRIPE_PAYMENT_FAILED, STRIPE_CANCELED):
        if current not in OPEN_PAYMENT_STATUSES:
            return _noop("LATE_FAILURE_IGNORED")
        if event_type == STRIPE_CANCELED:
            return _failed(
                RestockReason.CANCELED,
                failure_code="PAYMENT_CANCELED",
                failure_message="Payment intent was canceled",
                attempt_status=PaymentAttemptStatus.CANCELED,
            )
        return _failed(
            RestockReason.FAILED,
            failure_code="PAYMENT_FAILED",
            failure_message=event.extra.get("failure_reason") or "Payment failed",
            attempt_status=PaymentAttemptStatus.FAILED,
        )

    if event_type == STRIPE_CHARGE_REFUNDED:
        if current == PaymentStatus.REFUNDED:
            return _noop()
        if current != PaymentStatus.PAID:
            return _noop("REFUND_ON_UNPAID_ORDER")
        amount_refunded = event.extra.get("amount_refunded") or 0
        if not event.extra.get("refunded") and amount_refunded < order.total_amount_minor:
            return _noop("PARTIAL_REFUND")
        return _refunded(None)

    if event_type in STRIPE_PENDING_EVENTS:
        return _noop()

    return Decision(
        applied_result=AppliedResult.IGNORED,
        error_code="UNSUPPORTED_EVENT",
        error_message=f"Stripe event {event_type} is not handled",
    )
