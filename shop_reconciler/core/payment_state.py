from enum import StrEnum

from shop_reconciler.core.models import PaymentProvider, PaymentStatus


class TransitionRejection(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_MISMATCH = "PROVIDER_MISMATCH"
    ALREADY_IN_STATE = "ALREADY_IN_STATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BLOCKED = "BLOCKED"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
)
OPEN_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT}
)

_PSP_ALLOWED_FROM: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.REQUIRES_PAYMENT}),
    PaymentStatus.REQUIRES_PAYMENT: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.PAID: OPEN_PAYMENT_STATUSES,
    PaymentStatus.FAILED: OPEN_PAYMENT_STATUSES,
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.NEEDS_REVIEW: OPEN_PAYMENT_STATUSES
    | {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED},
}

_NO_PAYMENT_ALLOWED_FROM: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PAID: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
}


def allowed_from(
    provider: PaymentProvider, target: PaymentStatus
) -> frozenset[PaymentStatus]:
    if provider == PaymentProvider.NONE:
        return _NO_PAYMENT_ALLOWED_FROM.get(target, frozenset())
    return _PSP_ALLOWED_FROM[target]


def check_transition(
    provider: PaymentProvider,
    current: PaymentStatus,
    target: PaymentStatus,
) -> TransitionRejection | None:
    """Return why ``current -> target`` is rejected, or None when allowed."""
    if current == target:
        return TransitionRejection.ALREADY_IN_STATE
    if current in allowed_from(provider, target):
        return None
    if current == PaymentStatus.NEEDS_REVIEW:
        return TransitionRejection.BLOCKED
    return TransitionRejection.INVALID_TRANSITION
