from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    MONEY_VALUE_INVALID = "MONEY_VALUE_INVALID"
    ORDER_STATE_INVALID = "ORDER_STATE_INVALID"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRICE_CONFIG_ERROR = "PRICE_CONFIG_ERROR"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    PAYMENT_ATTEMPTS_EXHAUSTED = "PAYMENT_ATTEMPTS_EXHAUSTED"
    PSP_UNAVAILABLE = "PSP_UNAVAILABLE"
    REFUND_DISABLED = "REFUND_DISABLED"
    REFUND_NOT_ALLOWED = "REFUND_NOT_ALLOWED"
    ADMIN_API_DISABLED = "ADMIN_API_DISABLED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CSRF_REJECTED = "CSRF_REJECTED"
    ORIGIN_BLOCKED = "ORIGIN_BLOCKED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    RATE_LIMITED = "RATE_LIMITED"
    WEBHOOK_DISABLED = "WEBHOOK_DISABLED"
    JANITOR_DISABLED = "JANITOR_DISABLED"
    WEBHOOK_MODE_NOT_STORE = "WEBHOOK_MODE_NOT_STORE"
    CANCEL_DISABLED = "CANCEL_DISABLED"
    CANCEL_NOT_ALLOWED = "CANCEL_NOT_ALLOWED"
    CANCEL_IN_PROGRESS = "CANCEL_IN_PROGRESS"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DomainError(Exception):
    """Base for every error that is allowed to cross a route boundary.

    ``code`` is the discriminant the boundary switches on; ``details`` is
    merged into the JSON error body.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class MoneyValueError(DomainError):
    code = ErrorCode.MONEY_VALUE_INVALID
    default_message = "Stored money value is invalid"

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str,
        raw_value: Any,
        entity_id: str | None = None,
    ):
        super().__init__(
            message, field=field, raw_value=repr(raw_value), entity_id=entity_id
        )
        self.field = field
        self.raw_value = raw_value
        self.entity_id = entity_id


class OrderStateInvalidError(DomainError):
    code = ErrorCode.ORDER_STATE_INVALID
    default_message = "Order is not in a state that allows this operation"


class OrderNotFoundError(DomainError):
    code = ErrorCode.ORDER_NOT_FOUND
    default_message = "Order not found"


class InvalidPayloadError(DomainError):
    code = ErrorCode.INVALID_PAYLOAD
    default_message = "Invalid payload"


class InsufficientStockError(DomainError):
    code = ErrorCode.INSUFFICIENT_STOCK
    default_message = "Insufficient stock"


class PriceConfigError(DomainError):
    code = ErrorCode.PRICE_CONFIG_ERROR
    default_message = "Product price is not configured for this currency"


class IdempotencyConflictError(DomainError):
    code = ErrorCode.IDEMPOTENCY_CONFLICT
    default_message = "Idempotency key was already used with a different payload"


class PaymentAttemptsExhaustedError(DomainError):
    code = ErrorCode.PAYMENT_ATTEMPTS_EXHAUSTED
    default_message = "Payment attempts exhausted for this order"


class PspUnavailableError(DomainError):
    code = ErrorCode.PSP_UNAVAILABLE
    default_message = "Payment provider is unavailable"


class RefundDisabledError(DomainError):
    code = ErrorCode.REFUND_DISABLED
    default_message = "Refunds are disabled."


class RefundNotAllowedError(DomainError):
    code = ErrorCode.REFUND_NOT_ALLOWED
    default_message = "Order cannot be refunded"


class AdminApiDisabledError(DomainError):
    code = ErrorCode.ADMIN_API_DISABLED
    default_message = "Admin API is disabled"


class UnauthorizedError(DomainError):
    code = ErrorCode.UNAUTHORIZED
    default_message = "Unauthorized"


class ForbiddenError(DomainError):
    code = ErrorCode.FORBIDDEN
    default_message = "Forbidden"


class CsrfRejectedError(DomainError):
    code = ErrorCode.CSRF_REJECTED
    default_message = "CSRF token rejected"


class OriginBlockedError(DomainError):
    code = ErrorCode.ORIGIN_BLOCKED
    default_message = "Browser context is not allowed for this endpoint."


class InvalidSignatureError(DomainError):
    code = ErrorCode.INVALID_SIGNATURE
    default_message = "Invalid signature"


class RateLimitedError(DomainError):
    code = ErrorCode.RATE_LIMITED
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int, **details):
        super().__init__(message, retry_after=retry_after, **details)
        self.retry_after = retry_after


class WebhookDisabledError(DomainError):
    code = ErrorCode.WEBHOOK_DISABLED
    default_message = "Webhook endpoint is not configured"


class JanitorDisabledError(DomainError):
    code = ErrorCode.JANITOR_DISABLED
    default_message = "Janitor endpoint is disabled"


class WebhookModeNotStoreError(DomainError):
    code = ErrorCode.WEBHOOK_MODE_NOT_STORE
    default_message = "Stored events are replayed only while the webhook mode is store"


class CancelDisabledError(DomainError):
    code = ErrorCode.CANCEL_DISABLED
    default_message = "Payment cancellation is disabled."


class CancelNotAllowedError(DomainError):
    code = ErrorCode.CANCEL_NOT_ALLOWED
    default_message = "Payment cannot be canceled"


class CancelInProgressError(DomainError):
    code = ErrorCode.CANCEL_IN_PROGRESS
    default_message = "Payment cancellation is already in progress"
