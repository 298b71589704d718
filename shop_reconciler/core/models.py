from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class PaymentProvider(StrEnum):
    STRIPE = "stripe"
    MONOBANK = "monobank"
    NONE = "none"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    REQUIRES_PAYMENT = "requires_payment"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    NEEDS_REVIEW = "needs_review"


class OrderStatus(StrEnum):
    CREATED = "CREATED"
    PAID = "PAID"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    CANCELED = "CANCELED"


class InventoryStatus(StrEnum):
    NONE = "none"
    RESERVED = "reserved"
    RELEASED = "released"


class InventoryMoveType(StrEnum):
    RESERVE = "reserve"
    RELEASE = "release"


class ReleaseOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY = "already"
    NO_RESERVE = "no_reserve"


class RestockReason(StrEnum):
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    STALE = "stale"


class PaymentAttemptStatus(StrEnum):
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class WebhookMode(StrEnum):
    APPLY = "apply"
    STORE = "store"
    DROP = "drop"


class AppliedResult(StrEnum):
    APPLIED = "applied"
    APPLIED_NOOP = "applied_noop"
    APPLIED_WITH_ISSUE = "applied_with_issue"
    DEDUPED = "deduped"
    IGNORED = "ignored"
    STORED = "stored"
    DROPPED = "dropped"
    FAILED = "failed"


class Product(BaseModel):
    id: str
    title: str
    price: Decimal | None
    currency: str
    stock: int
    is_active: bool


class OrderItem(BaseModel):
    product_id: str
    quantity: int
    unit_price_minor: int
    line_total_minor: int


class Order(BaseModel):
    id: str
    user_id: str | None
    total_amount_minor: int
    total_amount: Decimal
    currency: str
    payment_provider: PaymentProvider
    payment_status: PaymentStatus
    status: OrderStatus
    inventory_status: InventoryStatus
    payment_intent_id: str | None = None
    psp_metadata: dict = Field(default_factory=dict)
    failure_code: str | None = None
    failure_message: str | None = None
    stock_restored: bool = False
    restocked_at: datetime | None = None
    idempotency_key: str
    idempotency_request_hash: str
    items: list[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class InventoryMove(BaseModel):
    id: str
    order_id: str
    product_id: str
    type: InventoryMoveType
    quantity: int
    move_key: str
    created_at: datetime


class PaymentAttempt(BaseModel):
    id: str
    order_id: str
    provider: PaymentProvider
    attempt_number: int
    status: PaymentAttemptStatus
    idempotency_key: str
    provider_payment_intent_id: str | None = None
    expected_amount_minor: int
    currency: str
    provider_modified_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    finalized_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ProviderEvent(BaseModel):
    id: str
    provider: PaymentProvider
    event_key: str
    invoice_id: str | None
    status: str
    amount: int | None = None
    ccy: int | None = None
    reference: str | None = None
    raw_payload: dict
    normalized_payload: dict
    raw_sha256: str
    provider_modified_at: datetime | None = None
    received_at: datetime
    claimed_at: datetime | None = None
    claim_expires_at: datetime | None = None
    claimed_by: str | None = None
    apply_attempts: int = 0
    applied_at: datetime | None = None
    applied_result: AppliedResult | None = None
    applied_error_code: str | None = None
    applied_error_message: str | None = None


class EventTypeEnum(StrEnum):
    ORDER_PAID = "ORDER.PAID"
    ORDER_INVENTORY_FAILED = "ORDER.INVENTORY_FAILED"
    ORDER_CANCELED = "ORDER.CANCELED"
    ORDER_REFUNDED = "ORDER.REFUNDED"
    ORDER_NEEDS_REVIEW = "ORDER.NEEDS_REVIEW"


class OutboxEventStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"


class OutboxEvent(BaseModel):
    id: str
    event_type: EventTypeEnum
    payload: dict
    status: OutboxEventStatus
    created_at: datetime


class PaymentCancelStatus(StrEnum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"


class PaymentCancel(BaseModel):
    id: str
    order_id: str
    ext_ref: str
    invoice_id: str
    attempt_id: str | None = None
    status: PaymentCancelStatus
    error_code: str | None = None
    error_message: str | None = None
    psp_response: dict | None = None
    created_at: datetime
    updated_at: datetime
