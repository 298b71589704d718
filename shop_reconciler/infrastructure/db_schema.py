import uuid

from sqlalchemy import (
    JSON,
    NUMERIC,
    UUID,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
    text,
)

metadata = MetaData()

products_tbl = Table(
    "products",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("title", Text, nullable=False),
    # Null price is reported as a money error at checkout.
    Column("price", NUMERIC(12, 2), nullable=True),
    Column("currency", Text, nullable=False),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="true"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

orders_tbl = Table(
    "orders",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("user_id", Text, nullable=True),
    Column("total_amount_minor", Integer, nullable=False),
    Column("total_amount", NUMERIC(12, 2), nullable=False),
    Column("currency", Text, nullable=False),
    Column("payment_provider", Text, nullable=False),
    Column("payment_status", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("inventory_status", Text, nullable=False),
    Column("payment_intent_id", Text, nullable=True),
    Column("psp_metadata", JSON, nullable=False, server_default=text("'{}'")),
    Column("failure_code", Text, nullable=True),
    Column("failure_message", Text, nullable=True),
    Column("stock_restored", Boolean, nullable=False, server_default="false"),
    Column("restocked_at", DateTime(timezone=True), nullable=True),
    Column("idempotency_key", Text, nullable=False, unique=True),
    Column("idempotency_request_hash", Text, nullable=False),
    Column("sweep_claimed_at", DateTime(timezone=True), nullable=True),
    Column("sweep_claim_expires_at", DateTime(timezone=True), nullable=True),
    Column("sweep_run_id", Text, nullable=True),
    Column("sweep_claimed_by", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    CheckConstraint("total_amount_minor >= 0", name="orders_total_minor_non_negative"),
    CheckConstraint(
        "total_amount * 100 = total_amount_minor", name="orders_total_mirror_matches"
    ),
    Index(
        "orders_stale_sweep_idx",
        "status",
        "payment_status",
        "updated_at",
    ),
)

order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_id", UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False),
    Column("product_id", UUID(as_uuid=True), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price_minor", Integer, nullable=False),
    Column("line_total_minor", Integer, nullable=False),
)

inventory_moves_tbl = Table(
    "inventory_moves",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_id", UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False),
    Column("product_id", UUID(as_uuid=True), ForeignKey("products.id"), nullable=False),
    Column("type", Text, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("move_key", Text, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("inventory_moves_order_idx", "order_id"),
)

payment_attempts_tbl = Table(
    "payment_attempts",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_id", UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("attempt_number", Integer, nullable=False),
    Column("status", Text, nullable=False),
    Column("idempotency_key", Text, nullable=False, unique=True),
    Column("provider_payment_intent_id", Text, nullable=True),
    Column("expected_amount_minor", Integer, nullable=False),
    Column("currency", Text, nullable=False),
    Column("provider_modified_at", DateTime(timezone=True), nullable=True),
    Column("last_error_code", Text, nullable=True),
    Column("last_error_message", Text, nullable=True),
    Column("finalized_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    Index(
        "payment_attempts_one_active_idx",
        "order_id",
        "provider",
        unique=True,
        postgresql_where=text("status = 'active'"),
    ),
    Index(
        "payment_attempts_order_provider_no_idx",
        "order_id",
        "provider",
        "attempt_number",
        unique=True,
    ),
    Index("payment_attempts_intent_idx", "provider_payment_intent_id"),
)

provider_events_tbl = Table(
    "provider_events",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("provider", Text, nullable=False),
    Column("event_key", Text, nullable=False, unique=True),
    Column("invoice_id", Text, nullable=True),
    Column("status", Text, nullable=False),
    Column("amount", Integer, nullable=True),
    Column("ccy", Integer, nullable=True),
    Column("reference", Text, nullable=True),
    Column("raw_payload", JSON, nullable=False),
    Column("normalized_payload", JSON, nullable=False),
    Column("raw_sha256", Text, nullable=False, unique=True),
    Column("provider_modified_at", DateTime(timezone=True), nullable=True),
    Column("received_at", DateTime(timezone=True), server_default=func.now()),
    Column("claimed_at", DateTime(timezone=True), nullable=True),
    Column("claim_expires_at", DateTime(timezone=True), nullable=True),
    Column("claimed_by", Text, nullable=True),
    Column("apply_attempts", Integer, nullable=False, server_default="0"),
    Column("applied_at", DateTime(timezone=True), nullable=True),
    Column("applied_result", Text, nullable=True),
    Column("applied_error_code", Text, nullable=True),
    Column("applied_error_message", Text, nullable=True),
    Index(
        "provider_events_claimable_idx",
        "provider_modified_at",
        "received_at",
        postgresql_where=text("applied_at IS NULL"),
    ),
)

outbox_tbl = Table(
    "outbox",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("event_type", Text, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)

payment_cancels_tbl = Table(
    "payment_cancels",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True, default=uuid.uuid4),
    Column("order_id", UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False),
    Column("ext_ref", Text, nullable=False, unique=True),
    Column("invoice_id", Text, nullable=False),
    Column("attempt_id", UUID(as_uuid=True), nullable=True),
    Column("status", Text, nullable=False),
    Column("error_code", Text, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("psp_response", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

internal_job_state_tbl = Table(
    "internal_job_state",
    metadata,
    Column("job_name", Text, primary_key=True),
    Column("next_allowed_at", DateTime(timezone=True), nullable=False),
    Column("last_run_id", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)
