import hashlib
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from shop_reconciler.core.errors import InvalidPayloadError
from shop_reconciler.core.models import PaymentProvider

# ISO 4217 numeric code Monobank sends for hryvnia.
UAH_NUMERIC_CODE = 980

_MONOBANK_TIME_FIELDS = (
    "modifiedDate",
    "modifiedAt",
    "updatedAt",
    "createdDate",
    "createdAt",
    "time",
    "timestamp",
)
# Epoch numbers below this are seconds, above are milliseconds.
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000


class NormalizedEvent(BaseModel):
    provider: PaymentProvider
    event_key: str
    invoice_id: str | None
    status: str
    amount: int | None = None
    ccy: int | None = None
    currency: str | None = None
    reference: str | None = None
    provider_modified_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_provider_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value if value < _EPOCH_MILLIS_THRESHOLD else value / 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return parse_provider_time(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None


def monobank_event_key(invoice_id: str, status: str, amount: int | None, ccy: int | None) -> str:
    signature = f"{invoice_id}|{status}|{amount}|{ccy}"
    return "mono:" + hashlib.sha256(signature.encode("utf-8")).hexdigest()


def normalize_monobank_payload(raw: Any) -> NormalizedEvent:
    if not isinstance(raw, dict):
        raise InvalidPayloadError("Monobank payload must be a JSON object")

    invoice_id = _as_text(raw.get("invoiceId"))
    status = _as_text(raw.get("status"))
    if invoice_id is None or status is None:
        raise InvalidPayloadError(
            "Monobank payload is missing invoiceId or status",
            has_invoice_id=invoice_id is not None,
            has_status=status is not None,
        )
    status = status.lower()

    amount = _as_int(raw.get("amount"))
    ccy = _as_int(raw.get("ccy"))

    provider_modified_at = None
    for field in _MONOBANK_TIME_FIELDS:
        provider_modified_at = parse_provider_time(raw.get(field))
        if provider_modified_at is not None:
            break

    return NormalizedEvent(
        provider=PaymentProvider.MONOBANK,
        event_key=monobank_event_key(invoice_id, status, amount, ccy),
        invoice_id=invoice_id,
        status=status,
        amount=amount,
        ccy=ccy,
        currency="UAH" if ccy == UAH_NUMERIC_CODE else None,
        reference=_as_text(raw.get("reference")),
        provider_modified_at=provider_modified_at,
        extra={"failure_reason": _as_text(raw.get("failureReason"))},
    )


def normalize_stripe_event(event: Any) -> NormalizedEvent:
    if not isinstance(event, dict):
        raise InvalidPayloadError("Stripe event must be a JSON object")

    event_id = _as_text(event.get("id"))
    event_type = _as_text(event.get("type"))
    data_object = (event.get("data") or {}).get("object")
    if event_id is None or event_type is None or not isinstance(data_object, dict):
        raise InvalidPayloadError("Stripe event is missing id, type or data.object")

    metadata = data_object.get("metadata") or {}
    extra: dict[str, Any] = {}

    if event_type.startswith("charge."):
        invoice_id = _as_text(data_object.get("payment_intent"))
        amount = _as_int(data_object.get("amount"))
        extra["charge_id"] = _as_text(data_object.get("id"))
        extra["amount_refunded"] = _as_int(data_object.get("amount_refunded"))
        extra["refunded"] = bool(data_object.get("refunded"))
    else:
        invoice_id = _as_text(data_object.get("id"))
        amount = _as_int(data_object.get("amount_received"))
        if not amount:
            amount = _as_int(data_object.get("amount"))
        extra["charge_id"] = _as_text(data_object.get("latest_charge"))
        last_error = data_object.get("last_payment_error") or {}
        extra["failure_reason"] = _as_text(last_error.get("code"))

    currency = _as_text(data_object.get("currency"))

    return NormalizedEvent(
        provider=PaymentProvider.STRIPE,
        event_key=f"stripe:{event_id}",
        invoice_id=invoice_id,
        status=event_type,
        amount=amount,
        currency=currency.upper() if currency else None,
        reference=_as_text(metadata.get("orderId")),
        provider_modified_at=parse_provider_time(event.get("created")),
        extra=extra,
    )
