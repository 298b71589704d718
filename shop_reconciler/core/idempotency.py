import hashlib
import json

from shop_reconciler.core.models import PaymentProvider

# Stripe rejects idempotency keys longer than this.
MAX_IDEMPOTENCY_KEY_LENGTH = 255


def build_attempt_idempotency_key(
    provider: PaymentProvider, order_id: str, attempt_no: int
) -> str:
    """Key passed to the provider as its idempotency key for one attempt.

    Stripe keys are ``pi:stripe:{order}:{n}`` and Monobank keys are
    ``mono:{order}:{n}``, so the two namespaces never overlap.
    """
    if isinstance(attempt_no, bool) or not isinstance(attempt_no, int):
        raise ValueError(f"attempt_no must be an integer, got {attempt_no!r}")
    if attempt_no < 1:
        raise ValueError(f"attempt_no must be >= 1, got {attempt_no}")
    if not order_id or ":" in order_id:
        raise ValueError(f"Invalid order id for idempotency key: {order_id!r}")

    provider = PaymentProvider(provider)
    if provider == PaymentProvider.STRIPE:
        key = f"pi:stripe:{order_id}:{attempt_no}"
    elif provider == PaymentProvider.MONOBANK:
        key = f"mono:{order_id}:{attempt_no}"
    else:
        raise ValueError(f"Provider {provider} does not take payment attempts")

    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValueError("Idempotency key is too long")
    return key


def build_refund_idempotency_key(order_id: str, amount_minor: int, currency: str) -> str:
    return f"refund:{order_id}:{amount_minor}:{currency.upper()}"


def hash_idempotency_request(
    *,
    currency: str,
    user_id: str | None,
    payment_provider: str,
    items: dict[str, int],
) -> str:
    canonical = {
        "v": 1,
        "currency": currency.upper(),
        "userId": user_id,
        "paymentProvider": str(payment_provider),
        "items": [
            {"productId": product_id, "quantity": quantity}
            for product_id, quantity in sorted(items.items())
        ],
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def sha256_hex(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()
