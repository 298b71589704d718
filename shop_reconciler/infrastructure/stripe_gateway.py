import asyncio
import json
import logging

import stripe
from pydantic import BaseModel

from shop_reconciler.core.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    PspUnavailableError,
    WebhookDisabledError,
)
from shop_reconciler.infrastructure.structured_log import log_event

logger = logging.getLogger(__name__)


class PaymentIntentResult(BaseModel):
    payment_intent_id: str
    client_secret: str | None
    status: str


class RefundResult(BaseModel):
    refund_id: str
    status: str
    amount_minor: int


class StripeGateway:
    def __init__(self, secret_key: str | None, webhook_secret: str | None):
        self._secret_key = secret_key or None
        self._webhook_secret = webhook_secret or None

    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """Verify ``Stripe-Signature`` and return the decoded event body."""
        if not self._webhook_secret:
            raise WebhookDisabledError("Stripe webhook secret is not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidSignatureError() from None
        except ValueError:
            raise InvalidPayloadError("Stripe webhook body is not valid JSON") from None

        return json.loads(payload)

    def _require_secret_key(self) -> str:
        if not self._secret_key:
            raise PspUnavailableError("Stripe is not configured")
        return self._secret_key

    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        order_id: str,
        attempt_id: str,
        idempotency_key: str,
    ) -> PaymentIntentResult:
        api_key = self._require_secret_key()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=api_key,
                amount=amount_minor,
                currency=currency.lower(),
                metadata={"orderId": order_id, "attemptId": attempt_id},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            log_event(
                logger,
                logging.ERROR,
                "stripe_payment_intent_failed",
                order_id=order_id,
                error=str(e),
            )
            raise PspUnavailableError(
                "Stripe payment intent could not be created"
            ) from e

        return PaymentIntentResult(
            payment_intent_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=intent.status,
        )

    async def create_refund(
        self, *, payment_intent_id: str, amount_minor: int, idempotency_key: str
    ) -> RefundResult:
        api_key = self._require_secret_key()
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=api_key,
                payment_intent=payment_intent_id,
                amount=amount_minor,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            log_event(
                logger,
                logging.ERROR,
                "stripe_refund_failed",
                payment_intent_id=payment_intent_id,
                error=str(e),
            )
            raise PspUnavailableError("Stripe refund could not be created") from e

        return RefundResult(
            refund_id=refund.id, status=refund.status, amount_minor=refund.amount
        )
