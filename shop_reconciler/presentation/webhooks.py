import json

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Header, Request

from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.ingest_webhook import (
    IngestResult,
    IngestWebhookEventUseCase,
)
from shop_reconciler.core.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    RateLimitedError,
)
from shop_reconciler.core.models import PaymentProvider
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.rate_limiter import (
    RateLimitScope,
    WebhookRateLimiter,
)
from shop_reconciler.infrastructure.stripe_gateway import StripeGateway
from shop_reconciler.presentation.guards import client_identifier, guard_non_browser

router = APIRouter(prefix="/webhooks", dependencies=[Depends(guard_non_browser)])


async def _reject_signature(
    rate_limiter: WebhookRateLimiter,
    provider: PaymentProvider,
    scope: RateLimitScope,
    client_id: str,
    message: str,
) -> None:
    decision = await rate_limiter.hit(provider, scope, client_id)
    if not decision.allowed:
        raise RateLimitedError(retry_after=decision.retry_after, scope=str(scope))
    raise InvalidSignatureError(message)


def _response(result: IngestResult) -> dict:
    return {
        "ok": True,
        "result": result.result if result.result is not None else "queued",
        "event_id": result.event_id,
    }


@router.post("/monobank")
@inject
async def monobank_webhook(
    request: Request,
    x_sign: str | None = Header(default=None),
    client_id: str = Depends(client_identifier),
    monobank_gateway: MonobankGateway = Depends(
        Provide[ApplicationContainer.infrastructure_container.monobank_gateway]
    ),
    rate_limiter: WebhookRateLimiter = Depends(
        Provide[ApplicationContainer.infrastructure_container.webhook_rate_limiter]
    ),
    ingest_webhook_event_use_case: IngestWebhookEventUseCase = Depends(
        Provide[ApplicationContainer.ingest_webhook_event_use_case]
    ),
):
    if not x_sign:
        await _reject_signature(
            rate_limiter,
            PaymentProvider.MONOBANK,
            RateLimitScope.MISSING_SIGNATURE,
            client_id,
            "Missing X-Sign header",
        )

    body = await request.body()
    if not await monobank_gateway.verify_webhook_signature(body, x_sign):
        await _reject_signature(
            rate_limiter,
            PaymentProvider.MONOBANK,
            RateLimitScope.INVALID_SIGNATURE,
            client_id,
            "Invalid X-Sign signature",
        )

    try:
        payload = json.loads(body)
    except ValueError:
        raise InvalidPayloadError("Webhook body is not valid JSON") from None

    result = await ingest_webhook_event_use_case(PaymentProvider.MONOBANK, body, payload)
    return _response(result)


@router.post("/stripe")
@inject
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    client_id: str = Depends(client_identifier),
    stripe_gateway: StripeGateway = Depends(
        Provide[ApplicationContainer.infrastructure_container.stripe_gateway]
    ),
    rate_limiter: WebhookRateLimiter = Depends(
        Provide[ApplicationContainer.infrastructure_container.webhook_rate_limiter]
    ),
    ingest_webhook_event_use_case: IngestWebhookEventUseCase = Depends(
        Provide[ApplicationContainer.ingest_webhook_event_use_case]
    ),
):
    if not stripe_signature:
        await _reject_signature(
            rate_limiter,
            PaymentProvider.STRIPE,
            RateLimitScope.MISSING_SIGNATURE,
            client_id,
            "Missing Stripe-Signature header",
        )

    body = await request.body()
    try:
        payload = stripe_gateway.verify_webhook(body, stripe_signature)
    except InvalidSignatureError:
        await _reject_signature(
            rate_limiter,
            PaymentProvider.STRIPE,
            RateLimitScope.INVALID_SIGNATURE,
            client_id,
            "Invalid Stripe-Signature",
        )

    result = await ingest_webhook_event_use_case(PaymentProvider.STRIPE, body, payload)
    return _response(result)
