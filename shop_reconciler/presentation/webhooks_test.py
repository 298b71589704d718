import json
from http import HTTPStatus
from unittest.mock import AsyncMock, Mock

import pytest
from dependency_injector import providers
from httpx import AsyncClient

from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.ingest_webhook import IngestResult
from shop_reconciler.core.errors import InvalidSignatureError, WebhookDisabledError
from shop_reconciler.core.models import AppliedResult, PaymentProvider
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.rate_limiter import (
    RateLimitDecision,
    RateLimitScope,
    WebhookRateLimiter,
)
from shop_reconciler.infrastructure.security import ClientAddressResolver
from shop_reconciler.infrastructure.stripe_gateway import StripeGateway

MONOBANK_BODY = json.dumps({"invoiceId": "inv_1", "status": "success"}).encode()
STRIPE_EVENT = {"id": "evt_1", "type": "payment_intent.succeeded"}


@pytest.fixture
def monobank_gateway(container: ApplicationContainer) -> Mock:
    gateway = Mock(spec=MonobankGateway)
    gateway.verify_webhook_signature = AsyncMock(return_value=True)
    container.infrastructure_container.monobank_gateway.override(
        providers.Object(gateway)
    )
    return gateway


@pytest.fixture
def stripe_gateway(container: ApplicationContainer) -> Mock:
    gateway = Mock(spec=StripeGateway)
    gateway.verify_webhook = Mock(return_value=STRIPE_EVENT)
    container.infrastructure_container.stripe_gateway.override(providers.Object(gateway))
    return gateway


@pytest.fixture
def rate_limiter(container: ApplicationContainer) -> Mock:
    limiter = Mock(spec=WebhookRateLimiter)
    limiter.hit = AsyncMock(return_value=RateLimitDecision(allowed=True))
    container.infrastructure_container.webhook_rate_limiter.override(
        providers.Object(limiter)
    )
    return limiter


@pytest.fixture
def ingest_use_case(container: ApplicationContainer) -> AsyncMock:
    use_case = AsyncMock(
        return_value=IngestResult(event_id="e-1", result=AppliedResult.APPLIED)
    )
    container.ingest_webhook_event_use_case.override(providers.Object(use_case))
    return use_case


class TestBrowserContextGuard:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        ["Origin", "Referer", "Sec-Fetch-Site", "Sec-Fetch-Mode", "Sec-Fetch-Dest"],
    )
    async def test_browser_headers_are_blocked_before_signature_check(
        self,
        header: str,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # When
        response = await test_async_client.post(
            "/webhooks/monobank",
            content=MONOBANK_BODY,
            headers={"X-Sign": "c2ln", header: "https://evil.example"},
        )

        # Then
        assert response.status_code == HTTPStatus.FORBIDDEN
        assert response.json()["error"]["code"] == "ORIGIN_BLOCKED"
        assert response.headers["cache-control"] == "no-store"
        assert monobank_gateway.verify_webhook_signature.await_count == 0
        assert rate_limiter.hit.await_count == 0
        ingest_use_case.assert_not_awaited()


class TestMonobankWebhook:
    @pytest.mark.asyncio
    async def test_valid_signature_is_ingested(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # When
        response = await test_async_client.post(
            "/webhooks/monobank", content=MONOBANK_BODY, headers={"X-Sign": "c2ln"}
        )

        # Then
        assert response.status_code == HTTPStatus.OK
        assert response.json() == {"ok": True, "result": "applied", "event_id": "e-1"}
        monobank_gateway.verify_webhook_signature.assert_awaited_once_with(
            MONOBANK_BODY, "c2ln"
        )
        ingest_use_case.assert_awaited_once_with(
            PaymentProvider.MONOBANK, MONOBANK_BODY, json.loads(MONOBANK_BODY)
        )

    @pytest.mark.asyncio
    async def test_missing_signature_counts_against_rate_limit(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # When
        response = await test_async_client.post(
            "/webhooks/monobank", content=MONOBANK_BODY
        )

        # Then
        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert rate_limiter.hit.await_args.args[1] == RateLimitScope.MISSING_SIGNATURE
        assert monobank_gateway.verify_webhook_signature.await_count == 0
        ingest_use_case.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_signature(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        monobank_gateway.verify_webhook_signature.return_value = False

        # When
        response = await test_async_client.post(
            "/webhooks/monobank", content=MONOBANK_BODY, headers={"X-Sign": "c2ln"}
        )

        # Then
        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert rate_limiter.hit.await_args.args[1] == RateLimitScope.INVALID_SIGNATURE
        ingest_use_case.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_sets_retry_after(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        rate_limiter.hit.return_value = RateLimitDecision(allowed=False, retry_after=17)

        # When
        response = await test_async_client.post(
            "/webhooks/monobank", content=MONOBANK_BODY
        )

        # Then
        assert response.status_code == HTTPStatus.TOO_MANY_REQUESTS
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert response.headers["retry-after"] == "17"

    @pytest.mark.asyncio
    async def test_forwarded_for_from_direct_caller_is_ignored(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # When
        for forged in ("10.0.0.1", "10.0.0.2"):
            await test_async_client.post(
                "/webhooks/monobank",
                content=MONOBANK_BODY,
                headers={"X-Forwarded-For": forged},
            )

        # Then
        keys = [call.args[2] for call in rate_limiter.hit.await_args_list]
        assert keys == ["127.0.0.1", "127.0.0.1"]

    @pytest.mark.asyncio
    async def test_forwarded_for_from_trusted_proxy_is_used(
        self,
        container: ApplicationContainer,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        container.client_address_resolver.override(
            providers.Object(ClientAddressResolver(trusted_proxies="127.0.0.1"))
        )

        # When
        await test_async_client.post(
            "/webhooks/monobank",
            content=MONOBANK_BODY,
            headers={"X-Forwarded-For": "203.0.113.9"},
        )

        # Then
        assert rate_limiter.hit.await_args.args[2] == "203.0.113.9"

    @pytest.mark.asyncio
    async def test_queued_event_still_acknowledged(
        self,
        test_async_client: AsyncClient,
        monobank_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        ingest_use_case.return_value = IngestResult(event_id="e-1", result=None)

        # When
        response = await test_async_client.post(
            "/webhooks/monobank", content=MONOBANK_BODY, headers={"X-Sign": "c2ln"}
        )

        # Then
        assert response.status_code == HTTPStatus.OK
        assert response.json()["result"] == "queued"


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_verified_event_is_ingested(
        self,
        test_async_client: AsyncClient,
        stripe_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # When
        response = await test_async_client.post(
            "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        # Then
        assert response.status_code == HTTPStatus.OK
        stripe_gateway.verify_webhook.assert_called_once_with(b"{}", "t=1,v1=x")
        ingest_use_case.assert_awaited_once_with(
            PaymentProvider.STRIPE, b"{}", STRIPE_EVENT
        )

    @pytest.mark.asyncio
    async def test_invalid_signature(
        self,
        test_async_client: AsyncClient,
        stripe_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        stripe_gateway.verify_webhook.side_effect = InvalidSignatureError()

        # When
        response = await test_async_client.post(
            "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "bad"}
        )

        # Then
        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert rate_limiter.hit.await_args.args[1] == RateLimitScope.INVALID_SIGNATURE
        ingest_use_case.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_secret_is_service_unavailable(
        self,
        test_async_client: AsyncClient,
        stripe_gateway: Mock,
        rate_limiter: Mock,
        ingest_use_case: AsyncMock,
    ):
        # Given
        stripe_gateway.verify_webhook.side_effect = WebhookDisabledError()

        # When
        response = await test_async_client.post(
            "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        # Then
        assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        assert response.json()["error"]["code"] == "WEBHOOK_DISABLED"
