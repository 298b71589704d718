import uuid
from http import HTTPStatus
from unittest.mock import AsyncMock

import pytest
from dependency_injector import providers
from httpx import AsyncClient

from shop_reconciler.application.checkout import CheckoutResult
from shop_reconciler.application.container import ApplicationContainer
from shop_reconciler.application.payment_attempts import PaymentSession
from shop_reconciler.core.errors import (
    IdempotencyConflictError,
    InsufficientStockError,
    PspUnavailableError,
)
from shop_reconciler.core.models import PaymentProvider


def _order_request() -> dict:
    return {
        "currency": "UAH",
        "payment_provider": "stripe",
        "items": [{"product_id": str(uuid.uuid4()), "quantity": 2}],
    }


@pytest.fixture
def create_order_use_case(container: ApplicationContainer) -> AsyncMock:
    use_case = AsyncMock()
    container.create_order_use_case.override(providers.Object(use_case))
    return use_case


@pytest.fixture
def start_payment_attempt_use_case(container: ApplicationContainer) -> AsyncMock:
    use_case = AsyncMock()
    container.start_payment_attempt_use_case.override(providers.Object(use_case))
    return use_case


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_new_order_returns_created(
        self, test_async_client: AsyncClient, create_order_use_case, order_model_factory
    ):
        # Given
        order = order_model_factory()
        create_order_use_case.return_value = CheckoutResult(order=order, created=True)

        # When
        response = await test_async_client.post(
            "/orders", json=_order_request(), headers={"Idempotency-Key": "key-1"}
        )

        # Then
        assert response.status_code == HTTPStatus.CREATED
        assert response.json()["id"] == order.id
        assert response.json()["total_amount_minor"] == 1234
        key, checkout = create_order_use_case.await_args.args
        assert key == "key-1"
        assert checkout.payment_provider == PaymentProvider.STRIPE

    @pytest.mark.asyncio
    async def test_replay_returns_ok(
        self, test_async_client: AsyncClient, create_order_use_case, order_model_factory
    ):
        # Given
        order = order_model_factory()
        create_order_use_case.return_value = CheckoutResult(order=order, created=False)

        # When
        response = await test_async_client.post(
            "/orders", json=_order_request(), headers={"Idempotency-Key": "key-1"}
        )

        # Then
        assert response.status_code == HTTPStatus.OK
        assert response.json()["id"] == order.id

    @pytest.mark.asyncio
    async def test_missing_idempotency_key_is_invalid_payload(
        self, test_async_client: AsyncClient, create_order_use_case
    ):
        # When
        response = await test_async_client.post("/orders", json=_order_request())

        # Then
        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error"]["code"] == "INVALID_PAYLOAD"
        create_order_use_case.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_quantity_is_invalid_payload(
        self, test_async_client: AsyncClient, create_order_use_case
    ):
        # Given
        body = _order_request()
        body["items"][0]["quantity"] = 0

        # When
        response = await test_async_client.post(
            "/orders", json=body, headers={"Idempotency-Key": "key-1"}
        )

        # Then
        assert response.status_code == HTTPStatus.BAD_REQUEST
        assert response.json()["error"]["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_conflict_with_details(
        self, test_async_client: AsyncClient, create_order_use_case
    ):
        # Given
        create_order_use_case.side_effect = InsufficientStockError(
            product_id="p-1", requested=3, available=1
        )

        # When
        response = await test_async_client.post(
            "/orders", json=_order_request(), headers={"Idempotency-Key": "key-1"}
        )

        # Then
        assert response.status_code == HTTPStatus.CONFLICT
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_STOCK"
        assert error["product_id"] == "p-1"
        assert error["requested"] == 3
        assert error["available"] == 1

    @pytest.mark.asyncio
    async def test_idempotency_conflict(
        self, test_async_client: AsyncClient, create_order_use_case
    ):
        # Given
        create_order_use_case.side_effect = IdempotencyConflictError(order_id="o-1")

        # When
        response = await test_async_client.post(
            "/orders", json=_order_request(), headers={"Idempotency-Key": "key-1"}
        )

        # Then
        assert response.status_code == HTTPStatus.CONFLICT
        assert response.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"


class TestStartPayment:
    @pytest.mark.asyncio
    async def test_returns_payment_session(
        self, test_async_client: AsyncClient, start_payment_attempt_use_case
    ):
        # Given
        start_payment_attempt_use_case.return_value = PaymentSession(
            order_id="o-1",
            attempt_id="a-1",
            attempt_number=1,
            provider=PaymentProvider.STRIPE,
            payment_intent_id="pi_123",
            client_secret="pi_123_secret",
        )

        # When
        response = await test_async_client.post("/orders/o-1/payments")

        # Then
        assert response.status_code == HTTPStatus.OK
        assert response.json()["payment_intent_id"] == "pi_123"
        start_payment_attempt_use_case.assert_awaited_once_with("o-1")

    @pytest.mark.asyncio
    async def test_psp_outage_hides_details(
        self, test_async_client: AsyncClient, start_payment_attempt_use_case
    ):
        # Given
        start_payment_attempt_use_case.side_effect = PspUnavailableError(
            order_id="o-1", upstream="secret detail"
        )

        # When
        response = await test_async_client.post("/orders/o-1/payments")

        # Then
        assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        error = response.json()["error"]
        assert error["code"] == "PSP_UNAVAILABLE"
        assert "upstream" not in error
        assert response.headers["cache-control"] == "no-store"
