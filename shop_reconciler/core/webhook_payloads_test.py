from datetime import datetime, timezone

import pytest

from shop_reconciler.core.errors import InvalidPayloadError
from shop_reconciler.core.models import PaymentProvider
from shop_reconciler.core.webhook_payloads import (
    normalize_monobank_payload,
    normalize_stripe_event,
    parse_provider_time,
)


class TestNormalizeMonobankPayload:
    def test_normalizes_fields(self):
        # Given
        raw = {
            "invoiceId": " inv_1 ",
            "status": "SUCCESS",
            "amount": "4200.9",
            "ccy": 980,
            "reference": " 6a3f ",
            "modifiedDate": "2024-05-01T10:00:00Z",
        }

        # When
        event = normalize_monobank_payload(raw)

        # Then
        assert event.provider == PaymentProvider.MONOBANK
        assert event.invoice_id == "inv_1"
        assert event.status == "success"
        assert event.amount == 4200
        assert event.ccy == 980
        assert event.currency == "UAH"
        assert event.reference == "6a3f"
        assert event.provider_modified_at == datetime(
            2024, 5, 1, 10, 0, tzinfo=timezone.utc
        )

    def test_event_key_is_stable_for_same_business_fields(self):
        first = normalize_monobank_payload(
            {"invoiceId": "inv", "status": "success", "amount": 100, "ccy": 980}
        )
        second = normalize_monobank_payload(
            {
                "invoiceId": "inv",
                "status": "success",
                "amount": 100,
                "ccy": 980,
                "modifiedDate": "2024-05-01T10:00:00Z",
            }
        )
        third = normalize_monobank_payload(
            {"invoiceId": "inv", "status": "failure", "amount": 100, "ccy": 980}
        )

        assert first.event_key == second.event_key
        assert first.event_key != third.event_key

    @pytest.mark.parametrize(
        "raw", [{}, {"invoiceId": "inv"}, {"status": "success"}, [], "text"]
    )
    def test_requires_invoice_and_status(self, raw):
        with pytest.raises(InvalidPayloadError):
            normalize_monobank_payload(raw)


class TestNormalizeStripeEvent:
    def test_payment_intent_event(self):
        # Given
        event = {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "created": 1714557600,
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": 1234,
                    "amount_received": 1234,
                    "currency": "usd",
                    "metadata": {"orderId": "order-1"},
                    "latest_charge": "ch_1",
                }
            },
        }

        # When
        normalized = normalize_stripe_event(event)

        # Then
        assert normalized.event_key == "stripe:evt_1"
        assert normalized.invoice_id == "pi_1"
        assert normalized.status == "payment_intent.succeeded"
        assert normalized.amount == 1234
        assert normalized.currency == "USD"
        assert normalized.reference == "order-1"
        assert normalized.extra["charge_id"] == "ch_1"

    def test_charge_event_uses_payment_intent(self):
        event = {
            "id": "evt_2",
            "type": "charge.refunded",
            "created": 1714557600,
            "data": {
                "object": {
                    "id": "ch_1",
                    "payment_intent": "pi_1",
                    "amount": 1234,
                    "amount_refunded": 1234,
                    "refunded": True,
                    "currency": "usd",
                }
            },
        }

        normalized = normalize_stripe_event(event)

        assert normalized.invoice_id == "pi_1"
        assert normalized.extra["amount_refunded"] == 1234
        assert normalized.extra["refunded"] is True

    def test_rejects_event_without_object(self):
        with pytest.raises(InvalidPayloadError):
            normalize_stripe_event({"id": "evt", "type": "x", "data": {}})


class TestParseProviderTime:
    def test_seconds_and_milliseconds(self):
        expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

        assert parse_provider_time(1714557600) == expected
        assert parse_provider_time(1714557600000) == expected
        assert parse_provider_time("1714557600") == expected

    def test_unparseable_values(self):
        assert parse_provider_time("yesterday") is None
        assert parse_provider_time(None) is None
        assert parse_provider_time(True) is None
