import json
from http import HTTPStatus

import pytest

from shop_reconciler.core.errors import ErrorCode
from shop_reconciler.presentation.errors import HTTP_STATUS_BY_CODE, error_response


class TestErrorResponse:
    def test_every_error_code_has_a_status(self):
        assert set(HTTP_STATUS_BY_CODE) == set(ErrorCode)

    @pytest.mark.parametrize(
        "code, status",
        [
            (ErrorCode.INSUFFICIENT_STOCK, HTTPStatus.CONFLICT),
            (ErrorCode.MONEY_VALUE_INVALID, HTTPStatus.INTERNAL_SERVER_ERROR),
            (ErrorCode.ORIGIN_BLOCKED, HTTPStatus.FORBIDDEN),
            (ErrorCode.JANITOR_DISABLED, HTTPStatus.SERVICE_UNAVAILABLE),
            (ErrorCode.RATE_LIMITED, HTTPStatus.TOO_MANY_REQUESTS),
        ],
    )
    def test_status_mapping(self, code, status):
        assert error_response(code, "x").status_code == status

    def test_server_errors_hide_details(self):
        # When
        response = error_response(
            ErrorCode.MONEY_VALUE_INVALID, "bad money", {"raw_value": "'abc'"}
        )

        # Then
        assert json.loads(response.body) == {
            "error": {"code": "MONEY_VALUE_INVALID", "message": "bad money"}
        }
        assert response.headers["cache-control"] == "no-store"

    def test_client_errors_carry_details(self):
        response = error_response(
            ErrorCode.INSUFFICIENT_STOCK, "no stock", {"product_id": "p-1"}
        )

        assert json.loads(response.body)["error"]["product_id"] == "p-1"
