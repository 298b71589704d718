from decimal import Decimal

import pytest

from shop_reconciler.core.errors import ErrorCode, MoneyValueError
from shop_reconciler.core.money import (
    calculate_line_total,
    from_minor_units,
    sum_line_totals,
    to_db_money,
    to_minor_units,
)


class TestToMinorUnits:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("12.34", 1234),
            ("0.00", 0),
            ("0.10", 10),
            (Decimal("19.99"), 1999),
            (Decimal("5"), 500),
            (Decimal("12.5"), 1250),
            (3, 300),
        ],
    )
    def test_converts_money_values(self, value, expected):
        assert to_minor_units(value) == expected

    @pytest.mark.parametrize("value", ["12.34", "0.01", "0.10", "1000000.00", "0.00"])
    def test_round_trip_is_exact(self, value):
        assert from_minor_units(to_minor_units(value)) == value

    @pytest.mark.parametrize(
        "value", ["12.5", "5", " 7.10 ", "1e2", "1E+2", "012.00", "+1.00", "1_000.00"]
    )
    def test_non_canonical_text_is_rejected_instead_of_normalized(self, value):
        # When
        with pytest.raises(MoneyValueError) as exc_info:
            to_minor_units(value)

        # Then
        assert exc_info.value.raw_value == value

    def test_exponent_decimal_is_rejected(self):
        with pytest.raises(MoneyValueError):
            to_minor_units(Decimal("1E+2"))

    @pytest.mark.parametrize("amount_minor", [0, 1, 9, 10, 99, 100, 1234, 100000001])
    def test_every_formatted_amount_parses_back(self, amount_minor):
        text = from_minor_units(amount_minor)

        assert to_minor_units(text) == amount_minor
        assert from_minor_units(to_minor_units(text)) == text

    @pytest.mark.parametrize(
        "value", [None, "", "abc", "NaN", "Infinity", "-1.00", "1.234", True, 1.5]
    )
    def test_rejects_invalid_values_with_raw_value(self, value):
        # When
        with pytest.raises(MoneyValueError) as exc_info:
            to_minor_units(value, field="price", entity_id="product-1")

        # Then
        error = exc_info.value
        assert error.code == ErrorCode.MONEY_VALUE_INVALID
        assert error.raw_value == value
        assert error.field == "price"
        assert error.entity_id == "product-1"


class TestFromMinorUnits:
    def test_formats_two_decimals(self):
        assert from_minor_units(1234) == "12.34"
        assert from_minor_units(5) == "0.05"
        assert from_minor_units(100) == "1.00"

    def test_db_mirror_matches_minor_amount(self):
        assert to_db_money(1234) == Decimal("12.34")

    def test_rejects_non_integers(self):
        with pytest.raises(MoneyValueError):
            from_minor_units("12.34")


class TestLineTotals:
    def test_line_total_is_integer_product(self):
        assert calculate_line_total(1999, 3) == 5997

    def test_line_total_rejects_non_positive_quantity(self):
        with pytest.raises(ValueError):
            calculate_line_total(100, 0)

    def test_sum_line_totals(self):
        assert sum_line_totals([100, 250, 1]) == 351
        assert sum_line_totals([]) == 0
