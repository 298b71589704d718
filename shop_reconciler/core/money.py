import re
from decimal import Decimal

from shop_reconciler.core.errors import MoneyValueError

_CENT = Decimal("0.01")
# Plain digits with exactly two fractional digits, the form from_minor_units emits.
_MONEY_TEXT = re.compile(r"(0|[1-9][0-9]*)\.[0-9]{2}")


def _parse(value: str | Decimal | int, field: str, entity_id: str | None) -> Decimal:
    if isinstance(value, Decimal):
        if not value.is_finite() or value.as_tuple().exponent > 0:
            raise MoneyValueError(field=field, raw_value=value, entity_id=entity_id)
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str) and _MONEY_TEXT.fullmatch(value):
        return Decimal(value)
    raise MoneyValueError(field=field, raw_value=value, entity_id=entity_id)


def to_minor_units(
    value: str | Decimal | int | None,
    *,
    field: str = "price",
    entity_id: str | None = None,
) -> int:
    """Convert a money value into integer minor units.

    Strings must be in canonical form (``"12.50"``, ``"0.05"``), so every
    accepted string comes back unchanged from :func:`from_minor_units`.
    Decimals and integers are taken at their numeric value. Values with more
    than two fractional digits are rejected rather than rounded.
    """
    if value is None or isinstance(value, (bool, float)):
        raise MoneyValueError(field=field, raw_value=value, entity_id=entity_id)

    amount = _parse(value, field, entity_id)
    if amount < 0:
        raise MoneyValueError(field=field, raw_value=value, entity_id=entity_id)

    minor = amount * 100
    if minor != minor.to_integral_value():
        raise MoneyValueError(
            "Money value has more than two fractional digits",
            field=field,
            raw_value=value,
            entity_id=entity_id,
        )

    return int(minor)


def from_minor_units(amount_minor: int) -> str:
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise MoneyValueError(field="amount_minor", raw_value=amount_minor)

    return str((Decimal(amount_minor) / 100).quantize(_CENT))


def to_db_money(amount_minor: int) -> Decimal:
    return Decimal(from_minor_units(amount_minor))


def calculate_line_total(unit_price_minor: int, quantity: int) -> int:
    if quantity <= 0:
        raise ValueError(f"Quantity must be positive, got {quantity}")
    return unit_price_minor * quantity


def sum_line_totals(line_totals_minor: list[int]) -> int:
    return sum(line_totals_minor, start=0)
