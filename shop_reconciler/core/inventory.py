from collections.abc import Iterable, Mapping

from shop_reconciler.core.errors import InsufficientStockError, InvalidPayloadError


def reserve_move_key(order_id: str, product_id: str) -> str:
    return f"reserve:{order_id}:{product_id}"


def release_move_key(order_id: str, product_id: str) -> str:
    return f"release:{order_id}:{product_id}"


def merge_requested_items(items: Iterable[tuple[str, int]]) -> dict[str, int]:
    """Merge duplicate product lines and return them ordered by product id.

    Ordering matters: product rows are locked in this order, so concurrent
    checkouts can never deadlock on each other.
    """
    merged: dict[str, int] = {}
    for product_id, quantity in items:
        if quantity <= 0:
            raise InvalidPayloadError(
                "Quantity must be positive", product_id=product_id, quantity=quantity
            )
        merged[product_id] = merged.get(product_id, 0) + quantity

    if not merged:
        raise InvalidPayloadError("Order must contain at least one item")

    return dict(sorted(merged.items()))


def ensure_sufficient_stock(
    requested: Mapping[str, int], available: Mapping[str, int]
) -> None:
    for product_id, quantity in requested.items():
        if product_id not in available:
            raise InsufficientStockError(
                "Product is not available",
                product_id=product_id,
                requested=quantity,
                available=0,
            )

        stock = available[product_id]
        if stock < 0:
            raise InsufficientStockError(
                "Product stock is corrupted",
                product_id=product_id,
                requested=quantity,
                available=stock,
            )
        if quantity > stock:
            raise InsufficientStockError(
                product_id=product_id, requested=quantity, available=stock
            )
