from typing import Any, Dict, Iterable
from sqlalchemy import select, update
from storefront.common.custom_exceptions import InsufficientStock, ValidationError
from storefront.common.logging_setup import get_logger
from storefront.schema.full_schema import Product

logger = get_logger("storefront.inventory")


def _check_qty(product_id: int, qty: int):
    if qty is None or int(qty) <= 0:
        raise ValidationError(f"Quantity for product {product_id} must be positive",
                              details={"product_id": product_id, "quantity": qty})


async def reserve(session, product_id: int, qty: int) -> None:
    """Take qty units of stock in one conditional decrement , never read-modify-write.
    Runs inside the caller's transaction so a later failure gives the units back on rollback."""

    _check_qty(product_id, qty)
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.quantity >= qty)
        .values(quantity=Product.quantity - qty)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount == 1:
        return

    # lost the floor check , read what is left only to report it
    row = (await session.execute(
        select(Product.name, Product.quantity).where(Product.id == product_id)
    )).one_or_none()
    available = int(row.quantity) if row else 0
    logger.info("inventory.reserve_rejected",
                extra={"product_id": product_id, "requested": qty, "available": available})
    raise InsufficientStock(product_id, qty, available=available, product_name=row.name if row else None)


async def release(session, product_id: int, qty: int) -> None:
    _check_qty(product_id, qty)
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(quantity=Product.quantity + qty)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def reserve_lines(session, lines: Iterable[Dict[str, Any]]) -> None:
    # sorted by product id so two orders sharing products lock rows in the same order
    for line in sorted(lines, key=lambda it: int(it["product_id"])):
        await reserve(session, int(line["product_id"]), int(line["quantity"]))


async def release_lines(session, lines: Iterable[Dict[str, Any]]) -> None:
    for line in sorted(lines, key=lambda it: int(it["product_id"])):
        await release(session, int(line["product_id"]), int(line["quantity"]))
