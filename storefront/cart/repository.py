from typing import Any, Dict, Optional
from sqlalchemy import delete, select
from storefront.common.custom_exceptions import CartEmpty, CartNotFound, InsufficientStock, ValidationError
from storefront.schema.full_schema import Cart, CartItem, Product, ProductStatus


def unit_price_for(price: int, online_price: Optional[int]) -> int:
    return int(online_price) if online_price is not None else int(price)


async def get_user_cart_id(session, user_id: int) -> Optional[int]:
    res = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    return res.scalar_one_or_none()


async def capture_cart_snapshot(session, user_id: int, cart_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Read the user's cart lines with their product rows locked and validate them for ordering.
    The snapshot is what the order is built from , the cart is never read again for this order.
    """

    if cart_id is None:
        cart_id = await get_user_cart_id(session, user_id)
        if cart_id is None:
            raise CartNotFound()
    else:
        res = await session.execute(select(Cart.user_id).where(Cart.id == cart_id))
        owner_id = res.scalar_one_or_none()
        if owner_id is None or int(owner_id) != int(user_id):
            raise CartNotFound()

    stmt = (
        select(CartItem.id.label("cart_item_id"), CartItem.quantity,
               Product.id.label("product_id"), Product.name, Product.price, Product.online_price,
               Product.status, Product.quantity.label("stock_qty"))
        .join(Product, Product.id == CartItem.product_id)
        .where(CartItem.cart_id == cart_id)
        .order_by(Product.id)
        .with_for_update(of=Product)
    )
    res = await session.execute(stmt)
    rows = res.all()
    if not rows:
        raise CartEmpty()

    items = []
    for r in rows:
        qty = int(r.quantity)
        if qty <= 0:
            raise ValidationError(f"Invalid quantity for \"{r.name}\"", details={"product_id": int(r.product_id)})
        if r.status != ProductStatus.ACTIVE.value:
            raise ValidationError(f"\"{r.name}\" is no longer available", details={"product_id": int(r.product_id)})
        if int(r.stock_qty) < qty:
            raise InsufficientStock(int(r.product_id), qty, available=int(r.stock_qty), product_name=r.name)

        unit_price = unit_price_for(r.price, r.online_price)
        items.append({
            "cart_item_id": int(r.cart_item_id),
            "product_id": int(r.product_id),
            "product_name": r.name,
            "quantity": qty,
            "unit_price": unit_price,
            "total_price": unit_price * qty,
        })

    return {
        "cart_id": int(cart_id),
        "user_id": int(user_id),
        "items": items,
    }


async def clear_cart_items(session, cart_id: int) -> None:
    stmt = delete(CartItem).where(CartItem.cart_id == cart_id).execution_options(synchronize_session=False)
    await session.execute(stmt)


async def clear_user_cart(session, user_id: int) -> None:
    cart_ids = select(Cart.id).where(Cart.user_id == user_id)
    stmt = delete(CartItem).where(CartItem.cart_id.in_(cart_ids)).execution_options(synchronize_session=False)
    await session.execute(stmt)
