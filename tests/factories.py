from typing import Iterable, Optional, Tuple
from jose import jwt
from sqlalchemy import select
from storefront.config.settings import config_settings
from storefront.db.connection import async_session
from storefront.orders.repository import load_order
from storefront.schema.full_schema import Address, Cart, CartItem, Product, Users


async def seed_product(name: str, price: int, quantity: int, *, status: str = "active",
                       online_price: Optional[int] = None) -> int:
    async with async_session() as session, session.begin():
        product = Product(name=name, price=price, online_price=online_price, quantity=quantity, status=status)
        session.add(product)
        await session.flush()
        return product.id


async def seed_customer(email: str, name: str = "Test Buyer",
                        lines: Iterable[Tuple[int, int]] = ()) -> dict:
    """User with one address and a cart holding `lines` as (product_id, quantity)."""

    async with async_session() as session, session.begin():
        user = Users(email=email, name=name)
        session.add(user)
        await session.flush()

        address = Address(user_id=user.id, full_name=name, line1="12 Market St", city="Springfield",
                          state="IL", postal_code="62701", country="US", phone="555-0100")
        cart = Cart(user_id=user.id)
        session.add_all([address, cart])
        await session.flush()

        for product_id, qty in lines:
            session.add(CartItem(cart_id=cart.id, product_id=product_id, quantity=qty))

        return {"user_id": user.id, "address_id": address.id, "cart_id": cart.id}


async def add_to_cart(cart_id: int, product_id: int, quantity: int) -> None:
    async with async_session() as session, session.begin():
        session.add(CartItem(cart_id=cart_id, product_id=product_id, quantity=quantity))


async def product_stock(product_id: int) -> int:
    async with async_session() as session:
        res = await session.execute(select(Product.quantity).where(Product.id == product_id))
        return res.scalar_one()


async def cart_size(cart_id: int) -> int:
    async with async_session() as session:
        res = await session.execute(select(CartItem.id).where(CartItem.cart_id == cart_id))
        return len(res.all())


async def fetch_order(order_id: int):
    async with async_session() as session:
        return await load_order(session, order_id)


def token_for(user_id: int, role: str = "customer") -> str:
    return jwt.encode({"sub": str(user_id), "role": role}, config_settings.JWT_SECRET,
                      algorithm=config_settings.JWT_ALGO)


def auth_headers(user_id: int, role: str = "customer") -> dict:
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}
