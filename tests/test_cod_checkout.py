import asyncio
import pytest
from storefront.common.custom_exceptions import AddressNotFound, CartEmpty, InsufficientStock, ValidationError
from tests.factories import cart_size, fetch_order, product_stock, seed_customer, seed_product


@pytest.mark.asyncio
async def test_cod_order_commits_stock_and_empties_cart(orchestrator):
    """2 x A at 10.00 and 1 x B at 25.00 -> 45.00 , A stock 5 -> 3 , B stock 1 -> 0"""

    a = await seed_product("Product A", 1000, 5)
    b = await seed_product("Product B", 2500, 1)
    buyer = await seed_customer("cod@example.com", lines=[(a, 2), (b, 1)])

    res = await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"])

    assert res["status"] == "created"
    assert res["payment_method"] == "cash_on_delivery"
    assert res["amount"] == 4500
    assert res["order_number"].startswith("ORD-")

    order = await fetch_order(res["order_id"])
    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.total == 4500
    assert order.subtotal == sum(it.total_price for it in order.items)
    assert order.stock_committed_at is not None
    assert order.payment.status == "pending"
    assert order.payment.amount == 4500
    assert order.shipping_address["city"] == "Springfield"
    assert order.billing_address == order.shipping_address

    assert await product_stock(a) == 3
    assert await product_stock(b) == 0
    assert await cart_size(buyer["cart_id"]) == 0


@pytest.mark.asyncio
async def test_cod_order_without_explicit_cart_uses_users_cart(orchestrator):
    a = await seed_product("Product A", 1000, 5)
    buyer = await seed_customer("implicit@example.com", lines=[(a, 1)])

    res = await orchestrator.create_order(buyer["user_id"], None, buyer["address_id"], payment_method="cash_on_delivery")

    assert res["amount"] == 1000
    assert await product_stock(a) == 4


@pytest.mark.asyncio
async def test_shortage_leaves_nothing_behind(orchestrator):
    a = await seed_product("Product A", 1000, 5)
    b = await seed_product("Product B", 2500, 1)
    buyer = await seed_customer("short@example.com", lines=[(a, 2), (b, 2)])

    with pytest.raises(InsufficientStock):
        await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"])

    assert await product_stock(a) == 5
    assert await product_stock(b) == 1
    assert await cart_size(buyer["cart_id"]) == 2
    listing = await orchestrator.list_user_orders(buyer["user_id"])
    assert listing["pagination"]["total"] == 0


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(orchestrator):
    buyer = await seed_customer("nothing@example.com")

    with pytest.raises(CartEmpty):
        await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"])


@pytest.mark.asyncio
async def test_foreign_address_is_rejected(orchestrator):
    a = await seed_product("Product A", 1000, 5)
    buyer = await seed_customer("addr@example.com", lines=[(a, 1)])
    other = await seed_customer("addr-other@example.com")

    with pytest.raises(AddressNotFound):
        await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], other["address_id"])

    assert await product_stock(a) == 5


@pytest.mark.asyncio
async def test_unknown_payment_method(orchestrator):
    a = await seed_product("Product A", 1000, 5)
    buyer = await seed_customer("method@example.com", lines=[(a, 1)])

    with pytest.raises(ValidationError):
        await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"], payment_method="barter")


@pytest.mark.asyncio
async def test_two_buyers_race_for_the_last_unit(orchestrator):
    last = await seed_product("Last One", 1500, 1)
    first = await seed_customer("first@example.com", lines=[(last, 1)])
    second = await seed_customer("second@example.com", lines=[(last, 1)])

    results = await asyncio.gather(
        orchestrator.create_order(first["user_id"], first["cart_id"], first["address_id"]),
        orchestrator.create_order(second["user_id"], second["cart_id"], second["address_id"]),
        return_exceptions=True,
    )

    created = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(created) == 1
    assert len(failed) == 1
    assert await product_stock(last) == 0
