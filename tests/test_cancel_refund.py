import asyncio
import pytest
from storefront.common.custom_exceptions import (
    Forbidden, GatewayError, InvalidStatusTransition, OrderNotFound, ValidationError,
)
from tests.factories import fetch_order, product_stock, seed_customer, seed_product


async def _order(orchestrator, method="cash_on_delivery", email="cancel@example.com"):
    a = await seed_product("Product A", 1000, 5)
    b = await seed_product("Product B", 2500, 1)
    buyer = await seed_customer(email, lines=[(a, 2), (b, 1)])
    res = await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"],
                                          payment_method=method)
    return a, b, buyer, res


@pytest.mark.asyncio
async def test_customer_cancel_returns_stock_once(orchestrator, notifier):
    a, b, buyer, res = await _order(orchestrator)
    assert await product_stock(a) == 3

    data = await orchestrator.cancel_order(res["order_id"], buyer["user_id"], "customer", "changed my mind",
                                           notes="ordered twice")

    assert data["status"] == "cancelled"
    assert data["cancellation"]["cancelled_by"] == "customer"
    assert data["cancellation"]["notes"] == "ordered twice"
    assert await product_stock(a) == 5
    assert await product_stock(b) == 1
    assert notifier.sent[-1]["to_status"] == "cancelled"

    with pytest.raises(InvalidStatusTransition):
        await orchestrator.cancel_order(res["order_id"], buyer["user_id"], "customer", "again")
    assert await product_stock(a) == 5

    order = await fetch_order(res["order_id"])
    assert order.stock_committed_at is None


@pytest.mark.asyncio
async def test_cancelling_unpaid_gateway_order_keeps_stock(orchestrator):
    a, _, buyer, res = await _order(orchestrator, method="card_gateway", email="unpaid@example.com")

    await orchestrator.cancel_order(res["order_id"], buyer["user_id"], "customer", None)

    assert await product_stock(a) == 5


@pytest.mark.asyncio
async def test_cancelling_settled_gateway_order_releases_stock(orchestrator):
    a, _, buyer, res = await _order(orchestrator, method="card_gateway", email="settled@example.com")
    await orchestrator.settle_order(res["order_id"], capture_id="ch_1")
    assert await product_stock(a) == 3

    data = await orchestrator.cancel_order(res["order_id"], buyer["user_id"], "customer", "too slow")

    assert data["status"] == "cancelled"
    assert data["payment_status"] == "paid"
    assert await product_stock(a) == 5


@pytest.mark.asyncio
async def test_shipped_orders_cannot_be_cancelled(orchestrator):
    _, _, buyer, res = await _order(orchestrator, email="shipped@example.com")
    for target in ("confirmed", "processing", "shipped"):
        await orchestrator.update_order_status(res["order_id"], target, "admin")

    with pytest.raises(InvalidStatusTransition):
        await orchestrator.cancel_order(res["order_id"], buyer["user_id"], "customer", "late")


@pytest.mark.asyncio
async def test_cancel_someone_elses_order(orchestrator):
    _, _, _, res = await _order(orchestrator, email="victim@example.com")
    stranger = await seed_customer("stranger@example.com")

    with pytest.raises(OrderNotFound):
        await orchestrator.cancel_order(res["order_id"], stranger["user_id"], "customer", None)

    data = await orchestrator.cancel_order(res["order_id"], stranger["user_id"], "admin", "support ticket")
    assert data["cancellation"]["cancelled_by"] == "admin"


async def _delivered_card_order(orchestrator, email="refund@example.com"):
    a, b, buyer, res = await _order(orchestrator, method="card_gateway", email=email)
    await orchestrator.settle_order(res["order_id"], capture_id="ch_refund_me")
    for target in ("processing", "shipped", "delivered"):
        await orchestrator.update_order_status(res["order_id"], target, "admin")
    return a, buyer, res


@pytest.mark.asyncio
async def test_admin_refund_goes_through_the_gateway(orchestrator, card_gateway):
    a, _, res = await _delivered_card_order(orchestrator)

    data = await orchestrator.refund_order(res["order_id"], None, "damaged", "admin")

    assert card_gateway.calls[-1] == ("refund", "ch_refund_me", 4500)
    assert data["refund_id"] == "re_ch_refund_me"
    assert data["status"] == "refunded"
    assert data["payment_status"] == "refunded"
    assert data["payment"]["status"] == "refunded"
    assert data["payment"]["refunded_amount"] == 4500
    assert await product_stock(a) == 3


@pytest.mark.asyncio
async def test_partial_refunds_accumulate_until_paid_back(orchestrator, card_gateway, notifier):
    _, _, res = await _delivered_card_order(orchestrator, email="partial@example.com")
    sent_before = len(notifier.sent)

    first = await orchestrator.refund_order(res["order_id"], 1000, "one item damaged", "admin")

    assert card_gateway.calls[-1] == ("refund", "ch_refund_me", 1000)
    assert first["status"] == "delivered"
    assert first["payment_status"] == "paid"
    assert first["payment"]["status"] == "succeeded"
    assert first["payment"]["refunded_amount"] == 1000
    assert len(notifier.sent) == sent_before

    rest = await orchestrator.refund_order(res["order_id"], None, "returned the rest", "admin")

    assert card_gateway.calls[-1] == ("refund", "ch_refund_me", 3500)
    assert rest["status"] == "refunded"
    assert rest["payment_status"] == "refunded"
    assert rest["payment"]["status"] == "refunded"
    assert rest["payment"]["refunded_amount"] == 4500
    assert card_gateway.refund_keys == [f"refund-{res['order_id']}-0", f"refund-{res['order_id']}-1000"]
    assert notifier.sent[-1]["to_status"] == "refunded"


@pytest.mark.asyncio
async def test_concurrent_refunds_reach_the_provider_once(orchestrator, card_gateway):
    _, _, res = await _delivered_card_order(orchestrator, email="double-refund@example.com")
    card_gateway.refund_delay = 0.05

    outcomes = await asyncio.gather(
        orchestrator.refund_order(res["order_id"], 1000, "damaged", "admin"),
        orchestrator.refund_order(res["order_id"], 1000, "damaged", "admin"),
        return_exceptions=True,
    )

    assert [c for c in card_gateway.calls if c[0] == "refund"] == [("refund", "ch_refund_me", 1000)]
    refused = [o for o in outcomes if isinstance(o, Exception)]
    assert len(refused) == 1
    assert isinstance(refused[0], ValidationError)

    order = await fetch_order(res["order_id"])
    assert order.payment.status == "succeeded"
    assert order.payment.refunded_amount == 1000


@pytest.mark.asyncio
async def test_failed_refund_can_be_retried(orchestrator, card_gateway):
    _, _, res = await _delivered_card_order(orchestrator, email="retry-refund@example.com")
    card_gateway.refund_error = GatewayError("card did not respond in time", provider="card", timeout=True)

    with pytest.raises(GatewayError):
        await orchestrator.refund_order(res["order_id"], None, "damaged", "admin")

    order = await fetch_order(res["order_id"])
    assert order.payment.status == "succeeded"
    assert order.payment.refunded_amount == 0

    card_gateway.refund_error = None
    data = await orchestrator.refund_order(res["order_id"], None, "damaged", "admin")

    assert data["status"] == "refunded"
    # the retry reuses the key so the provider can pay it out only once
    assert card_gateway.refund_keys[0] == card_gateway.refund_keys[1] == f"refund-{res['order_id']}-0"


@pytest.mark.asyncio
async def test_status_update_to_refunded_delegates_to_refund(orchestrator, card_gateway):
    _, _, res = await _delivered_card_order(orchestrator, email="delegate@example.com")

    data = await orchestrator.update_order_status(res["order_id"], "refunded", "admin", reason="return")

    assert data["status"] == "refunded"
    assert card_gateway.calls[-1][0] == "refund"


@pytest.mark.asyncio
async def test_refund_guards(orchestrator):
    _, _, res = await _delivered_card_order(orchestrator, email="guards@example.com")

    with pytest.raises(Forbidden):
        await orchestrator.refund_order(res["order_id"], None, None, "customer")
    with pytest.raises(ValidationError):
        await orchestrator.refund_order(res["order_id"], 999999, None, "admin")

    _, _, _, pending = await _order(orchestrator, email="pending-refund@example.com")
    with pytest.raises(InvalidStatusTransition):
        await orchestrator.refund_order(pending["order_id"], None, None, "admin")
