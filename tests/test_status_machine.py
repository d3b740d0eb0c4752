import pytest
from storefront.common.custom_exceptions import Forbidden, InvalidStatusTransition, ValidationError
from storefront.orders.status_machine import ORDER_TRANSITIONS, can_transition, parse_status, validate_transition
from tests.factories import fetch_order, product_stock, seed_customer, seed_product


def test_transition_table():
    assert can_transition("pending", "confirmed")
    assert can_transition("pending", "cancelled")
    assert can_transition("processing", "shipped")
    assert can_transition("delivered", "refunded")
    assert not can_transition("pending", "shipped")
    assert not can_transition("shipped", "cancelled")
    assert not can_transition("delivered", "cancelled")
    assert not can_transition("delivered", "processing")
    assert ORDER_TRANSITIONS["cancelled"] == frozenset()
    assert ORDER_TRANSITIONS["refunded"] == frozenset()


def test_validate_transition_names_both_ends():
    with pytest.raises(InvalidStatusTransition) as exc:
        validate_transition("shipped", "pending")
    assert exc.value.details == {"from": "shipped", "to": "pending"}


def test_parse_status_rejects_unknown():
    assert parse_status("shipped") == "shipped"
    with pytest.raises(ValidationError):
        parse_status("lost-in-the-mail")


async def _cod_order(orchestrator, email="status@example.com"):
    a = await seed_product("Product A", 1000, 5)
    buyer = await seed_customer(email, lines=[(a, 2)])
    res = await orchestrator.create_order(buyer["user_id"], buyer["cart_id"], buyer["address_id"])
    return a, buyer, res["order_id"]


@pytest.mark.asyncio
async def test_cod_order_is_paid_on_delivery(orchestrator, notifier):
    a, _, order_id = await _cod_order(orchestrator)

    for target in ("confirmed", "processing", "shipped"):
        data = await orchestrator.update_order_status(order_id, target, "admin")
        assert data["status"] == target
        assert data["payment_status"] == "pending"

    data = await orchestrator.update_order_status(order_id, "delivered", "admin")

    assert data["status"] == "delivered"
    assert data["payment_status"] == "paid"
    assert data["payment"]["status"] == "succeeded"
    assert data["payment"]["paid_at"] is not None
    assert await product_stock(a) == 3
    assert [n["to_status"] for n in notifier.sent] == ["confirmed", "processing", "shipped", "delivered"]
    assert notifier.sent[0] == {"to": "status@example.com", "order_id": order_id, "from": "pending",
                                "to_status": "confirmed"}


@pytest.mark.asyncio
async def test_skipping_states_is_refused(orchestrator, notifier):
    _, _, order_id = await _cod_order(orchestrator)

    with pytest.raises(InvalidStatusTransition):
        await orchestrator.update_order_status(order_id, "shipped", "admin")

    order = await fetch_order(order_id)
    assert order.status == "pending"
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_only_admins_change_status(orchestrator):
    _, _, order_id = await _cod_order(orchestrator)

    with pytest.raises(Forbidden):
        await orchestrator.update_order_status(order_id, "confirmed", "customer")


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_the_change(orchestrator, notifier):
    _, _, order_id = await _cod_order(orchestrator)
    notifier.fail = True

    data = await orchestrator.update_order_status(order_id, "confirmed", "admin")

    assert data["status"] == "confirmed"
    order = await fetch_order(order_id)
    assert order.status == "confirmed"


@pytest.mark.asyncio
async def test_admin_cancel_through_status_update_releases_stock(orchestrator):
    a, _, order_id = await _cod_order(orchestrator)
    await orchestrator.update_order_status(order_id, "confirmed", "admin")

    data = await orchestrator.update_order_status(order_id, "cancelled", "admin", reason="fraud check")

    assert data["status"] == "cancelled"
    assert data["cancellation"]["cancelled_by"] == "admin"
    assert data["cancellation"]["reason"] == "fraud check"
    assert await product_stock(a) == 5
