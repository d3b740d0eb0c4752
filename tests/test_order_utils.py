import re
import pytest
from storefront.common.custom_exceptions import NotFound
from storefront.orders.utils import compute_order_totals, format_amount, generate_order_number
from storefront.payments.gateways import build_gateways
from storefront.config.settings import Settings


def test_totals_in_minor_units():
    items = [{"unit_price": 1000, "quantity": 2}, {"unit_price": 2500, "quantity": 1}]

    assert compute_order_totals(items) == {"subtotal": 4500, "tax": 0, "shipping": 0, "total": 4500}
    # 8.25% of 45.00 is 3.7125 -> 3.71 , shipping is flat
    assert compute_order_totals(items, tax_rate_bps=825, shipping_flat=499) == \
        {"subtotal": 4500, "tax": 371, "shipping": 499, "total": 5370}


def test_tax_rounds_half_up():
    assert compute_order_totals([{"unit_price": 50, "quantity": 1}], tax_rate_bps=1000)["tax"] == 5
    assert compute_order_totals([{"unit_price": 5, "quantity": 1}], tax_rate_bps=1000)["tax"] == 1


def test_order_numbers_are_unique_and_readable():
    numbers = {generate_order_number() for _ in range(200)}

    assert len(numbers) == 200
    assert all(re.fullmatch(r"ORD-\d{8}-[0-9A-F]{8}", n) for n in numbers)


def test_format_amount():
    assert format_amount(4500, "USD") == "45.00 USD"
    assert format_amount(7, "USD") == "0.07 USD"


@pytest.mark.asyncio
async def test_registry_lookups():
    registry = build_gateways(Settings())

    assert registry.names() == ["cod", "card", "wallet"]
    assert registry.get("card").payment_method == "card_gateway"
    assert registry.for_method("wallet_gateway").name == "wallet"
    assert registry.for_method("cash_on_delivery").settlement_timing == "immediate"
    with pytest.raises(NotFound):
        registry.get("bitcoin")
    await registry.aclose()
