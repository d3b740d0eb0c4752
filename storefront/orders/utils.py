from typing import Any, Dict, List, Optional
from uuid6 import uuid7

from storefront.common.utils import now
from storefront.orders.constants import ORDER_NUMBER_PREFIX
from storefront.schema.full_schema import Address


def compute_order_totals(items: List[Dict[str, Any]], tax_rate_bps: int = 0, shipping_flat: int = 0) -> Dict[str, int]:
    # all amounts are minor units , tax rounds half up
    subtotal = sum(int(it["unit_price"]) * int(it["quantity"]) for it in items)
    tax = (subtotal * int(tax_rate_bps) + 5000) // 10000
    shipping = int(shipping_flat) if items else 0
    total = subtotal + tax + shipping

    return {
        "subtotal": subtotal,
        "tax": tax,
        "shipping": shipping,
        "total": total,
    }


def generate_order_number() -> str:
    return f"{ORDER_NUMBER_PREFIX}-{now():%Y%m%d}-{uuid7().hex[-8:].upper()}"


def address_snapshot(address: Optional[Address]) -> Dict[str, Any]:
    if address is None:
        return {}
    return {
        "full_name": address.full_name,
        "line1": address.line1,
        "line2": address.line2,
        "city": address.city,
        "state": address.state,
        "postal_code": address.postal_code,
        "country": address.country,
        "phone": address.phone,
    }


def format_amount(amount: int, currency: str) -> str:
    return f"{amount // 100}.{amount % 100:02d} {currency}"
