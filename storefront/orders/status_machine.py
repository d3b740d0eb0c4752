from typing import Dict, FrozenSet, Optional
from storefront.common.custom_exceptions import InvalidStatusTransition, ValidationError
from storefront.common.utils import now
from storefront.inventory.repository import release_lines
from storefront.orders.constants import logger
from storefront.orders.repository import clear_stock_committed
from storefront.schema.full_schema import OrderPaymentStatus, OrderStatus, Orders, PaymentStatus


ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OrderStatus.PENDING.value: frozenset({OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.CONFIRMED.value: frozenset({OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value}),
    OrderStatus.PROCESSING.value: frozenset({OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.SHIPPED.value: frozenset({OrderStatus.DELIVERED.value}),
    OrderStatus.DELIVERED.value: frozenset({OrderStatus.REFUNDED.value}),
    OrderStatus.CANCELLED.value: frozenset(),
    OrderStatus.REFUNDED.value: frozenset(),
}


def parse_status(value: str) -> str:
    try:
        return OrderStatus(value).value
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}",
                              details={"allowed": [s.value for s in OrderStatus]})


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransition(current, target)


async def apply_status_transition(session, order: Orders, target: str, *, actor: Optional[str] = None,
                                  reason: Optional[str] = None, notes: Optional[str] = None) -> str:
    """
    Move a locked order to `target` inside the caller's transaction and run the side effects that belong
    to entering that state. Returns the previous status. Nothing is changed when the move is illegal.

    entering cancelled  -> stock for every line goes back , once , if it was ever committed
    entering delivered  -> cash collected at the door settles a still pending payment
    """

    target = parse_status(target)
    previous = order.status
    validate_transition(previous, target)

    ts = now()

    if target == OrderStatus.CANCELLED.value:
        order.cancelled_by = actor
        order.cancellation_reason = (reason or "")[:255] or None
        order.cancellation_notes = notes
        order.cancelled_at = ts
        if await clear_stock_committed(session, order.id):
            await release_lines(session, [{"product_id": it.product_id, "quantity": it.quantity} for it in order.items])
            logger.info("order.stock_released", extra={"order_id": order.id, "lines": len(order.items)})
        order.stock_committed_at = None

    elif target == OrderStatus.DELIVERED.value:
        if order.payment_status == OrderPaymentStatus.PENDING.value:
            order.payment_status = OrderPaymentStatus.PAID.value
            if order.payment is not None and order.payment.status == PaymentStatus.PENDING.value:
                order.payment.status = PaymentStatus.SUCCEEDED.value
                order.payment.paid_at = ts
                order.payment.updated_at = ts
            logger.info("order.settled_on_delivery", extra={"order_id": order.id})

    order.status = target
    order.updated_at = ts
    await session.flush()
    return previous
