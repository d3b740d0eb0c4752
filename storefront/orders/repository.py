from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload
from storefront.common.custom_exceptions import AddressNotFound, OrderNotFound
from storefront.common.utils import now
from storefront.schema.full_schema import (
    Address, CancelledBy, OrderItem, OrderPaymentStatus, OrderStatus, Orders, Payment, PaymentStatus, SettlementTiming,
    Users,
)


async def get_user_address(session, user_id: int, address_id: int) -> Address:
    stmt = select(Address).where(
        Address.id == address_id,
        Address.user_id == user_id,
        Address.deleted_at.is_(None),
    )
    res = await session.execute(stmt)
    address = res.scalar_one_or_none()
    if address is None:
        raise AddressNotFound()
    return address


async def insert_order_aggregate(session, *, user_id: int, order_number: str, snapshot: Dict[str, Any],
                                 totals: Dict[str, int], payment_method: str, settlement_timing: str,
                                 provider: str, currency: str, shipping_address: Dict[str, Any],
                                 billing_address: Dict[str, Any], notes: Optional[str] = None) -> Orders:
    """Order , its items and its pending payment in the caller's transaction. Flushes to get ids."""

    ts = now()
    order = Orders(
        order_number=order_number,
        user_id=user_id,
        status=OrderStatus.PENDING.value,
        payment_status=OrderPaymentStatus.PENDING.value,
        payment_method=payment_method,
        settlement_timing=settlement_timing,
        currency=currency,
        subtotal=totals["subtotal"],
        tax=totals["tax"],
        shipping=totals["shipping"],
        total=totals["total"],
        shipping_address=shipping_address,
        billing_address=billing_address,
        notes=notes,
        created_at=ts,
        updated_at=ts,
    )
    session.add(order)
    await session.flush()

    for it in snapshot["items"]:
        session.add(OrderItem(
            order_id=order.id,
            product_id=it["product_id"],
            product_name=it["product_name"],
            quantity=it["quantity"],
            unit_price=it["unit_price"],
            total_price=it["total_price"],
        ))

    session.add(Payment(
        order_id=order.id,
        provider=provider,
        payment_method=payment_method,
        amount=totals["total"],
        currency=currency,
        status=PaymentStatus.PENDING.value,
        created_at=ts,
        updated_at=ts,
    ))
    await session.flush()
    return order


async def load_order(session, order_id: int, *, for_update: bool = False) -> Orders:
    stmt = (
        select(Orders)
        .where(Orders.id == order_id)
        .options(selectinload(Orders.items), selectinload(Orders.payment))
    )
    if for_update:
        stmt = stmt.with_for_update(of=Orders)
    res = await session.execute(stmt)
    order = res.scalar_one_or_none()
    if order is None:
        raise OrderNotFound()
    return order


async def order_lines(session, order_id: int) -> List[Dict[str, Any]]:
    stmt = select(OrderItem.product_id, OrderItem.quantity).where(OrderItem.order_id == order_id)
    res = await session.execute(stmt)
    return [{"product_id": int(r.product_id), "quantity": int(r.quantity)} for r in res.all()]


async def find_recent_pending_gateway_order(session, user_id: int, payment_method: str,
                                            window_minutes: int) -> Optional[Dict[str, Any]]:
    cutoff = now() - timedelta(minutes=window_minutes)
    stmt = (
        select(Orders.id, Orders.order_number, Orders.total, Orders.currency, Orders.status,
               Payment.correlation_id, Payment.gateway_response)
        .join(Payment, Payment.order_id == Orders.id)
        .where(
            Orders.user_id == user_id,
            Orders.payment_method == payment_method,
            Orders.status == OrderStatus.PENDING.value,
            Orders.payment_status == OrderPaymentStatus.PENDING.value,
            Payment.status == PaymentStatus.PENDING.value,
            Payment.correlation_id.is_not(None),
            Orders.created_at >= cutoff,
        )
        .order_by(Orders.created_at.desc(), Orders.id.desc())
        .limit(1)
    )
    res = await session.execute(stmt)
    row = res.one_or_none()
    if row is None:
        return None
    return {
        "order_id": int(row.id),
        "order_number": row.order_number,
        "amount": int(row.total),
        "currency": row.currency,
        "status": row.status,
        "correlation_id": row.correlation_id,
        "gateway_response": row.gateway_response,
    }


async def record_correlation(session, order_id: int, correlation_id: Optional[str],
                             gateway_response: Optional[Dict[str, Any]]) -> None:
    values: Dict[str, Any] = {"gateway_response": gateway_response, "updated_at": now()}
    if correlation_id:
        values["correlation_id"] = correlation_id
    stmt = (
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def mark_settled(session, order_id: int) -> bool:
    """
    The settlement guard : flips a still pending deferred order to confirmed/paid and stamps the stock marker
    in one conditional statement. False means someone else already settled , the order left pending , or it
    is an order whose stock was taken at checkout.
    """

    ts = now()
    stmt = (
        update(Orders)
        .where(
            Orders.id == order_id,
            Orders.payment_status == OrderPaymentStatus.PENDING.value,
            Orders.status == OrderStatus.PENDING.value,
            Orders.settlement_timing == SettlementTiming.DEFERRED.value,
            Orders.stock_committed_at.is_(None),
        )
        .values(
            status=OrderStatus.CONFIRMED.value,
            payment_status=OrderPaymentStatus.PAID.value,
            stock_committed_at=ts,
            updated_at=ts,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def stamp_stock_committed(session, order_id: int) -> None:
    stmt = (
        update(Orders)
        .where(Orders.id == order_id, Orders.stock_committed_at.is_(None))
        .values(stock_committed_at=now())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def clear_stock_committed(session, order_id: int) -> bool:
    # only the caller that clears the marker gives the stock back
    stmt = (
        update(Orders)
        .where(Orders.id == order_id, Orders.stock_committed_at.is_not(None))
        .values(stock_committed_at=None)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def mark_payment_succeeded(session, order_id: int, capture_id: Optional[str] = None,
                                 gateway_response: Optional[Dict[str, Any]] = None) -> None:
    ts = now()
    values: Dict[str, Any] = {"status": PaymentStatus.SUCCEEDED.value, "paid_at": ts, "updated_at": ts}
    if capture_id:
        values["capture_id"] = capture_id
    if gateway_response is not None:
        values["gateway_response"] = gateway_response
    stmt = (
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def mark_payment_failed(session, order_id: int, reason: str,
                              gateway_response: Optional[Dict[str, Any]] = None) -> bool:
    """Terminal gateway failure : payment failed , order cancelled by the system. Stock is not touched."""

    ts = now()
    stmt = (
        update(Orders)
        .where(
            Orders.id == order_id,
            Orders.payment_status == OrderPaymentStatus.PENDING.value,
            Orders.status == OrderStatus.PENDING.value,
        )
        .values(
            payment_status=OrderPaymentStatus.FAILED.value,
            status=OrderStatus.CANCELLED.value,
            cancelled_by=CancelledBy.SYSTEM.value,
            cancellation_reason=reason[:255],
            cancelled_at=ts,
            updated_at=ts,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        return False

    values: Dict[str, Any] = {"status": PaymentStatus.FAILED.value, "updated_at": ts}
    if gateway_response is not None:
        values["gateway_response"] = gateway_response
    await session.execute(
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return True


def apply_refund(payment: Payment, refunded_total: int, gateway_response: Optional[Dict[str, Any]] = None) -> bool:
    """Move the running refunded total on a loaded payment. True once the whole amount went back."""

    payment.refunded_amount = min(refunded_total, payment.amount)
    fully_refunded = payment.refunded_amount >= payment.amount
    payment.status = PaymentStatus.REFUNDED.value if fully_refunded else PaymentStatus.SUCCEEDED.value
    if gateway_response is not None:
        payment.gateway_response = gateway_response
    payment.updated_at = now()
    return fully_refunded


async def mark_payment_refunded(session, order_id: int, refunded_total: Optional[int] = None,
                                gateway_response: Optional[Dict[str, Any]] = None) -> bool:
    """
    Provider side refund notice. `refunded_total` is what the provider has refunded on the capture so far
    (None means all of it) , so a notice we already applied changes nothing.
    """

    res = await session.execute(
        select(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.SUCCEEDED.value)
        .with_for_update()
    )
    payment = res.scalar_one_or_none()
    if payment is None:
        return False

    total = payment.amount if refunded_total is None else int(refunded_total)
    if total <= payment.refunded_amount:
        return False

    if apply_refund(payment, total, gateway_response):
        await session.execute(
            update(Orders)
            .where(Orders.id == order_id)
            .values(payment_status=OrderPaymentStatus.REFUNDED.value, updated_at=now())
            .execution_options(synchronize_session=False)
        )
    return True


async def claim_refund(session, order_id: int, refunded_amount: int) -> bool:
    # one refund in flight per payment , the loser of a race sees zero rows
    stmt = (
        update(Payment)
        .where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.SUCCEEDED.value,
            Payment.refunded_amount == refunded_amount,
        )
        .values(status=PaymentStatus.REFUNDING.value, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def release_refund_claim(session, order_id: int) -> None:
    stmt = (
        update(Payment)
        .where(Payment.order_id == order_id, Payment.status == PaymentStatus.REFUNDING.value)
        .values(status=PaymentStatus.SUCCEEDED.value, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def settlement_state(session, order_id: int) -> Optional[Dict[str, Any]]:
    stmt = select(Orders.status, Orders.payment_status, Orders.settlement_timing).where(Orders.id == order_id)
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        return None
    return {"status": row.status, "payment_status": row.payment_status, "settlement_timing": row.settlement_timing}


async def find_order_by_correlation(session, correlation_id: str,
                                    provider: Optional[str] = None) -> Optional[Dict[str, Any]]:
    stmt = (
        select(Orders.id, Orders.user_id, Orders.status, Orders.payment_status, Orders.total,
               Payment.id.label("payment_id"), Payment.status.label("payment_state"), Payment.amount)
        .join(Payment, Payment.order_id == Orders.id)
        .where(Payment.correlation_id == correlation_id)
    )
    if provider is not None:
        stmt = stmt.where(Payment.provider == provider)
    res = await session.execute(stmt)
    row = res.one_or_none()
    if row is None:
        return None
    return {
        "order_id": int(row.id),
        "user_id": int(row.user_id),
        "status": row.status,
        "payment_status": row.payment_status,
        "payment_id": int(row.payment_id),
        "payment_state": row.payment_state,
        "amount": int(row.amount),
    }


async def find_order_by_capture(session, capture_id: str, provider: Optional[str] = None) -> Optional[int]:
    stmt = select(Payment.order_id).where(Payment.capture_id == capture_id)
    if provider is not None:
        stmt = stmt.where(Payment.provider == provider)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def find_provider_order(session, order_id: int, provider: str) -> Optional[int]:
    """The order id from provider metadata , only if that provider actually holds its payment."""

    stmt = select(Payment.order_id).where(Payment.order_id == order_id, Payment.provider == provider)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_user_contact(session, user_id: int) -> Optional[Dict[str, Any]]:
    res = await session.execute(select(Users.email, Users.name).where(Users.id == user_id))
    row = res.one_or_none()
    if row is None:
        return None
    return {"email": row.email, "name": row.name}


async def list_orders(session, user_id: int, status: Optional[str] = None, payment_status: Optional[str] = None,
                      page: int = 1, limit: int = 10) -> Tuple[List[Orders], int]:

    conds = [Orders.user_id == user_id]
    if status:
        conds.append(Orders.status == status)
    if payment_status:
        conds.append(Orders.payment_status == payment_status)

    total = (await session.execute(select(func.count(Orders.id)).where(*conds))).scalar_one()
    stmt = (
        select(Orders)
        .where(*conds)
        .options(selectinload(Orders.items), selectinload(Orders.payment))
        .order_by(Orders.created_at.desc(), Orders.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all()), int(total)


def serialize_payment(payment: Optional[Payment]) -> Optional[Dict[str, Any]]:
    if payment is None:
        return None
    return {
        "id": str(payment.public_id),
        "provider": payment.provider,
        "status": payment.status,
        "amount": payment.amount,
        "currency": payment.currency,
        "correlation_id": payment.correlation_id,
        "capture_id": payment.capture_id,
        "refunded_amount": payment.refunded_amount,
        "paid_at": payment.paid_at,
    }


def serialize_order(order: Orders) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "public_id": str(order.public_id),
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping": order.shipping,
        "total": order.total,
        "shipping_address": order.shipping_address,
        "billing_address": order.billing_address,
        "notes": order.notes,
        "cancellation": {
            "reason": order.cancellation_reason,
            "notes": order.cancellation_notes,
            "cancelled_by": order.cancelled_by,
            "cancelled_at": order.cancelled_at,
        } if order.cancelled_at else None,
        "items": [
            {
                "product_id": it.product_id,
                "product_name": it.product_name,
                "quantity": it.quantity,
                "unit_price": it.unit_price,
                "total_price": it.total_price,
            }
            for it in order.items
        ],
        "payment": serialize_payment(order.payment),
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


async def get_order_owner(session, order_id: int) -> Optional[int]:
    res = await session.execute(select(Orders.user_id).where(Orders.id == order_id))
    return res.scalar_one_or_none()
