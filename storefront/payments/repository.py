from typing import Any, Dict, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from storefront.common.utils import now
from storefront.payments.gateways.base import GatewayEvent
from storefront.schema.full_schema import PaymentWebhookEvent, WebhookEventStatus


async def mark_webhook_received(session, event: GatewayEvent, order_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Record a verified delivery in the ledger. A redelivery of the same provider event hits the unique
    (provider, provider_event_id) constraint inside a savepoint and the existing row is returned instead.
    """

    row = PaymentWebhookEvent(
        provider=event.provider,
        provider_event_id=event.event_id,
        event_type=event.event_type,
        correlation_id=event.correlation_id,
        order_id=order_id,
        payload=event.raw,
        status=WebhookEventStatus.RECEIVED.value,
        attempts=1,
        created_at=now(),
    )
    try:
        async with session.begin_nested():
            session.add(row)
            await session.flush()
        return {"id": row.id, "processed_at": None, "duplicate": False}
    except IntegrityError:
        pass

    existing = await get_webhook_event(session, event.provider, event.event_id)
    await session.execute(
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == existing.id)
        .values(attempts=PaymentWebhookEvent.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    return {"id": int(existing.id), "processed_at": existing.processed_at, "duplicate": True}


async def mark_webhook_processed(session, ev_id: int, status: str = WebhookEventStatus.PROCESSED.value,
                                 order_id: Optional[int] = None, last_error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"processed_at": now(), "status": status, "last_error": last_error}
    if order_id is not None:
        values["order_id"] = order_id
    stmt = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == ev_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def webhook_error_recorded(session, ev_id: int, last_error: str) -> None:
    stmt = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == ev_id)
        .values(status=WebhookEventStatus.FAILED.value, last_error=last_error[:2000])
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def get_webhook_event(session, provider: str, provider_event_id: str) -> Optional[PaymentWebhookEvent]:
    stmt = select(PaymentWebhookEvent).where(
        PaymentWebhookEvent.provider == provider,
        PaymentWebhookEvent.provider_event_id == provider_event_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()
