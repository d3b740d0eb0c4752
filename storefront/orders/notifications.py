from datetime import timedelta
from typing import Any, Dict, Optional, Protocol
import httpx
from storefront.common.utils import now
from storefront.config.settings import Settings
from storefront.orders.constants import logger
from storefront.orders.utils import format_amount


class OrderNotifier(Protocol):
    async def order_status_changed(self, recipient: Dict[str, Any], order: Dict[str, Any],
                                   previous_status: str) -> bool: ...

    async def aclose(self) -> None: ...


def build_status_email(settings: Settings, recipient: Dict[str, Any], order: Dict[str, Any]) -> Dict[str, Any]:
    status = order["status"]
    order_ref = order.get("order_number") or order.get("order_id")
    eta = (now() + timedelta(days=2)).strftime("%B %d, %Y")
    name = (recipient.get("name") or "").strip() or "Valued Customer"
    link = f"{settings.FRONTEND_URL.rstrip('/')}/orders/{order.get('order_id')}"

    text = f"Hi {name},\n\nYour order #{order_ref} at {settings.STORE_NAME} is now {status}.\n"
    if order.get("total") is not None:
        text += f"Order total: {format_amount(order['total'], order.get('currency') or settings.CURRENCY)}\n"
    text += f"Estimated delivery: {eta}\nTrack it here: {link}\n"
    return {
        "from": settings.EMAIL_FROM,
        "to": recipient["email"],
        "subject": f"Order #{order_ref} Status Update: {status.capitalize()}",
        "text": text,
    }


class HttpEmailNotifier:
    """Posts status mails to a transactional email HTTP API. One client for the life of the process."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        headers = {}
        if settings.EMAIL_API_KEY:
            headers["Authorization"] = f"Bearer {settings.EMAIL_API_KEY}"
        self._client = client or httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS, headers=headers)

    async def order_status_changed(self, recipient, order, previous_status) -> bool:
        if not recipient or not recipient.get("email"):
            return False

        message = build_status_email(self.settings, recipient, order)
        resp = await self._client.post(self.settings.EMAIL_API_URL, json=message)
        resp.raise_for_status()
        logger.info("notify.status_email_sent",
                    extra={"order_id": order.get("order_id"), "from_status": previous_status, "to_status": order["status"]})
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


class LogNotifier:
    """Used when no email API is configured , just records what would have been sent."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def order_status_changed(self, recipient, order, previous_status) -> bool:
        logger.info("notify.status_changed",
                    extra={"order_id": order.get("order_id"), "from_status": previous_status,
                           "to_status": order["status"], "has_email": bool(recipient and recipient.get("email"))})
        return False

    async def aclose(self) -> None:
        return None


def build_notifier(settings: Settings) -> OrderNotifier:
    if settings.EMAIL_API_URL:
        return HttpEmailNotifier(settings)
    return LogNotifier(settings)
