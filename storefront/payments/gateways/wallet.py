import asyncio
import json
import time
from typing import Any, Dict, List, Mapping, Optional
import httpx
from uuid6 import uuid7
from storefront.common.custom_exceptions import GatewayError
from storefront.config.settings import Settings
from storefront.payments.gateways.base import (
    CONFIRM_PROCESSING, CONFIRM_REQUIRES_ACTION, CONFIRM_SUCCEEDED,
    EVENT_CAPTURE_COMPLETED, EVENT_CAPTURE_FAILED, EVENT_IGNORED, EVENT_REFUNDED,
    REMOTE_APPROVED, REMOTE_COMPLETED, REMOTE_CREATED, REMOTE_FAILED, REMOTE_VOIDED,
    CaptureResult, ConfirmResult, GatewayEvent, LineItem, RefundResult, RemoteOrder,
    logger, send_request, to_major_units, to_minor_units,
)
from storefront.schema.full_schema import PaymentMethod, SettlementTiming

ORDER_STATUS_MAP = {
    "CREATED": REMOTE_CREATED,
    "SAVED": REMOTE_CREATED,
    "PAYER_ACTION_REQUIRED": REMOTE_CREATED,
    "APPROVED": REMOTE_APPROVED,
    "COMPLETED": REMOTE_COMPLETED,
    "VOIDED": REMOTE_VOIDED,
}

EVENT_KIND_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": EVENT_CAPTURE_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": EVENT_CAPTURE_FAILED,
    "PAYMENT.CAPTURE.FAILED": EVENT_CAPTURE_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": EVENT_REFUNDED,
}

# refresh a little before the provider says the token dies
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def approval_link(order: Dict[str, Any]) -> Optional[str]:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def first_capture(order: Dict[str, Any]) -> Dict[str, Any]:
    units = order.get("purchase_units") or [{}]
    captures = ((units[0].get("payments") or {}).get("captures")) or []
    return captures[0] if captures else {}


class WalletGateway:
    """
    Redirect wallet. The buyer approves on the provider's page , we capture the approved order afterwards.
    Calls are authorized with a client-credentials token kept on the instance until it is about to expire.
    """

    name = "wallet"
    payment_method = PaymentMethod.WALLET_GATEWAY.value
    settlement_timing = SettlementTiming.DEFERRED.value

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.client_id = settings.WALLET_CLIENT_ID
        self.client_secret = settings.WALLET_CLIENT_SECRET
        self.webhook_id = settings.WALLET_WEBHOOK_ID
        self.store_name = settings.STORE_NAME
        self.frontend_url = settings.FRONTEND_URL.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=settings.wallet_api_base,
                                                   timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            data = await send_request(
                self._client, self.name, "POST", "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            token = data.get("access_token")
            if not token:
                raise GatewayError("Wallet authentication returned no token", provider=self.name)
            expires_in = int(data.get("expires_in", 300))
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            logger.debug("wallet.token_refreshed", extra={"expires_in": expires_in})
            return token

    async def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                    request_id: Optional[str] = None) -> Dict[str, Any]:
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Prefer": "return=representation",
            "PayPal-Request-Id": request_id or f"req_{uuid7().hex}",
        }
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        return await send_request(self._client, self.name, method, path, **kwargs)

    def _remote(self, order: Dict[str, Any]) -> RemoteOrder:
        provider_status = order.get("status")
        return RemoteOrder(
            correlation_id=order.get("id"),
            status=ORDER_STATUS_MAP.get(provider_status, REMOTE_FAILED),
            provider_status=provider_status,
            approval_url=approval_link(order),
            raw=order,
        )

    async def create_remote_order(self, amount: int, currency: str, line_items: List[LineItem],
                                  reference: Dict[str, Any]) -> RemoteOrder:
        totals = reference.get("totals") or {}
        order_id = reference.get("order_id")
        order_number = reference.get("order_number")

        def money(value: int) -> Dict[str, str]:
            return {"currency_code": currency, "value": to_major_units(int(value))}

        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": f"order_{order_id}",
                "description": f"Order {order_number}",
                "custom_id": str(order_id),
                "invoice_id": order_number,
                "amount": {
                    **money(amount),
                    "breakdown": {
                        "item_total": money(totals.get("subtotal", amount)),
                        "tax_total": money(totals.get("tax", 0)),
                        "shipping": money(totals.get("shipping", 0)),
                    },
                },
                "items": [
                    {
                        "name": it.name[:127],
                        "unit_amount": money(it.unit_price),
                        "quantity": str(it.quantity),
                        "sku": f"PROD-{it.product_id}",
                        "category": "PHYSICAL_GOODS",
                    }
                    for it in line_items
                ],
            }],
            "application_context": {
                "brand_name": self.store_name,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": f"{self.frontend_url}/order-confirmation?orderId={order_id}&orderNumber={order_number}",
                "cancel_url": f"{self.frontend_url}/checkout",
            },
        }
        order = await self._call("POST", "/v2/checkout/orders", body, request_id=f"order-{order_id}-create")
        logger.info("wallet.order_created", extra={"correlation_id": order.get("id"), "order_id": order_id})
        return self._remote(order)

    async def fetch_remote_order(self, correlation_id: str) -> RemoteOrder:
        order = await self._call("GET", f"/v2/checkout/orders/{correlation_id}")
        return self._remote(order)

    async def confirm(self, correlation_id: str, method_ref: Optional[str],
                      return_url: Optional[str] = None) -> ConfirmResult:
        # nothing to confirm server side , the buyer approves on the provider page
        remote = await self.fetch_remote_order(correlation_id)
        if remote.status == REMOTE_COMPLETED:
            status = CONFIRM_SUCCEEDED
        elif remote.status == REMOTE_APPROVED:
            status = CONFIRM_PROCESSING
        else:
            status = CONFIRM_REQUIRES_ACTION
        return ConfirmResult(status=status, correlation_id=correlation_id, continuation=remote.approval_url, raw=remote.raw)

    async def capture(self, correlation_id: str) -> CaptureResult:
        order = await self._call("POST", f"/v2/checkout/orders/{correlation_id}/capture",
                                 request_id=f"capture-{correlation_id}")
        capture = first_capture(order)
        return CaptureResult(
            status=order.get("status", ""),
            capture_id=capture.get("id"),
            amount=to_minor_units((capture.get("amount") or {}).get("value")),
            raw=order,
        )

    async def refund(self, capture_id: str, amount: int, currency: str, reason: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> RefundResult:
        body = {
            "amount": {"value": to_major_units(amount), "currency_code": currency},
            "note_to_payer": reason or "REFUND",
        }
        refund = await self._call("POST", f"/v2/payments/captures/{capture_id}/refund", body,
                                   request_id=idempotency_key)
        return RefundResult(
            refund_id=refund.get("id"),
            status=refund.get("status", ""),
            amount=to_minor_units((refund.get("amount") or {}).get("value")) or amount,
            raw=refund,
        )

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if not self.webhook_id:
            logger.warning("wallet.webhook_id_missing")
            return False

        h = httpx.Headers(headers)
        required = ("paypal-auth-algo", "paypal-cert-url", "paypal-transmission-id",
                    "paypal-transmission-sig", "paypal-transmission-time")
        if any(not h.get(k) for k in required):
            return False

        try:
            event = json.loads(raw_body)
        except ValueError:
            return False

        body = {
            "auth_algo": h["paypal-auth-algo"],
            "cert_url": h["paypal-cert-url"],
            "transmission_id": h["paypal-transmission-id"],
            "transmission_sig": h["paypal-transmission-sig"],
            "transmission_time": h["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        result = await self._call("POST", "/v1/notifications/verify-webhook-signature", body)
        return result.get("verification_status") == "SUCCESS"

    def parse_webhook_event(self, headers: Mapping[str, str], raw_body: bytes) -> GatewayEvent:
        payload = json.loads(raw_body)
        event_type = payload.get("event_type", "")
        resource = payload.get("resource") or {}
        related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}

        amount = resource.get("amount") or {}
        if event_type.startswith("PAYMENT.CAPTURE."):
            correlation_id = related.get("order_id")
            capture_id = resource.get("id") if event_type != "PAYMENT.CAPTURE.REFUNDED" else related.get("capture_id")
        else:
            correlation_id = resource.get("id")
            capture_id = None
        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            # total refunded on the capture so far
            breakdown = resource.get("seller_payable_breakdown") or {}
            amount = breakdown.get("total_refunded_amount") or amount

        return GatewayEvent(
            provider=self.name,
            event_id=payload.get("id", ""),
            event_type=event_type,
            kind=EVENT_KIND_MAP.get(event_type, EVENT_IGNORED),
            correlation_id=correlation_id,
            capture_id=capture_id,
            reference=resource.get("custom_id"),
            amount=to_minor_units(amount.get("value")),
            raw=payload,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
