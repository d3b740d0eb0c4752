import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Mapping, Optional
import httpx
from storefront.config.settings import Settings
from storefront.payments.gateways.base import (
    CONFIRM_FAILED, CONFIRM_PROCESSING, CONFIRM_REQUIRES_ACTION, CONFIRM_SUCCEEDED,
    EVENT_CAPTURE_COMPLETED, EVENT_CAPTURE_FAILED, EVENT_IGNORED, EVENT_REFUNDED,
    REMOTE_APPROVED, REMOTE_COMPLETED, REMOTE_CREATED, REMOTE_FAILED, REMOTE_PROCESSING, REMOTE_VOIDED,
    CaptureResult, ConfirmResult, GatewayEvent, LineItem, RefundResult, RemoteOrder, logger, send_request,
)
from storefront.schema.full_schema import PaymentMethod, SettlementTiming

# payment intent status -> normalized remote status
INTENT_STATUS_MAP = {
    "requires_payment_method": REMOTE_CREATED,
    "requires_confirmation": REMOTE_CREATED,
    "requires_action": REMOTE_CREATED,
    "requires_capture": REMOTE_APPROVED,
    "processing": REMOTE_PROCESSING,
    "succeeded": REMOTE_COMPLETED,
    "canceled": REMOTE_VOIDED,
}

EVENT_KIND_MAP = {
    "payment_intent.succeeded": EVENT_CAPTURE_COMPLETED,
    "payment_intent.payment_failed": EVENT_CAPTURE_FAILED,
    "charge.refunded": EVENT_REFUNDED,
}


def flatten_form(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """{"metadata": {"order_id": 1}} -> {"metadata[order_id]": "1"} , the way the card API takes nested params."""
    out: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            out.update(flatten_form(value, name))
        elif isinstance(value, bool):
            out[name] = "true" if value else "false"
        else:
            out[name] = str(value)
    return out


def parse_signature_header(header: str) -> Dict[str, List[str]]:
    parts: Dict[str, List[str]] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(value)
    return parts


def sign_payload(secret: str, timestamp: int, raw_body: bytes) -> str:
    signed = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


class CardGateway:
    """
    Card payments through payment intents. Confirming may hand back `requires_action` (3-D Secure step up) ,
    the client finishes the challenge with the client secret and the same intent id is resumed later.
    """

    name = "card"
    payment_method = PaymentMethod.CARD_GATEWAY.value
    settlement_timing = SettlementTiming.DEFERRED.value

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.webhook_secret = settings.CARD_WEBHOOK_SECRET
        self.tolerance = settings.CARD_WEBHOOK_TOLERANCE_SECONDS
        self._client = client or httpx.AsyncClient(
            base_url=settings.CARD_API_BASE,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            headers={"Authorization": f"Bearer {settings.CARD_SECRET_KEY}"},
        )

    async def _call(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        kwargs: Dict[str, Any] = {"headers": headers}
        if data is not None:
            kwargs["data"] = flatten_form(data)
        return await send_request(self._client, self.name, method, path, **kwargs)

    def _remote(self, intent: Dict[str, Any]) -> RemoteOrder:
        provider_status = intent.get("status")
        return RemoteOrder(
            correlation_id=intent.get("id"),
            status=INTENT_STATUS_MAP.get(provider_status, REMOTE_FAILED),
            provider_status=provider_status,
            client_secret=intent.get("client_secret"),
            raw=intent,
        )

    def _confirm_result(self, intent: Dict[str, Any]) -> ConfirmResult:
        provider_status = intent.get("status")
        if provider_status == "succeeded":
            status = CONFIRM_SUCCEEDED
        elif provider_status in ("requires_action", "requires_confirmation"):
            status = CONFIRM_REQUIRES_ACTION
        elif provider_status in ("processing", "requires_capture"):
            status = CONFIRM_PROCESSING
        else:
            status = CONFIRM_FAILED
        return ConfirmResult(
            status=status,
            correlation_id=intent.get("id"),
            capture_id=intent.get("latest_charge") or intent.get("id"),
            continuation=intent.get("client_secret") if status == CONFIRM_REQUIRES_ACTION else None,
            raw=intent,
        )

    async def create_remote_order(self, amount: int, currency: str, line_items: List[LineItem],
                                  reference: Dict[str, Any]) -> RemoteOrder:
        payload = {
            "amount": amount,
            "currency": currency.lower(),
            "capture_method": "automatic",
            "description": f"Order #{reference.get('order_number')}",
            "metadata": {
                "order_id": reference.get("order_id"),
                "order_number": reference.get("order_number"),
                "user_id": reference.get("user_id"),
            },
        }
        intent = await self._call("POST", "/v1/payment_intents", payload,
                                  idempotency_key=f"order-{reference.get('order_id')}-intent")
        logger.info("card.intent_created", extra={"correlation_id": intent.get("id"), "order_id": reference.get("order_id")})
        return self._remote(intent)

    async def fetch_remote_order(self, correlation_id: str) -> RemoteOrder:
        intent = await self._call("GET", f"/v1/payment_intents/{correlation_id}")
        return self._remote(intent)

    async def confirm(self, correlation_id: str, method_ref: Optional[str],
                      return_url: Optional[str] = None) -> ConfirmResult:
        payload = {"payment_method": method_ref, "return_url": return_url}
        intent = await self._call("POST", f"/v1/payment_intents/{correlation_id}/confirm", payload)
        return self._confirm_result(intent)

    async def resume(self, correlation_id: str) -> ConfirmResult:
        # after the client finished the step up , the intent tells us where it landed
        intent = await self._call("GET", f"/v1/payment_intents/{correlation_id}")
        return self._confirm_result(intent)

    async def capture(self, correlation_id: str) -> CaptureResult:
        intent = await self._call("POST", f"/v1/payment_intents/{correlation_id}/capture")
        status = REMOTE_COMPLETED if intent.get("status") == "succeeded" else INTENT_STATUS_MAP.get(intent.get("status"), REMOTE_FAILED)
        return CaptureResult(
            status=status,
            capture_id=intent.get("latest_charge") or intent.get("id"),
            amount=intent.get("amount_received", intent.get("amount")),
            raw=intent,
        )

    async def refund(self, capture_id: str, amount: int, currency: str, reason: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> RefundResult:
        key = "charge" if capture_id.startswith("ch_") else "payment_intent"
        payload = {key: capture_id, "amount": amount, "metadata": {"reason": reason}}
        refund = await self._call("POST", "/v1/refunds", payload, idempotency_key=idempotency_key)
        return RefundResult(refund_id=refund.get("id"), status=str(refund.get("status", "")).upper(),
                            amount=int(refund.get("amount", amount)), raw=refund)

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        header = httpx.Headers(headers).get("stripe-signature")
        if not header or not self.webhook_secret:
            return False

        parts = parse_signature_header(header)
        try:
            timestamp = int(parts.get("t", [""])[0])
        except ValueError:
            return False

        if abs(time.time() - timestamp) > self.tolerance:
            logger.warning("card.webhook_signature_expired", extra={"signed_at": timestamp})
            return False

        expected = sign_payload(self.webhook_secret, timestamp, raw_body)
        return any(hmac.compare_digest(expected, sig) for sig in parts.get("v1", []))

    def parse_webhook_event(self, headers: Mapping[str, str], raw_body: bytes) -> GatewayEvent:
        payload = json.loads(raw_body)
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type.startswith("charge."):
            correlation_id = obj.get("payment_intent")
            capture_id = obj.get("id")
            amount = obj.get("amount_refunded")
        else:
            correlation_id = obj.get("id")
            capture_id = obj.get("latest_charge") or obj.get("id")
            amount = obj.get("amount_received", obj.get("amount"))

        return GatewayEvent(
            provider=self.name,
            event_id=payload.get("id", ""),
            event_type=event_type,
            kind=EVENT_KIND_MAP.get(event_type, EVENT_IGNORED),
            correlation_id=correlation_id,
            capture_id=capture_id,
            reference=str(metadata["order_id"]) if metadata.get("order_id") is not None else None,
            amount=int(amount) if amount is not None else None,
            raw=payload,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
