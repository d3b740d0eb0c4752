from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable
import httpx
from storefront.common.custom_exceptions import GatewayError, NotFound
from storefront.common.logging_setup import get_logger
from storefront.schema.full_schema import PaymentMethod

logger = get_logger("storefront.payments.gateway")


# normalized remote order states , every adapter maps its provider's vocabulary onto these
REMOTE_CREATED = "CREATED"          # waiting on the payer
REMOTE_APPROVED = "APPROVED"        # payer approved , funds not captured yet
REMOTE_PROCESSING = "PROCESSING"
REMOTE_COMPLETED = "COMPLETED"
REMOTE_VOIDED = "VOIDED"
REMOTE_FAILED = "FAILED"

# confirm outcomes
CONFIRM_SUCCEEDED = "succeeded"
CONFIRM_REQUIRES_ACTION = "requires_action"
CONFIRM_PROCESSING = "processing"
CONFIRM_FAILED = "failed"

# webhook event kinds the orchestrator acts on
EVENT_CAPTURE_COMPLETED = "capture_completed"
EVENT_CAPTURE_FAILED = "capture_failed"
EVENT_REFUNDED = "refunded"
EVENT_IGNORED = "ignored"


@dataclass
class LineItem:
    product_id: int
    name: str
    quantity: int
    unit_price: int


@dataclass
class RemoteOrder:
    correlation_id: Optional[str]
    status: str
    provider_status: Optional[str] = None
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfirmResult:
    status: str
    correlation_id: Optional[str] = None
    capture_id: Optional[str] = None
    continuation: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def requires_action(self) -> bool:
        return self.status == CONFIRM_REQUIRES_ACTION


@dataclass
class CaptureResult:
    status: str
    capture_id: Optional[str]
    amount: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount: int
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    provider: str
    event_id: str
    event_type: str
    kind: str
    correlation_id: Optional[str] = None
    capture_id: Optional[str] = None
    reference: Optional[str] = None      # our order id echoed back through provider metadata
    amount: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    name: str
    payment_method: str
    settlement_timing: str

    async def create_remote_order(self, amount: int, currency: str, line_items: List[LineItem],
                                  reference: Dict[str, Any]) -> RemoteOrder: ...

    async def fetch_remote_order(self, correlation_id: str) -> RemoteOrder: ...

    async def confirm(self, correlation_id: str, method_ref: Optional[str],
                      return_url: Optional[str] = None) -> ConfirmResult: ...

    async def capture(self, correlation_id: str) -> CaptureResult: ...

    async def refund(self, capture_id: str, amount: int, currency: str, reason: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> RefundResult: ...

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool: ...

    def parse_webhook_event(self, headers: Mapping[str, str], raw_body: bytes) -> GatewayEvent: ...

    async def aclose(self) -> None: ...


def to_major_units(amount: int) -> str:
    return f"{amount // 100}.{amount % 100:02d}"


def to_minor_units(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def provider_error_message(body: Any, fallback: str) -> str:
    # stripe : {"error": {"message"}} , paypal : {"details": [{"description"}], "message"}
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        details = body.get("details")
        if isinstance(details, list) and details and isinstance(details[0], dict) and details[0].get("description"):
            return str(details[0]["description"])
        if body.get("message"):
            return str(body["message"])
        if isinstance(err, str) and body.get("error_description"):
            return str(body["error_description"])
    return fallback


async def send_request(client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs) -> Dict[str, Any]:
    """
    One provider round trip , no retries. Timeouts and transport failures are 502 with the timeout flag ,
    provider 4xx is 400 (we sent something it refused) , provider 5xx is 502.
    """

    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as ex:
        logger.warning("gateway.timeout", extra={"provider": provider, "url": url, "error": type(ex).__name__})
        raise GatewayError(f"{provider} did not respond in time", provider=provider, timeout=True)
    except httpx.TransportError as ex:
        logger.warning("gateway.transport_error", extra={"provider": provider, "url": url, "error": type(ex).__name__})
        raise GatewayError(f"Could not reach {provider}", provider=provider)

    try:
        body = resp.json() if resp.content else {}
    except ValueError:
        body = {"raw_text": resp.text[:500]}

    if resp.status_code >= 400:
        message = provider_error_message(body, f"{provider} API error: {resp.status_code}")
        logger.warning("gateway.provider_error",
                       extra={"provider": provider, "url": url, "provider_status": resp.status_code, "reason": message})
        status_code = 400 if resp.status_code < 500 else 502
        raise GatewayError(message, provider=provider, status_code=status_code, provider_status=resp.status_code)

    return body


class GatewayRegistry:
    """Adapters built once at startup , looked up per request by url name or payment method."""

    def __init__(self, gateways: Iterable[PaymentGateway]):
        self._by_name: Dict[str, PaymentGateway] = {}
        self._by_method: Dict[str, PaymentGateway] = {}
        for gw in gateways:
            self._by_name[gw.name] = gw
            self._by_method[gw.payment_method] = gw

    def get(self, name: str) -> PaymentGateway:
        gw = self._by_name.get(name)
        if gw is None:
            raise NotFound(f"Unknown payment gateway {name!r}")
        return gw

    def for_method(self, payment_method: str) -> PaymentGateway:
        gw = self._by_method.get(payment_method)
        if gw is None:
            raise NotFound(f"No payment gateway for method {payment_method!r}",
                           details={"allowed": [m.value for m in PaymentMethod]})
        return gw

    def names(self) -> List[str]:
        return list(self._by_name)

    async def aclose(self) -> None:
        for gw in self._by_name.values():
            try:
                await gw.aclose()
            except Exception:
                logger.exception("gateway.close_failed", extra={"provider": gw.name})
