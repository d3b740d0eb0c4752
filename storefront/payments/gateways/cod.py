from typing import Any, Dict, List, Mapping, Optional
from uuid6 import uuid7
from storefront.common.custom_exceptions import GatewayError
from storefront.payments.gateways.base import (
    EVENT_IGNORED, REMOTE_CREATED, CaptureResult, ConfirmResult, GatewayEvent, LineItem, RefundResult, RemoteOrder,
)
from storefront.schema.full_schema import PaymentMethod, SettlementTiming


class CashOnDeliveryGateway:
    """Nothing remote to talk to. Cash changes hands at the door , settled when the order is delivered."""

    name = "cod"
    payment_method = PaymentMethod.CASH_ON_DELIVERY.value
    settlement_timing = SettlementTiming.IMMEDIATE.value

    async def create_remote_order(self, amount: int, currency: str, line_items: List[LineItem],
                                  reference: Dict[str, Any]) -> RemoteOrder:
        return RemoteOrder(correlation_id=None, status=REMOTE_CREATED, raw={"amount": amount, "currency": currency})

    async def fetch_remote_order(self, correlation_id: str) -> RemoteOrder:
        raise GatewayError("Cash on delivery orders have no remote state", provider=self.name, status_code=400)

    async def confirm(self, correlation_id: str, method_ref: Optional[str],
                      return_url: Optional[str] = None) -> ConfirmResult:
        raise GatewayError("Cash on delivery payments are not confirmed online", provider=self.name, status_code=400)

    async def capture(self, correlation_id: str) -> CaptureResult:
        raise GatewayError("Cash on delivery payments are collected on delivery", provider=self.name, status_code=400)

    async def refund(self, capture_id: str, amount: int, currency: str, reason: Optional[str] = None,
                     idempotency_key: Optional[str] = None) -> RefundResult:
        # paid back by hand , keep a reference so the payment row still records it
        return RefundResult(refund_id=f"manual_{idempotency_key or uuid7().hex}", status="PENDING_MANUAL", amount=amount,
                            raw={"reason": reason, "currency": currency})

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        return False

    def parse_webhook_event(self, headers: Mapping[str, str], raw_body: bytes) -> GatewayEvent:
        return GatewayEvent(provider=self.name, event_id="", event_type="", kind=EVENT_IGNORED)

    async def aclose(self) -> None:
        return None
