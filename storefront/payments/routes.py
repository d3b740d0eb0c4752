from fastapi import APIRouter, Request, status
from storefront.common.utils import build_success, json_ok
from storefront.payments.models import CaptureInput, ConfirmCardInput, GatewayOrderInput, RefundInput, StepUpInput


payments_router = APIRouter()


@payments_router.post("/{gateway}/create-order")
async def create_gateway_order(request: Request, gateway: str, payload: GatewayOrderInput):
    """Opens a local pending order plus the provider-side order / intent the client pays against."""

    orchestrator = request.app.state.orchestrator
    gw = orchestrator.gateways.get(gateway)

    res = await orchestrator.create_order(
        request.state.user_identifier,
        payload.cart_id,
        payload.address_id,
        payment_method=gw.payment_method,
        notes=payload.notes,
        billing_address_id=payload.billing_address_id,
    )
    code = status.HTTP_200_OK if res.get("reused") else status.HTTP_201_CREATED
    return json_ok(build_success(res, message="Payment order created"), status_code=code)


@payments_router.post("/card/confirm")
async def confirm_card_payment(request: Request, payload: ConfirmCardInput):
    res = await request.app.state.orchestrator.confirm_payment(
        payload.order_id, payload.payment_method_id, request.state.user_identifier, return_url=payload.return_url,
    )
    return json_ok(build_success(res))


@payments_router.post("/card/handle-3d-secure")
async def handle_step_up(request: Request, payload: StepUpInput):
    res = await request.app.state.orchestrator.resume_step_up(
        payload.order_id, payload.payment_intent_id, request.state.user_identifier,
    )
    return json_ok(build_success(res))


@payments_router.post("/wallet/capture-order")
async def capture_wallet_order(request: Request, payload: CaptureInput):
    res = await request.app.state.orchestrator.capture_redirect_payment(
        payload.order_id, payload.gateway_order_id, request.state.user_identifier,
    )
    return json_ok(build_success(res, message="Payment captured"))


@payments_router.post("/{gateway}/refund/{order_id}")
async def refund_payment(request: Request, gateway: str, order_id: int, payload: RefundInput):
    orchestrator = request.app.state.orchestrator
    orchestrator.gateways.get(gateway)
    res = await orchestrator.refund_order(order_id, payload.amount, payload.reason,
                                          getattr(request.state, "user_role", None))
    return json_ok(build_success(res, message="Refund issued"))


@payments_router.get("/{gateway}/status/{correlation_id}")
async def remote_payment_status(request: Request, gateway: str, correlation_id: str):
    res = await request.app.state.orchestrator.get_remote_status(
        gateway, correlation_id, request.state.user_identifier, getattr(request.state, "user_role", None),
    )
    return json_ok(build_success(res))
