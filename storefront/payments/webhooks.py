from fastapi import APIRouter, Request
from storefront.common.utils import build_success, json_ok


webhooks_router = APIRouter()


# providers retry on anything but 2xx , so every delivery is acknowledged and the outcome lives in the ledger
@webhooks_router.post("/{gateway}/webhook")
async def gateway_webhook(request: Request, gateway: str):
    raw_body = await request.body()
    res = await request.app.state.orchestrator.handle_gateway_webhook(gateway, dict(request.headers), raw_body)
    return json_ok(build_success(res, message="Webhook received"))
