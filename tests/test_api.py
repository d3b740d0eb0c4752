import json
import time
import httpx
import pytest
from httpx import AsyncClient
from asgi_lifespan import LifespanManager
from httpx import ASGITransport
from storefront.config.settings import config_settings
from storefront.main import create_app
from storefront.payments.gateways.base import GatewayRegistry
from storefront.payments.gateways.card import CardGateway, sign_payload
from storefront.payments.gateways.cod import CashOnDeliveryGateway
from tests.factories import auth_headers, fetch_order, product_stock, seed_customer, seed_product
from tests.fakes import webhook_body

url_prefix = "/api/v1"


@pytest.fixture
async def ac_client(gateways, notifier):
    app = create_app(gateways=gateways, notifier=notifier)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


async def _buyer(email="api@example.com", stock_b=1):
    a = await seed_product("Product A", 1000, 5)
    b = await seed_product("Product B", 2500, stock_b)
    buyer = await seed_customer(email, lines=[(a, 2), (b, 1)])
    return a, b, buyer


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(ac_client):
    r = await ac_client.get(f"{url_prefix}/orders/user")

    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INVALID_AUTH"

    r = await ac_client.get(f"{url_prefix}/orders/user", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_health_is_public_and_request_id_is_echoed(ac_client):
    r = await ac_client.get(f"{url_prefix}/health", headers={"X-Request-ID": "req-123"})

    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}
    assert r.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_cod_order_lifecycle_over_http(ac_client, notifier):
    a, b, buyer = await _buyer()
    headers = auth_headers(buyer["user_id"])

    r = await ac_client.post(f"{url_prefix}/orders", json={"address_id": buyer["address_id"]}, headers=headers)
    assert r.status_code == 201
    created = r.json()
    assert created["success"] is True
    assert created["data"]["amount"] == 4500
    order_id = created["data"]["order_id"]

    r = await ac_client.get(f"{url_prefix}/orders/{order_id}", headers=headers)
    assert r.status_code == 200
    detail = r.json()["data"]
    assert detail["total"] == 4500
    assert len(detail["items"]) == 2

    r = await ac_client.get(f"{url_prefix}/orders/user", params={"status": "pending"}, headers=headers)
    assert r.json()["data"]["pagination"]["total"] == 1

    r = await ac_client.patch(f"{url_prefix}/orders/{order_id}/status", json={"status": "confirmed"}, headers=headers)
    assert r.status_code == 403

    admin = auth_headers(999, role="admin")
    r = await ac_client.patch(f"{url_prefix}/orders/{order_id}/status", json={"status": "confirmed"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "confirmed"

    r = await ac_client.patch(f"{url_prefix}/orders/{order_id}/cancel", json={"reason": "found it cheaper"},
                              headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["cancellation"]["reason"] == "found it cheaper"
    assert await product_stock(a) == 5
    assert await product_stock(b) == 1

    r = await ac_client.patch(f"{url_prefix}/orders/{order_id}/cancel", headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"
    assert [n["to_status"] for n in notifier.sent] == ["confirmed", "cancelled"]


@pytest.mark.asyncio
async def test_orders_are_private(ac_client):
    _, _, buyer = await _buyer()
    stranger = await seed_customer("nosy@example.com")
    r = await ac_client.post(f"{url_prefix}/orders", json={"address_id": buyer["address_id"]},
                             headers=auth_headers(buyer["user_id"]))
    order_id = r.json()["data"]["order_id"]

    r = await ac_client.get(f"{url_prefix}/orders/{order_id}", headers=auth_headers(stranger["user_id"]))

    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_error_envelopes(ac_client):
    _, _, buyer = await _buyer(stock_b=0)
    headers = auth_headers(buyer["user_id"])

    r = await ac_client.post(f"{url_prefix}/orders", json={"address_id": buyer["address_id"]}, headers=headers)
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "INSUFFICIENT_STOCK"
    assert body["error"]["details"]["available"] == 0

    r = await ac_client.post(f"{url_prefix}/orders", json={}, headers=headers)
    assert r.status_code == 422

    r = await ac_client.patch(f"{url_prefix}/orders/12345/status", json={"status": "shipped"},
                              headers=auth_headers(1, role="admin"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_card_payment_over_http(ac_client):
    a, _, buyer = await _buyer(email="card-api@example.com")
    headers = auth_headers(buyer["user_id"])

    r = await ac_client.post(f"{url_prefix}/payments/card/create-order", json={"address_id": buyer["address_id"]},
                             headers=headers)
    assert r.status_code == 201
    created = r.json()["data"]
    assert created["client_secret"] == "pi_test_1_secret"

    r = await ac_client.post(f"{url_prefix}/payments/card/create-order", json={"address_id": buyer["address_id"]},
                             headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["reused"] is True

    r = await ac_client.post(f"{url_prefix}/payments/card/confirm",
                             json={"order_id": created["order_id"], "payment_method_id": "pm_card_visa"},
                             headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "succeeded"
    assert await product_stock(a) == 3

    r = await ac_client.get(f"{url_prefix}/payments/card/status/pi_test_1", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_wallet_payment_over_http(ac_client):
    a, _, buyer = await _buyer(email="wallet-api@example.com")
    headers = auth_headers(buyer["user_id"])

    r = await ac_client.post(f"{url_prefix}/payments/wallet/create-order", json={"address_id": buyer["address_id"]},
                             headers=headers)
    created = r.json()["data"]
    assert created["approval_url"] == "https://wallet.test/approve/WALLET_1"

    r = await ac_client.post(f"{url_prefix}/payments/wallet/capture-order",
                             json={"order_id": created["order_id"], "gateway_order_id": created["correlation_id"]},
                             headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["transaction_id"] == "CAP-WALLET_1"

    r = await ac_client.post(f"{url_prefix}/payments/wallet/refund/{created['order_id']}", json={},
                             headers=headers)
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_unknown_gateway(ac_client):
    _, _, buyer = await _buyer()
    r = await ac_client.post(f"{url_prefix}/payments/bitcoin/create-order", json={"address_id": buyer["address_id"]},
                             headers=auth_headers(buyer["user_id"]))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_webhooks_always_answer_200(ac_client):
    _, _, buyer = await _buyer(email="hook-api@example.com")
    r = await ac_client.post(f"{url_prefix}/payments/card/create-order", json={"address_id": buyer["address_id"]},
                             headers=auth_headers(buyer["user_id"]))
    order_id = r.json()["data"]["order_id"]

    forged = await ac_client.post(f"{url_prefix}/payments/card/webhook",
                                  content=webhook_body("evt_x", "capture_completed", correlation_id="pi_test_1"))
    unknown = await ac_client.post(f"{url_prefix}/payments/nope/webhook", content=b"{}")
    good = await ac_client.post(f"{url_prefix}/payments/card/webhook",
                                content=webhook_body("evt_y", "capture_completed", correlation_id="pi_test_1"),
                                headers={"X-Test-Signature": "ok"})

    assert forged.status_code == unknown.status_code == good.status_code == 200
    assert forged.json()["data"] == {"received": True}
    assert good.json()["data"] == {"received": True, "note": "settled"}
    order = await fetch_order(order_id)
    assert order.payment_status == "paid"


@pytest.fixture
async def real_card_client(notifier):
    def card_api(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "pi_real_1", "status": "requires_payment_method",
                                         "client_secret": "pi_real_1_secret"})

    card = CardGateway(config_settings, client=httpx.AsyncClient(transport=httpx.MockTransport(card_api),
                                                                 base_url="https://card.test"))
    app = create_app(gateways=GatewayRegistry([CashOnDeliveryGateway(), card]), notifier=notifier)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.mark.asyncio
async def test_signed_card_webhook_settles(real_card_client):
    a, b, buyer = await _buyer(email="signed@example.com")
    r = await real_card_client.post(f"{url_prefix}/payments/card/create-order",
                                    json={"address_id": buyer["address_id"]}, headers=auth_headers(buyer["user_id"]))
    order_id = r.json()["data"]["order_id"]

    body = json.dumps({
        "id": "evt_real_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_real_1", "latest_charge": "ch_real_1", "amount_received": 4500,
                            "metadata": {"order_id": str(order_id)}}},
    }).encode()
    ts = int(time.time())
    signature = f"t={ts},v1={sign_payload(config_settings.CARD_WEBHOOK_SECRET, ts, body)}"

    r = await real_card_client.post(f"{url_prefix}/payments/card/webhook", content=body,
                                    headers={"Stripe-Signature": signature, "Content-Type": "application/json"})

    assert r.status_code == 200
    assert r.json()["data"]["note"] == "settled"
    order = await fetch_order(order_id)
    assert (order.status, order.payment_status) == ("confirmed", "paid")
    assert order.payment.capture_id == "ch_real_1"
    assert await product_stock(a) == 3
    assert await product_stock(b) == 0
