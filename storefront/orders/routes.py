from typing import Optional
from fastapi import APIRouter, Query, Request, status
from storefront.common.utils import build_success, json_ok
from storefront.orders.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from storefront.orders.models import CancelOrderInput, CreateOrderInput, StatusUpdateInput


orders_router = APIRouter()


def _actor(request: Request):
    return request.state.user_identifier, getattr(request.state, "user_role", "customer")


@orders_router.post("")
async def create_order(request: Request, payload: CreateOrderInput):

    user_identifier, _ = _actor(request)
    orchestrator = request.app.state.orchestrator

    res = await orchestrator.create_order(
        user_identifier,
        payload.cart_id,
        payload.address_id,
        payment_method=payload.payment_method,
        notes=payload.notes,
        billing_address_id=payload.billing_address_id,
    )
    return json_ok(build_success(res, message="Order created"), status_code=status.HTTP_201_CREATED)


# declared before /{order_id} so "user" is not parsed as an id
@orders_router.get("/user")
async def list_my_orders(request: Request,
                         order_status: Optional[str] = Query(default=None, alias="status"),
                         payment_status: Optional[str] = Query(default=None),
                         page: int = Query(default=1, ge=1),
                         limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)):

    user_identifier, _ = _actor(request)
    res = await request.app.state.orchestrator.list_user_orders(
        user_identifier, status=order_status, payment_status=payment_status, page=page, limit=limit,
    )
    return json_ok(build_success(res))


@orders_router.get("/{order_id}")
async def get_order(request: Request, order_id: int):
    user_identifier, role = _actor(request)
    res = await request.app.state.orchestrator.get_order(order_id, user_identifier, role)
    return json_ok(build_success(res))


@orders_router.patch("/{order_id}/status")
async def update_order_status(request: Request, order_id: int, payload: StatusUpdateInput):
    _, role = _actor(request)
    res = await request.app.state.orchestrator.update_order_status(order_id, payload.status, role, reason=payload.reason)
    return json_ok(build_success(res, message=f"Order status updated to {res['status']}"))


@orders_router.patch("/{order_id}/cancel")
async def cancel_order(request: Request, order_id: int, payload: Optional[CancelOrderInput] = None):
    user_identifier, role = _actor(request)
    payload = payload or CancelOrderInput()
    res = await request.app.state.orchestrator.cancel_order(order_id, user_identifier, role, payload.reason,
                                                            notes=payload.notes)
    return json_ok(build_success(res, message="Order cancelled"))
