from fastapi import APIRouter
from storefront.api import version_prefix
from storefront.orders.routes import orders_router
from storefront.payments.routes import payments_router
from storefront.payments.webhooks import webhooks_router
from storefront.common.routes import home_router


public_routers = APIRouter(prefix=version_prefix)


public_routers.include_router(orders_router, prefix="/orders", tags=["orders"])
public_routers.include_router(webhooks_router, prefix="/payments", tags=["webhooks"])
public_routers.include_router(payments_router, prefix="/payments", tags=["payments"])
public_routers.include_router(home_router, tags=["home"])
