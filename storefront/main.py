from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from storefront.api import version_prefix, cur_version
from storefront.api.routers import public_routers
from storefront.common.custom_exceptions import register_all_exceptions
from storefront.common.logging_setup import setup_logging, shutdown_logging
from storefront.config.settings import config_settings
from storefront.db.connection import async_engine, async_session
from storefront.middlewares.auth_middleware import AuthenticationMiddleware
from storefront.middlewares.request_id_middleware import RequestIdMiddleware
from storefront.orders.notifications import OrderNotifier, build_notifier
from storefront.orders.services import CheckoutOrchestrator
from storefront.payments.gateways import build_gateways
from storefront.payments.gateways.base import GatewayRegistry


def create_app(gateways: Optional[GatewayRegistry] = None, notifier: Optional[OrderNotifier] = None):

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        log = setup_logging()
        registry = gateways or build_gateways(config_settings)
        order_notifier = notifier or build_notifier(config_settings)
        app.state.orchestrator = CheckoutOrchestrator(async_session, registry, order_notifier, config_settings)
        log.info("app.started", extra={"gateways": registry.names(), "env": config_settings.ENV})

        try:
            yield
        finally:
            # requests are drained by now , close provider clients before the engine
            await registry.aclose()
            await order_notifier.aclose()
            await async_engine.dispose()
            shutdown_logging()

    app = FastAPI(
        title=config_settings.STORE_NAME,
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    app.add_middleware(AuthenticationMiddleware,
                       paths=[f"{version_prefix}/health", "/docs", "/openapi.json"],
                       suffixes=["/webhook"])
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    return app


app = create_app()
