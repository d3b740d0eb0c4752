import os
import shutil
import tempfile

# settings are read once at import , point them at a throwaway database first
_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/checkout.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CARD_WEBHOOK_SECRET"] = "whsec_test"
os.environ["TAX_RATE_BPS"] = "0"
os.environ["SHIPPING_FLAT"] = "0"
os.environ.pop("EMAIL_API_URL", None)

import pytest
from sqlmodel import SQLModel
from storefront.config.settings import config_settings
from storefront.db.connection import async_engine, async_session
from storefront.orders.services import CheckoutOrchestrator
from storefront.payments.gateways.base import GatewayRegistry
from storefront.payments.gateways.cod import CashOnDeliveryGateway
import storefront.schema.full_schema  # noqa: F401
from tests.fakes import FakeCardGateway, FakeWalletGateway, RecordingNotifier


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_DB_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
async def db():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    await async_engine.dispose()


@pytest.fixture
async def db_session():
    async with async_session() as session:
        yield session


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def wallet_gateway():
    return FakeWalletGateway()


@pytest.fixture
def gateways(card_gateway, wallet_gateway):
    return GatewayRegistry([CashOnDeliveryGateway(), card_gateway, wallet_gateway])


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(gateways, notifier):
    return CheckoutOrchestrator(async_session, gateways, notifier, config_settings)
