from storefront.config.settings import Settings
from storefront.payments.gateways.base import GatewayRegistry, PaymentGateway
from storefront.payments.gateways.card import CardGateway
from storefront.payments.gateways.cod import CashOnDeliveryGateway
from storefront.payments.gateways.wallet import WalletGateway


def build_gateways(settings: Settings) -> GatewayRegistry:
    return GatewayRegistry([
        CashOnDeliveryGateway(),
        CardGateway(settings),
        WalletGateway(settings),
    ])


__all__ = ["GatewayRegistry", "PaymentGateway", "CardGateway", "CashOnDeliveryGateway", "WalletGateway", "build_gateways"]
