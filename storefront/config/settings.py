from pydantic_settings import BaseSettings


class Settings(BaseSettings):

    ENV: str = "dev"                 # "dev" / "staging" / "prod"
    SERVICE_NAME: str = "storefront"

    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    DB_ECHO: bool = False

    JWT_SECRET: str = "change-me"
    JWT_ALGO: str = "HS256"

    # money is kept in minor units (cents)
    CURRENCY: str = "USD"
    TAX_RATE_BPS: int = 0            # basis points, 800 == 8%
    SHIPPING_FLAT: int = 0
    CHECKOUT_DEDUPE_MINUTES: int = 30

    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    CARD_API_BASE: str = "https://api.stripe.com"
    CARD_SECRET_KEY: str = ""
    CARD_WEBHOOK_SECRET: str = ""
    CARD_WEBHOOK_TOLERANCE_SECONDS: int = 300

    WALLET_ENV: str = "sandbox"      # "sandbox" / "live"
    WALLET_API_BASE: str | None = None
    WALLET_CLIENT_ID: str = ""
    WALLET_CLIENT_SECRET: str = ""
    WALLET_WEBHOOK_ID: str = ""

    STORE_NAME: str = "Storefront"
    FRONTEND_URL: str = "http://localhost:3000"

    EMAIL_API_URL: str | None = None
    EMAIL_API_KEY: str | None = None
    EMAIL_FROM: str = "orders@storefront.local"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def wallet_api_base(self) -> str:
        if self.WALLET_API_BASE:
            return self.WALLET_API_BASE
        if self.WALLET_ENV == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


config_settings = Settings()
