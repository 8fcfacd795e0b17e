import logging
import os
from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=os.getenv("ENV_FILE", ".env"), extra="ignore")

    APP_NAME: str = "wallet-ledger"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    DEFAULT_CURRENCY: str = "USD"

    CORS_ORIGINS: str = ""  # comma separated

    PAYOUT_ENABLED: bool = True
    MIN_PAYOUT_AMOUNT: Decimal = Decimal("50.00")
    BLOCK_PAYOUT_ON_PENDING_ORDERS: bool = True
    PAYOUT_METHODS: str = "bank_transfer,upi,paypal,crypto"  # comma separated
    # hold unpaid dues from the wallet even when payout with dues is allowed
    HOLD_DUES_WHEN_ALLOWED: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        if not self.CORS_ORIGINS:
            return []
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def payout_methods_list(self) -> List[str]:
        return [m.strip() for m in self.PAYOUT_METHODS.split(",") if m.strip()]


settings = Settings()

_logging_configured = False


def configure_logging(level: str | None = None) -> None:
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    _logging_configured = True
