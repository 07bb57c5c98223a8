import logging
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WALLET_")

    currency: str = "INR"
    min_withdrawal_amount: Decimal = Decimal("350")
    withdrawal_tax_rate: Decimal = Decimal("0.10")

    daily_withdrawal_limit: Decimal = Decimal("5000")
    weekly_withdrawal_limit: Decimal = Decimal("20000")
    monthly_withdrawal_limit: Decimal = Decimal("50000")

    default_reviewer_capacity: int = 50
    tier_validity_days: int = 365

    settlement_delay_seconds: float = 5.0
    settlement_max_attempts: int = 5
    settlement_poll_interval: float = 0.5

    notification_retention: int = 200

    log_level: str = "INFO"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
