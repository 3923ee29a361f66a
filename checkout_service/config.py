import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, read once from the environment at startup."""
    database_url: str = "sqlite:///./checkout.db"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "usd"
    gateway_timeout_seconds: float = 10.0
    order_max_attempts: int = 3
    retry_initial_delay: float = 0.1
    retry_max_delay: float = 3.0
    rabbitmq_url: Optional[str] = None
    log_level: str = "INFO"


def load_settings() -> Settings:
    # Get configuration from environment variables, falling back to defaults.
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        currency=os.getenv("PAYMENT_CURRENCY", Settings.currency).lower(),
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
        order_max_attempts=int(os.getenv("ORDER_MAX_ATTEMPTS", "3")),
        retry_initial_delay=float(os.getenv("RETRY_INITIAL_DELAY", "0.1")),
        retry_max_delay=float(os.getenv("RETRY_MAX_DELAY", "3.0")),
        rabbitmq_url=os.getenv("RABBITMQ_URL") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
