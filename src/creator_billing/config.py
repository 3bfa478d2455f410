import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration for the billing service.

    Instances are passed explicitly to the components that need them; nothing
    in the package reads the environment after startup.
    """
    stripe_api_key: str
    stripe_webhook_secret: str
    stripe_api_version: str = "2023-10-16"
    webhook_tolerance_seconds: int = 300
    gateway_timeout_seconds: float = 10.0
    gateway_max_retries: int = 3
    gateway_retry_delay: float = 1.0
    currency: str = "eur"
    billing_interval: str = "month"
    connect_country: str = "DE"
    database_url: str = "sqlite:///./creator_billing.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("STRIPE_API_KEY")
        if not api_key:
            raise EnvironmentError("Stripe API key (STRIPE_API_KEY) not set in environment variables.")
        webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        if not webhook_secret:
            raise EnvironmentError("Stripe webhook secret (STRIPE_WEBHOOK_SECRET) not set in environment variables.")

        return cls(
            stripe_api_key=api_key,
            stripe_webhook_secret=webhook_secret,
            stripe_api_version=os.getenv("STRIPE_API_VERSION", cls.stripe_api_version),
            webhook_tolerance_seconds=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", str(cls.webhook_tolerance_seconds))),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", str(cls.gateway_timeout_seconds))),
            gateway_max_retries=int(os.getenv("GATEWAY_MAX_RETRIES", str(cls.gateway_max_retries))),
            gateway_retry_delay=float(os.getenv("GATEWAY_RETRY_DELAY", str(cls.gateway_retry_delay))),
            currency=os.getenv("BILLING_CURRENCY", cls.currency).lower(),
            billing_interval=os.getenv("BILLING_INTERVAL", cls.billing_interval),
            connect_country=os.getenv("CONNECT_COUNTRY", cls.connect_country),
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
