"""Runtime settings read from environment variables.

Secrets (provider keys) are not settings; they are fetched from SSM
Parameter Store by the gateway adapters.
"""

import os
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field

from .models.enums import PaymentProvider


class Settings(BaseModel):
    """Service configuration."""

    model_config = ConfigDict(frozen=True)

    environment: str = "dev"
    dynamodb_table_prefix: str | None = None
    site_url: str = "http://localhost:3000"
    default_payment_provider: PaymentProvider = PaymentProvider.NICEPAY
    payment_timeout_minutes: int = Field(default=30, ge=1)
    provider_http_timeout_seconds: float = Field(default=10.0, gt=0)
    provider_max_attempts: int = Field(default=3, ge=1)
    provider_backoff_seconds: float = Field(default=0.5, ge=0)
    store_max_workers: int = Field(default=8, ge=1)
    store_max_attempts: int = Field(default=3, ge=1)
    store_backoff_seconds: float = Field(default=0.1, ge=0)
    toss_api_base_url: str = "https://api.tosspayments.com"
    nicepay_api_base_url: str = "https://api.nicepay.co.kr"
    notification_sender_email: str = "noreply@example.org"
    currency: str = "KRW"
    max_payment_amount: int = 50_000_000

    @property
    def table_prefix(self) -> str:
        return self.dynamodb_table_prefix or f"booking-{self.environment}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment.

        Unset variables fall back to the field defaults.
        """
        values: dict[str, str] = {}
        for name in cls.model_fields:
            env_value = os.getenv(name.upper())
            if env_value is not None and env_value != "":
                values[name] = env_value
        return cls.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide Settings (cached)."""
    return Settings.from_env()
