"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ringledger.exceptions import UnsignedWebhooksInProductionError

PRODUCTION_ENVIRONMENTS = frozenset({"production", "staging"})


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3001
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    # NOTE: In production, DATABASE_URL must be set via environment variable
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/ringledger"
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # Stripe (billing provider). Metering is disabled when the secret key is unset.
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_METERED_PRICE_ID: str | None = None
    STRIPE_METER_EVENT_NAME: str = "overage_minutes"
    METERING_TIMEOUT_SECONDS: float = 5.0

    # Retell (telephony / voice agent provider)
    RETELL_WEBHOOK_SECRET: str | None = None
    # Development only: accept unsigned telephony webhooks when no secret is set
    RETELL_ALLOW_UNSIGNED_WEBHOOKS: bool = False

    # Usage rules
    MAX_CALL_DURATION_SECONDS: int = 24 * 60 * 60
    FREE_TRIAL_MINUTES: int = 50
    TRIAL_DAYS: int = 4

    # Scheduled jobs (trial expiry, metering reconciliation)
    CRON_SECRET: str | None = None

    @field_validator("RETELL_ALLOW_UNSIGNED_WEBHOOKS")
    @classmethod
    def validate_unsigned_webhooks(cls, v: bool, info: ValidationInfo) -> bool:
        """Refuse the unsigned-webhook bypass outside development."""
        env = info.data.get("ENVIRONMENT", "development")
        if v and env in PRODUCTION_ENVIRONMENTS:
            raise UnsignedWebhooksInProductionError(env)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in PRODUCTION_ENVIRONMENTS

    @property
    def metering_enabled(self) -> bool:
        """Whether overage can be reported to the billing provider."""
        return bool(self.STRIPE_SECRET_KEY)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
