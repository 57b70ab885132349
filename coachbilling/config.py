"""Service configuration using Pydantic Settings."""

from enum import Enum
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, RedisDsn, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from coachbilling.billing.plans import DEFAULT_PREMIUM_PRICE_IDS

# Development-only signing key; rejected in production
DEV_SECRET_KEY = "CHANGE_ME_IN_PRODUCTION_32_CHARS_MIN"


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Billing service settings.

    Load order:
    1. Environment variables
    2. .env file (if present)
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============ Environment ============
    environment: Environment = Environment.DEVELOPMENT
    log_level: LogLevel = LogLevel.INFO
    debug: bool = False

    # ============ Security ============
    secret_key: SecretStr = Field(
        default=DEV_SECRET_KEY,
        description="Secret key for JWT signing",
    )
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # CORS
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"]
    )

    # ============ Stripe ============
    stripe_secret_key: SecretStr | None = None
    stripe_webhook_secret: SecretStr | None = None
    premium_price_ids: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: sorted(DEFAULT_PREMIUM_PRICE_IDS),
        description="Stripe price ids that grant the premium tier",
    )
    default_portal_return_url: str = "https://thelifecoachingcafe.com/dashboard/coach/settings"

    # ============ Firestore ============
    firebase_project_id: str | None = None
    users_collection: str = "users"
    mail_collection: str = "mail"

    # ============ Redis ============
    redis_url: RedisDsn = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    webhook_event_ttl_seconds: int = Field(default=60 * 60 * 24 * 3, ge=60)
    webhook_processing_ttl_seconds: int = Field(
        default=120,
        ge=10,
        description="How long an in-flight webhook claim blocks redelivery",
    )

    # ============ Monitoring ============
    sentry_dsn: str | None = None
    prometheus_enabled: bool = True

    @field_validator("premium_price_ids", "cors_origins", mode="before")
    @classmethod
    def parse_comma_list(cls, v: Any) -> list[str]:
        """Parse comma-separated lists from environment."""
        if isinstance(v, str):
            return [x.strip() for x in v.split(",") if x.strip()]
        return list(v or [])

    @model_validator(mode="after")
    def check_production_secret(self) -> "Settings":
        if self.is_production and self.secret_key.get_secret_value() == DEV_SECRET_KEY:
            raise ValueError("SECRET_KEY must be set in production")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def stripe_configured(self) -> bool:
        return self.stripe_secret_key is not None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
