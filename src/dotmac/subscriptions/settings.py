"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: SUBSCRIPTIONS__GRACE_PERIOD_DAYS=7
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PaymentProviderName(str, Enum):
    """Payment backends that can be wired into the service."""

    MANUAL = "manual"
    STRIPE = "stripe"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./subscriptions.db", description="Async SQLAlchemy database URL"
        )
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

        @property
        def is_sqlite(self) -> bool:
            return self.url.startswith("sqlite")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_serializer: str = Field("json", description="Task serializer")
        result_serializer: str = Field("json", description="Result serializer")
        timezone: str = Field("UTC", description="Timezone")
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Subscription Lifecycle
    # ============================================================

    class SubscriptionSettings(BaseModel):
        """Subscription lifecycle configuration."""

        grace_period_days: int = Field(
            3, description="Days after expiry during which renew can reactivate"
        )
        max_conflict_retries: int = Field(
            3, description="Re-read/recompute attempts on version conflicts"
        )
        conflict_retry_base_delay: float = Field(
            0.05, description="Base delay in seconds between conflict retries"
        )
        payment_failure_threshold: int = Field(
            3, description="Failed payment attempts after which a subscription becomes unpaid"
        )
        sweep_interval_seconds: int = Field(300, description="Expiry sweep interval")
        sweep_batch_size: int = Field(500, description="Records examined per sweep pass")
        provider_timeout_seconds: float = Field(
            10.0, description="Timeout applied to payment provider calls"
        )

        @field_validator(
            "grace_period_days",
            "max_conflict_retries",
            "conflict_retry_base_delay",
            "payment_failure_threshold",
        )
        @classmethod
        def validate_non_negative(cls, v: float) -> float:
            if v < 0:
                raise ValueError("value must be non-negative")
            return v

        @field_validator("sweep_interval_seconds", "sweep_batch_size", "provider_timeout_seconds")
        @classmethod
        def validate_positive(cls, v: float) -> float:
            if v <= 0:
                raise ValueError("value must be positive")
            return v

    subscriptions: SubscriptionSettings = SubscriptionSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payments
    # ============================================================

    class PaymentSettings(BaseModel):
        """Payment provider configuration."""

        provider: PaymentProviderName = Field(
            PaymentProviderName.MANUAL, description="Payment provider backend"
        )
        stripe_api_key: str = Field("", description="Stripe secret API key")
        stripe_webhook_secret: str = Field("", description="Stripe webhook signing secret")
        default_currency: str = Field("USD", description="Default currency code")

        @field_validator("default_currency")
        @classmethod
        def normalize_currency(cls, v: str) -> str:
            return v.upper()

    payments: PaymentSettings = PaymentSettings()  # type: ignore[call-arg]

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
