"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_default_payment_method: str = Field(
        default="pm_card_visa",
        description="Payment method confirmed when the request does not carry one",
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (asyncpg or aiosqlite)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL (enables idempotency cache)"
    )

    # Application Configuration
    app_name: str = Field(default="checkout-systems", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    user_id_header: str = Field(
        default="X-User-ID", description="Header carrying the upstream-resolved user id"
    )

    # Checkout
    currency: str = Field(default="USD", description="Currency for all orders")
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Upper bound on a single gateway charge call"
    )
    idempotency_retention_seconds: int = Field(
        default=86400, description="How long an idempotency record is honoured"
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )
    idempotency_wait_seconds: float = Field(
        default=5.0, description="How long a duplicate request waits for the in-flight outcome"
    )
    idempotency_poll_interval_seconds: float = Field(
        default=0.1, description="Poll interval while waiting for an in-flight outcome"
    )

    # Reconciliation
    reconciliation_staleness_seconds: int = Field(
        default=300, description="Age after which an awaiting_payment order is reconciled"
    )
    reconciliation_interval_seconds: int = Field(
        default=60, description="Sweep interval of the reconciliation worker"
    )
    reconciliation_batch_size: int = Field(
        default=100, description="Max orders examined per sweep"
    )
    pending_order_ttl_seconds: int = Field(
        default=900, description="Age after which a pending order is cancelled"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ for test mode."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
