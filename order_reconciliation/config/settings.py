"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paystack Configuration
    paystack_secret_key: str = Field(..., description="Paystack secret key (sk_test_...)")
    paystack_public_key: str = Field(default="", description="Paystack public key (pk_test_...)")
    paystack_base_url: str = Field(
        default="https://api.paystack.co", description="Paystack REST API base URL"
    )
    paystack_timeout_seconds: float = Field(default=30.0, description="Gateway request timeout")
    paystack_callback_url: str = Field(
        default="", description="Frontend URL the gateway redirects to after payment"
    )
    currency: str = Field(default="GHS", description="ISO currency code for all orders")
    payment_reference_prefix: str = Field(
        default="PAY", description="Prefix for generated payment references"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="order-reconciliation", description="Application name")
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

    # Gateway retries
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway retry attempts")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for gateway retry backoff (seconds)"
    )

    # Order materialization
    identifier_max_attempts: int = Field(
        default=5, description="Attempts to find a free order/invoice number"
    )
    pending_order_ttl_minutes: int = Field(
        default=30, description="Minutes before an unpaid pending order expires"
    )

    # Reconciliation sweeps
    reconcile_min_age_minutes: int = Field(
        default=5, description="Only poll the gateway for pending orders older than this"
    )
    reconcile_batch_size: int = Field(default=100, description="Pending orders per sweep")
    reconcile_max_age_hours: int = Field(
        default=24, description="Stop polling the gateway for pending orders older than this"
    )
    worker_poll_interval_seconds: float = Field(
        default=60.0, description="Sleep between background worker runs"
    )

    # Invoice rendering
    invoice_retry_max_attempts: int = Field(default=3, description="Invoice render attempts")
    invoice_retry_base_delay: float = Field(
        default=1.0, description="Base delay for invoice retry backoff (seconds)"
    )
    invoice_service_url: str = Field(
        default="", description="Invoice rendering service endpoint (empty disables rendering)"
    )
    invoice_grace_minutes: int = Field(
        default=10, description="Age before the invoice worker re-renders a missing invoice"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("paystack_secret_key")
    @classmethod
    def validate_paystack_key(cls, v: str) -> str:
        """Validate that the Paystack secret key has a test or live prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Paystack secret key format. Must start with 'sk_test_' or 'sk_live_'"
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
        """Validate currency format."""
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
        """Check if using Paystack test mode."""
        return self.paystack_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
