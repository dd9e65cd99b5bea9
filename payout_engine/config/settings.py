"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payouts.db", description="Async SQLAlchemy database URL"
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    lock_backend: str = Field(default="local", description="Payout lock backend (local/redis)")
    lock_timeout_seconds: int = Field(default=30, description="Distributed lock TTL (seconds)")

    # Application Configuration
    app_name: str = Field(default="payout-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )
    admin_api_key: str = Field(
        default="", description="X-Admin-Key for /admin and view sync routes; empty disables them"
    )

    # Reporting
    reporting_timezone: str = Field(
        default="UTC", description="IANA zone whose calendar months analytics report on"
    )

    # Provider HTTP behaviour
    provider_timeout_seconds: float = Field(default=15.0, description="Provider HTTP timeout")
    provider_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient provider errors"
    )
    provider_retry_base_delay: float = Field(
        default=1.0, description="Base delay for retry backoff (seconds)"
    )

    # Plaid (bank linking)
    plaid_env: str = Field(default="sandbox", description="Plaid environment")
    plaid_client_id: str = Field(default="", description="Plaid client id")
    plaid_secret: str = Field(default="", description="Plaid secret")
    plaid_webhook_url: Optional[str] = Field(default=None, description="Plaid webhook URL")
    plaid_client_name: str = Field(default="Influencer Platform", description="Link display name")

    # Dwolla (ACH transfers)
    dwolla_env: str = Field(default="sandbox", description="Dwolla environment")
    dwolla_key: str = Field(default="", description="Dwolla application key")
    dwolla_secret: str = Field(default="", description="Dwolla application secret")
    dwolla_master_funding_source: str = Field(
        default="", description="Platform funding source URL payouts are drawn from"
    )

    # PayPal (payouts)
    paypal_env: str = Field(default="sandbox", description="PayPal environment")
    paypal_client_id: str = Field(default="", description="PayPal client id")
    paypal_client_secret: str = Field(default="", description="PayPal client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook id for verification")

    # Coinbase Commerce (crypto)
    coinbase_api_key: str = Field(default="", description="Coinbase Commerce API key")
    coinbase_webhook_secret: str = Field(default="", description="Coinbase webhook shared secret")

    # Rail payout limits (USD)
    ach_min_payout: Decimal = Field(default=Decimal("50"), description="ACH minimum payout")
    ach_max_payout: Decimal = Field(default=Decimal("10000"), description="ACH maximum payout")
    paypal_min_payout: Decimal = Field(default=Decimal("25"), description="PayPal minimum payout")
    paypal_max_payout: Decimal = Field(default=Decimal("20000"), description="PayPal maximum payout")
    crypto_min_payout: Decimal = Field(default=Decimal("10"), description="Crypto minimum payout")
    crypto_max_payout: Decimal = Field(default=Decimal("50000"), description="Crypto maximum payout")

    # Metrics gateway
    tiktok_api_base_url: str = Field(
        default="https://open.tiktokapis.com", description="TikTok API base URL"
    )
    tiktok_client_key: str = Field(default="", description="TikTok client key")
    tiktok_client_secret: str = Field(default="", description="TikTok client secret")
    tiktok_research_api_enabled: bool = Field(
        default=False, description="Use the authenticated research API for exact counts"
    )
    metrics_batch_delay_seconds: float = Field(
        default=0.1, description="Delay between metrics provider calls in a batch"
    )

    # View sync
    view_sync_batch_size: int = Field(default=20, description="Max links per sync run")
    view_sync_stale_after_seconds: int = Field(
        default=3600, description="Links checked more recently than this are skipped"
    )
    view_sync_interval_seconds: int = Field(default=3600, description="Sync worker period")

    # Reconciliation
    reconciliation_interval_seconds: int = Field(
        default=900, description="Reconciliation worker period"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("reporting_timezone")
    @classmethod
    def validate_reporting_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator("plaid_env", "dwolla_env", "paypal_env")
    @classmethod
    def validate_provider_env(cls, v: str) -> str:
        """Provider environments are either sandbox or production."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Provider environment must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        """Validate lock backend."""
        if v.lower() not in ("local", "redis"):
            raise ValueError("lock_backend must be 'local' or 'redis'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def plaid_base_url(self) -> str:
        return (
            "https://production.plaid.com"
            if self.plaid_env == "production"
            else "https://sandbox.plaid.com"
        )

    @property
    def dwolla_base_url(self) -> str:
        return (
            "https://api.dwolla.com"
            if self.dwolla_env == "production"
            else "https://api-sandbox.dwolla.com"
        )

    @property
    def paypal_base_url(self) -> str:
        return (
            "https://api-m.paypal.com"
            if self.paypal_env == "production"
            else "https://api-m.sandbox.paypal.com"
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
