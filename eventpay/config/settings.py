"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="eventpay-settlement", description="Application name")
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

    # Database Configuration
    database_url: str = Field(
        default="memory://",
        description="SQLAlchemy async URL; 'memory://' selects the in-process store",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (webhook delivery dedup)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered (seconds)"
    )

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")

    # PayPal Configuration
    paypal_client_id: str = Field(default="", description="PayPal REST client id")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook id used for verification")
    paypal_environment: str = Field(default="sandbox", description="sandbox or live")
    paypal_brand_name: str = Field(default="TicketFlow", description="Brand shown on PayPal checkout")
    paypal_return_url: str = Field(
        default="http://localhost:3000/checkout/paypal/return", description="Approval return URL"
    )
    paypal_cancel_url: str = Field(
        default="http://localhost:3000/checkout/paypal/cancel", description="Approval cancel URL"
    )

    # MTN Mobile Money Configuration
    mtn_base_url: str = Field(
        default="https://sandbox.momodeveloper.mtn.com", description="MTN MoMo API base URL"
    )
    mtn_target_environment: str = Field(default="sandbox", description="X-Target-Environment value")
    mtn_collection_subscription_key: str = Field(default="", description="Collection Ocp-Apim key")
    mtn_collection_user_id: str = Field(default="", description="Collection API user reference id")
    mtn_collection_api_key: str = Field(default="", description="Collection API key")
    mtn_disbursement_subscription_key: str = Field(default="", description="Disbursement Ocp-Apim key")
    mtn_disbursement_user_id: str = Field(default="", description="Disbursement API user reference id")
    mtn_disbursement_api_key: str = Field(default="", description="Disbursement API key")
    mtn_callback_url: Optional[str] = Field(
        default=None, description="Public URL of the mobile money webhook (polling is used when unset)"
    )
    mtn_callback_secret: str = Field(default="", description="Secret used to sign callback URLs")
    mtn_confirm_callbacks: bool = Field(
        default=False, description="Re-query the status endpoint before trusting a callback"
    )

    # Gateway calls
    gateway_timeout_seconds: float = Field(default=15.0, description="Timeout for provider HTTP calls")
    gateway_retry_max_attempts: int = Field(default=3, description="Max attempts on transient errors")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    token_safety_margin_seconds: int = Field(
        default=300, description="Refresh provider tokens this long before they expire"
    )

    # Fee schedule
    platform_fee_rate: Decimal = Field(default=Decimal("0.02"), description="Flat platform fee rate")
    commission_rate_free: Decimal = Field(default=Decimal("0.10"), description="Free tier commission")
    commission_rate_starter: Decimal = Field(default=Decimal("0.07"), description="Starter tier commission")
    commission_rate_pro: Decimal = Field(default=Decimal("0.05"), description="Pro tier commission")
    commission_rate_custom: Decimal = Field(default=Decimal("0.05"), description="Custom tier commission")

    # Payouts
    minimum_payout_amount: int = Field(
        default=1000, description="Minimum payout amount in minor units"
    )
    payout_processing_timeout_seconds: int = Field(
        default=900, description="Age after which a processing payout is re-queried"
    )
    payout_auto_retry_max_attempts: int = Field(
        default=3, description="Disbursement attempts before scheduled retries stop"
    )
    settlement_interval_seconds: int = Field(
        default=3600, description="Interval of the settlement worker loop"
    )
    pending_poll_min_age_seconds: int = Field(
        default=60, description="Minimum age before a pending mobile money charge is polled"
    )

    # Notifications
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Endpoint receiving payout and receipt notifications"
    )

    # Security
    cron_secret: str = Field(..., description="Shared secret for the scheduled settlement trigger")
    admin_api_key: str = Field(default="", description="API key for admin profile updates")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a known prefix."""
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

    @field_validator("paypal_environment")
    @classmethod
    def validate_paypal_environment(cls, v: str) -> str:
        if v.lower() not in ("sandbox", "live"):
            raise ValueError("paypal_environment must be 'sandbox' or 'live'")
        return v.lower()

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
    def uses_memory_store(self) -> bool:
        return self.database_url.startswith("memory://")

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
