"""Application settings and configuration management."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

EBAY_API_HOSTS = {
    "sandbox": "https://api.sandbox.ebay.com",
    "production": "https://api.ebay.com",
}

EBAY_AUTH_HOSTS = {
    "sandbox": "https://auth.sandbox.ebay.com",
    "production": "https://auth.ebay.com",
}

EBAY_ITEM_HOSTS = {
    "sandbox": "https://sandbox.ebay.com",
    "production": "https://www.ebay.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # eBay OAuth application credentials
    ebay_client_id: str = Field(
        default="",
        description="eBay application client ID (App ID)",
    )
    ebay_client_secret: str = Field(
        default="",
        description="eBay application client secret (Cert ID)",
    )
    ebay_runame: str = Field(
        default="",
        description="eBay RuName used as the OAuth redirect_uri",
    )
    ebay_environment: Literal["sandbox", "production"] = Field(
        default="sandbox",
        description="eBay environment to call",
    )
    ebay_token_encryption_key: str = Field(
        default="",
        description="64 hex characters (32 bytes) AES-256 key for tokens at rest",
    )
    ebay_marketplace_id: str = Field(
        default="EBAY_US",
        description="Marketplace that offers are created on",
    )
    ebay_oauth_state_ttl_seconds: int = Field(
        default=600,
        description="Lifetime of an issued OAuth state value",
    )
    ebay_token_refresh_window_seconds: int = Field(
        default=300,
        description="Refresh access tokens this many seconds before expiry",
    )
    ebay_default_location_key: str = Field(
        default="RESELLRAI_DEFAULT",
        description="Merchant location key created for each seller",
    )
    ebay_policy_cache_ttl_seconds: int = Field(
        default=3600,
        description="How long fetched business policies are cached per user",
    )

    # Outbound HTTP client
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Per-attempt timeout for eBay API calls",
    )
    http_max_retries: int = Field(
        default=3,
        description="Retries after the first attempt for retryable failures",
    )
    http_backoff_base_seconds: float = Field(
        default=1.0,
        description="Initial retry delay",
    )
    http_backoff_factor: float = Field(
        default=2.0,
        description="Exponential backoff multiplier",
    )
    http_backoff_max_seconds: float = Field(
        default=30.0,
        description="Upper bound for a single retry delay",
    )

    # Stripe billing
    stripe_secret_key: str = Field(
        default="",
        description="Stripe secret API key",
    )
    stripe_webhook_secret: str = Field(
        default="",
        description="Signing secret for the Stripe webhook endpoint",
    )
    stripe_premium_price_id: str = Field(
        default="",
        description="Stripe price ID of the premium subscription",
    )
    stripe_success_url: str = Field(
        default="http://localhost:8000/billing/success",
        description="Checkout success redirect URL",
    )
    stripe_cancel_url: str = Field(
        default="http://localhost:8000/billing/cancel",
        description="Checkout cancel redirect URL",
    )
    stripe_portal_return_url: str = Field(
        default="http://localhost:8000/billing",
        description="Customer portal return URL",
    )

    # Server Configuration
    service_name: str = Field(
        default="resell-publisher",
        description="Service name",
    )
    service_host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    service_port: int = Field(
        default=8000,
        description="Server port",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./resell_publisher.db",
        description="Database connection URL",
    )
    database_pool_size: int = Field(
        default=5,
        description="Connection pool size (PostgreSQL only)",
    )
    database_pool_max_overflow: int = Field(
        default=10,
        description="Connections allowed above the pool size (PostgreSQL only)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )

    # Development Settings
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    @property
    def ebay_api_base_url(self) -> str:
        """eBay REST API host for the configured environment."""
        return EBAY_API_HOSTS[self.ebay_environment]

    @property
    def ebay_auth_base_url(self) -> str:
        """eBay consent page host for the configured environment."""
        return EBAY_AUTH_HOSTS[self.ebay_environment]

    @property
    def ebay_item_base_url(self) -> str:
        """Public item page host used to build listing URLs."""
        return EBAY_ITEM_HOSTS[self.ebay_environment]

    @property
    def ebay_configured(self) -> bool:
        return bool(self.ebay_client_id and self.ebay_client_secret and self.ebay_runame)

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
