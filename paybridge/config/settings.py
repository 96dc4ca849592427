"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROVIDER_TAGS = ("pesapal", "mpesa", "airtel", "dpo")


class ProviderConfig(BaseModel):
    """
    Immutable per-provider configuration injected into an adapter.

    Built from ``Settings`` so adapters never read the environment themselves.
    """

    model_config = ConfigDict(frozen=True)

    tag: str
    base_url: str
    api_key: str = ""
    api_secret: str = ""
    webhook_secret: str = ""
    callback_url: str = ""
    timeout_seconds: float = 15.0
    extra: Dict[str, str] = Field(default_factory=dict)

    @property
    def has_keys(self) -> bool:
        """Whether API credentials are configured."""
        return bool(self.api_key and self.api_secret)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="paybridge", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL, used to build provider callback URLs",
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=1, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./paybridge.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Rate Limiting
    rate_limit_requests: int = Field(
        default=30, description="Initiation requests allowed per client IP per window"
    )
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window (seconds)")
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for shared rate-limit counters (in-process counters if unset)",
    )

    # Payment Processing
    provider_timeout_seconds: float = Field(
        default=15.0, description="Timeout for a single upstream provider call (seconds)"
    )
    card_bank_provider: str = Field(
        default="pesapal", description="Provider handling the card_bank method (pesapal/dpo)"
    )
    default_webhook_provider: str = Field(
        default="pesapal", description="Provider assumed for POST /pay/webhook"
    )
    require_webhook_secrets: bool = Field(
        default=False,
        description="Reject webhooks for providers without a configured secret",
    )

    # Reconciliation
    reconciliation_interval_seconds: int = Field(
        default=300, description="Seconds between reconciliation job runs"
    )
    stale_pending_after_seconds: int = Field(
        default=600, description="Age after which a pending transaction is polled"
    )

    # Pesapal
    pesapal_base_url: str = Field(default="https://pay.pesapal.com/v3")
    pesapal_consumer_key: str = Field(default="")
    pesapal_consumer_secret: str = Field(default="")
    pesapal_callback_url: str = Field(default="")
    pesapal_ipn_id: str = Field(default="", description="Registered IPN notification id")
    pesapal_webhook_secret: str = Field(default="")

    # M-Pesa (Daraja)
    mpesa_base_url: str = Field(default="https://sandbox.safaricom.co.ke")
    mpesa_consumer_key: str = Field(default="")
    mpesa_consumer_secret: str = Field(default="")
    mpesa_shortcode: str = Field(default="")
    mpesa_passkey: str = Field(default="")
    mpesa_callback_url: str = Field(default="")
    mpesa_webhook_secret: str = Field(default="")

    # Airtel Money
    airtel_base_url: str = Field(default="https://openapi.airtel.africa")
    airtel_client_id: str = Field(default="")
    airtel_client_secret: str = Field(default="")
    airtel_country: str = Field(default="KE")
    airtel_webhook_secret: str = Field(default="")

    # DPO
    dpo_base_url: str = Field(default="https://secure.3gdirectpay.com")
    dpo_company_token: str = Field(default="")
    dpo_service_type: str = Field(default="")
    dpo_redirect_url: str = Field(default="")
    dpo_webhook_secret: str = Field(default="")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("card_bank_provider")
    @classmethod
    def validate_card_bank_provider(cls, v: str) -> str:
        """Only card-capable providers may serve the card_bank method."""
        if v.lower() not in ("pesapal", "dpo"):
            raise ValueError("card_bank_provider must be 'pesapal' or 'dpo'")
        return v.lower()

    @field_validator("default_webhook_provider")
    @classmethod
    def validate_default_webhook_provider(cls, v: str) -> str:
        """Bare webhooks must resolve to a registered provider."""
        if v.lower() not in PROVIDER_TAGS:
            raise ValueError(f"default_webhook_provider must be one of: {list(PROVIDER_TAGS)}")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def webhook_secrets_required(self) -> bool:
        """Production never accepts unsigned webhooks."""
        return self.require_webhook_secrets or self.is_production

    def default_callback_url(self, tag: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/pay/webhook/{tag}"

    def provider_config(self, tag: str) -> ProviderConfig:
        """
        Build the configuration struct for one provider.

        Args:
            tag: Provider tag (pesapal, mpesa, airtel, dpo)

        Returns:
            ProviderConfig: Frozen configuration for the adapter

        Raises:
            ValueError: If the tag is unknown
        """
        timeout = self.provider_timeout_seconds
        if tag == "pesapal":
            return ProviderConfig(
                tag=tag,
                base_url=self.pesapal_base_url,
                api_key=self.pesapal_consumer_key,
                api_secret=self.pesapal_consumer_secret,
                webhook_secret=self.pesapal_webhook_secret,
                callback_url=self.pesapal_callback_url or self.default_callback_url(tag),
                timeout_seconds=timeout,
                extra={"ipn_id": self.pesapal_ipn_id},
            )
        if tag == "mpesa":
            return ProviderConfig(
                tag=tag,
                base_url=self.mpesa_base_url,
                api_key=self.mpesa_consumer_key,
                api_secret=self.mpesa_consumer_secret,
                webhook_secret=self.mpesa_webhook_secret,
                callback_url=self.mpesa_callback_url or self.default_callback_url(tag),
                timeout_seconds=timeout,
                extra={"shortcode": self.mpesa_shortcode, "passkey": self.mpesa_passkey},
            )
        if tag == "airtel":
            return ProviderConfig(
                tag=tag,
                base_url=self.airtel_base_url,
                api_key=self.airtel_client_id,
                api_secret=self.airtel_client_secret,
                webhook_secret=self.airtel_webhook_secret,
                callback_url=self.default_callback_url(tag),
                timeout_seconds=timeout,
                extra={"country": self.airtel_country},
            )
        if tag == "dpo":
            return ProviderConfig(
                tag=tag,
                base_url=self.dpo_base_url,
                api_key=self.dpo_company_token,
                api_secret=self.dpo_company_token,
                webhook_secret=self.dpo_webhook_secret,
                callback_url=self.dpo_redirect_url or self.default_callback_url(tag),
                timeout_seconds=timeout,
                extra={"service_type": self.dpo_service_type},
            )
        raise ValueError(f"Unknown provider: {tag}")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
