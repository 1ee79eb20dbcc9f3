"""Application configuration management using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_AUTH_SECRET = "dev-only-insecure-secret"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="livreo-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    max_request_body_size: int = Field(default=1_048_576, description="Maximum request body size in bytes")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Public origin used to build provider return URLs
    app_base_url: str = Field(default="", description="Trusted public origin of the storefront (e.g. https://livreo.fr)")

    # Session tokens
    auth_secret: str = Field(default="", description="HMAC secret used to sign session tokens")
    auth_token_ttl_seconds: int = Field(default=604800, description="Session token lifetime in seconds (7 days)")
    session_cookie_name: str = Field(default="livreo_session", description="Session cookie name")

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")

    # Payments
    payment_currency: str = Field(default="EUR", description="Currency orders and pledges are priced in")
    provider_timeout_seconds: float = Field(default=15.0, description="Timeout for outbound payment provider calls")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")

    # PayPal
    paypal_client_id: str = Field(default="", description="PayPal REST client ID")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_api_base_url: str = Field(default="https://api-m.sandbox.paypal.com", description="PayPal API base URL")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook ID used for signature verification")

    # FedaPay (mobile money)
    fedapay_secret_key: str = Field(default="", description="FedaPay secret API key")
    fedapay_api_base_url: str = Field(default="https://sandbox-api.fedapay.com", description="FedaPay API base URL")
    fedapay_webhook_secret: str = Field(default="", description="FedaPay webhook signing secret")
    fedapay_currency: str = Field(default="XOF", description="Currency FedaPay transactions are settled in")
    xof_per_eur: Decimal = Field(default=Decimal("655.957"), description="Fixed EUR/XOF parity")

    # Crowdfunding stream
    campaign_stream_interval_seconds: float = Field(default=5.0, description="Seconds between campaign snapshots")

    # Email (Resend)
    resend_api_key: str = Field(default="", description="Resend API key for sending emails")
    email_from_address: str = Field(
        default="Livreo <noreply@livreo.fr>",
        description="From address for transactional emails",
    )

    @model_validator(mode="after")
    def require_auth_secret_in_production(self) -> "Settings":
        """Refuse to start in production without a signing secret."""
        if self.is_production and not self.auth_secret:
            raise ValueError("AUTH_SECRET must be set in production")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def configured_providers(self) -> list[str]:
        """Payment providers with credentials present."""
        configured = {
            "stripe": bool(self.stripe_secret_key and self.stripe_webhook_secret),
            "paypal": bool(self.paypal_client_id and self.paypal_client_secret and self.paypal_webhook_id),
            "fedapay": bool(self.fedapay_secret_key and self.fedapay_webhook_secret),
        }
        return [name for name, ok in configured.items() if ok]

    @property
    def session_secret(self) -> str:
        """Secret used to sign session tokens, with a development fallback."""
        return self.auth_secret or DEV_AUTH_SECRET

    @property
    def session_cookie_secure(self) -> bool:
        """Session cookies are Secure in production only."""
        return self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
