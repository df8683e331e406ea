"""Application settings using Pydantic for environment-based configuration."""
import json
from functools import lru_cache
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Payment Gateway Configuration
    gateway_base_url: str = Field(
        default="https://api.mercadopago.com", description="Payment gateway REST base URL"
    )
    gateway_client_id: str = Field(default="", description="OAuth application client id")
    gateway_client_secret: str = Field(default="", description="OAuth application client secret")
    gateway_redirect_uri: str = Field(
        default="", description="Redirect URI registered for the OAuth authorization flow"
    )
    gateway_platform_access_token: str = Field(
        default="", description="Marketplace application token used to read webhook payments"
    )
    gateway_webhook_secret: str = Field(
        default="", description="Secret used to verify payment webhook signatures"
    )
    gateway_timeout_seconds: float = Field(
        default=15.0, description="HTTP timeout for gateway calls (seconds)"
    )
    checkout_session_timeout_seconds: float = Field(
        default=30.0, description="Bound on creating a hosted checkout session, retries included"
    )
    min_access_token_length: int = Field(
        default=20, description="Shortest access token accepted as plausible"
    )

    # Marketplace Configuration
    platform_commission_percentage: float = Field(
        default=5.0, description="Commission applied when a partner has no override"
    )
    default_currency: str = Field(default="UYU", description="ISO currency for new orders")
    marketplace_name: str = Field(default="marketplace", description="Marketplace identifier")
    statement_descriptor: str = Field(
        default="MARKETPLACE", description="Text shown on the customer's card statement"
    )
    tax_line_title: str = Field(default="IVA", description="Title of the synthetic tax line")
    shipping_line_title: str = Field(
        default="Envío", description="Title of the synthetic shipping line"
    )
    app_url: str = Field(
        default="http://localhost:8081", description="Customer app URL used for back URLs"
    )
    webhook_url: str = Field(
        default="http://localhost:8000/webhooks/payments",
        description="Public URL of the payment webhook endpoint",
    )

    # Order Expiration
    order_expiration_minutes: int = Field(
        default=10, description="Minutes before an unpaid order is swept"
    )
    sweep_batch_size: int = Field(default=100, description="Max orders per sweep run")
    sweep_concurrency: int = Field(default=5, description="Orders expired in parallel")
    sweep_interval_seconds: float = Field(default=300.0, description="Sweep polling interval")
    gateway_cancel_timeout_seconds: float = Field(
        default=10.0, description="Bound on the per-order gateway cancellation call"
    )

    # Notifications
    notification_batch_size: int = Field(default=50, description="Max notifications per run")
    notification_max_retries: int = Field(
        default=3, description="Delivery attempts before a notification fails permanently"
    )
    notification_concurrency: int = Field(default=5, description="Notifications sent in parallel")
    notification_send_timeout_seconds: float = Field(
        default=10.0, description="Bound on each push provider call"
    )
    notification_interval_seconds: float = Field(
        default=60.0, description="Dispatcher polling interval"
    )
    fcm_base_url: str = Field(default="https://fcm.googleapis.com", description="FCM base URL")
    fcm_project_id: str = Field(
        default="", description="Firebase project id; defaults to the service account's project"
    )
    fcm_service_account_json: str = Field(
        default="", description="Firebase service account key (JSON) used to mint FCM v1 tokens"
    )
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send", description="Expo push endpoint"
    )
    expo_access_token: str = Field(default="", description="Optional Expo access token")

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="marketplace-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:8081,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Security
    cron_secret: str = Field(default="", description="Shared secret for scheduler triggers")
    cron_secret_header: str = Field(default="X-Cron-Secret", description="Cron secret header")

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

    @field_validator("platform_commission_percentage")
    @classmethod
    def validate_commission(cls, v: float) -> float:
        """Commission must be a percentage."""
        if not 0 <= v <= 100:
            raise ValueError("Commission percentage must be between 0 and 100")
        return v

    @field_validator("gateway_base_url", "app_url", "fcm_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("fcm_service_account_json")
    @classmethod
    def validate_service_account(cls, v: str) -> str:
        """A service account key must be a JSON object with a signing key."""
        if not v:
            return v
        try:
            info = json.loads(v)
        except ValueError as e:
            raise ValueError("FCM service account is not valid JSON") from e
        if not isinstance(info, dict) or not {"client_email", "private_key"} <= info.keys():
            raise ValueError("FCM service account needs client_email and private_key")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_fcm_service_account_info(self) -> Optional[Dict[str, Any]]:
        """Parsed service account key, or None when FCM is not configured."""
        if not self.fcm_service_account_json:
            return None
        return json.loads(self.fcm_service_account_json)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
