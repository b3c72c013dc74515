"""
Configuration management for the metering service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseSettings):
    """Durable store configuration (SQLite bootstrap, Postgres-ready schema)."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    db_path: str = Field(default="./data/metering.db", description="SQLite database file")
    busy_timeout_seconds: float = Field(
        default=30.0,
        ge=0.1,
        le=300.0,
        description="How long a writer waits for the write lock before failing",
    )


class BillingConfig(BaseSettings):
    """Metering and period derivation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Period keys are rendered in this zone, never in a request-supplied one
    timezone: str = Field(default="America/Los_Angeles")
    default_metric: str = Field(default="api_call", min_length=1, max_length=64)
    idempotency_key_max_length: int = Field(default=255, ge=8, le=1024)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names at startup rather than on first request."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


class StripeConfig(BaseSettings):
    """Stripe billing provider configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_...)")
    webhook_tolerance_seconds: int = Field(default=300, ge=1, le=3600)

    price_trial: str = Field(default="")
    price_starter: str = Field(default="")
    price_growth: str = Field(default="")
    price_pro: str = Field(default="")

    @field_validator("api_key", "webhook_secret")
    @classmethod
    def validate_secret_security(cls, v: str, info) -> str:
        """
        Security: Reject placeholder secrets.

        Never expose secrets in logs or errors.
        """
        if not v:
            return ""

        placeholder_patterns = ["your-key-here", "example", "dummy", "changeme"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(f"{info.field_name} appears to be a placeholder - Stripe disabled")
            return ""

        return v

    @property
    def is_configured(self) -> bool:
        """Check if Stripe API calls can be made."""
        return bool(self.api_key)

    def price_id_for(self, plan_code: str) -> str:
        """Stripe price id configured for a plan code ("" when unset)."""
        return getattr(self, f"price_{plan_code}", "")


class ServiceConfig(BaseSettings):
    """HTTP service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    quota_check_rate_limit: str = Field(
        default="600/minute",
        description="slowapi limit string applied per organization to quota checks",
    )
    usage_record_rate_limit: str = Field(
        default="1200/minute",
        description="slowapi limit string applied per organization to usage recording",
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )

    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )

    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    slow_request_warning_ms: float = Field(
        default=100.0, ge=0.0, description="Log warning if request exceeds this latency (ms)"
    )

    service_name: str = Field(
        default="meterly", description="Service name for log aggregation"
    )
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the metering service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Set ADMIN_API_KEY to enable provisioning and normalized-event endpoints
    admin_api_key: str | None = Field(
        default=None,
        description="API key for admin endpoints (admin endpoints are blocked when unset)"
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """
        Security: Validate admin API key format and prevent common mistakes.

        Never expose API keys in logs or errors.
        """
        if not v:
            return None

        placeholder_patterns = [
            "your-api-key-here",
            "example",
            "dummy",
            "changeme",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.webhook_secret:
            logging.warning(
                "Stripe webhook secret not configured - Stripe webhook intake will reject events"
            )

        if self.stripe.is_configured:
            missing = [
                plan for plan in ("trial", "starter", "growth", "pro")
                if not self.stripe.price_id_for(plan)
            ]
            if missing:
                logging.warning(f"Stripe price ids not configured for plans: {missing}")

        if self.admin_api_key is None:
            logging.warning("ADMIN_API_KEY not set - admin endpoints are disabled")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
