"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Key-value store (schedule bookkeeping) and dramatiq broker
    redis_url: str = ""
    redis_max_connections: int | None = None

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "botmeter"
    api_version: str = "0.1.0"
    api_description: str = "Credit metering, usage gates and deferred task scheduling"

    # Security - when set, every /v1 route requires a matching X-API-Key header
    api_key: str | None = None

    # Metered features (plan_features.name)
    message_credits_feature: str = "message_credits"
    links_feature: str = "links"
    agents_feature: str = "agents"
    default_credit_cost: int = 1

    # Where denied callers are sent
    billing_url_template: str = "/dashboard/{organization_id}/billing"

    # Scheduler
    scheduler_provider: str = "dramatiq"
    schedule_key_prefix: str = "botmeter_schedule:"
    schedule_ttl_seconds: int = 7 * 24 * 60 * 60

    # GoHighLevel messaging (re-engagement workers)
    gohighlevel_api_base: str = "https://services.leadconnectorhq.com"
    gohighlevel_api_version: str = "2021-07-28"
    gohighlevel_access_token: str = ""
    gohighlevel_timeout_seconds: float = 15.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "botmeter"

    # Run alembic migrations on startup
    run_migrations_on_startup: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.redis_url:
            errors.append("REDIS_URL is required but empty or missing")
        elif not self.redis_url.startswith(("redis://", "rediss://", "unix://")):
            errors.append(f"REDIS_URL must be a redis URL, got: {self.redis_url[:20]}...")

        if self.default_credit_cost <= 0:
            errors.append("DEFAULT_CREDIT_COST must be positive")

        if self.schedule_ttl_seconds <= 0:
            errors.append("SCHEDULE_TTL_SECONDS must be positive")

        if "{organization_id}" not in self.billing_url_template:
            errors.append("BILLING_URL_TEMPLATE must contain {organization_id}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()
