"""
Engine Configuration - Pydantic Settings for type-safe config.

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
    """Engine settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Service identity
    service_name: str = "billing-engine"
    service_version: str = "0.1.0"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    # Ledger
    ledger_cas_max_attempts: int = 3  # Lost compare-and-set retries per posting

    # Billing scheduler
    scheduler_lease_seconds: int = 300  # Claim lease on a due schedule
    scheduler_batch_size: int = 100  # Max schedules claimed per tick
    scheduler_worker_id: str = ""  # Defaults to hostname:pid
    default_max_retries: int = 3

    # Payment providers
    provider_timeout_seconds: int = 30  # Worst-case provider call latency
    webhook_tolerance_seconds: int = 300  # Max age of a signed webhook
    sandbox_webhook_secret: str = ""  # HMAC secret for the sandbox provider

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The engine MUST NOT start if critical config is missing.
        A lease shorter than the provider round trip would let a second
        worker reclaim a schedule while the first is still charging it.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.scheduler_lease_seconds < 2 * self.provider_timeout_seconds:
            errors.append(
                "SCHEDULER_LEASE_SECONDS must be at least twice PROVIDER_TIMEOUT_SECONDS "
                f"(lease={self.scheduler_lease_seconds}, timeout={self.provider_timeout_seconds})"
            )

        if self.ledger_cas_max_attempts < 1:
            errors.append("LEDGER_CAS_MAX_ATTEMPTS must be at least 1")

        if self.scheduler_batch_size < 1:
            errors.append("SCHEDULER_BATCH_SIZE must be at least 1")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - ENGINE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get engine settings instance."""
    return settings
