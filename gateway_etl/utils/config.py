"""Configuration for the gateway ETL.

Pydantic-based settings read from the environment (prefix ``GATEWAY_ETL_``)
and an optional ``.env`` file.

Environment Variables:
- GATEWAY_ETL_DATABASE_URL: SQLAlchemy URL of the record store
- GATEWAY_ETL_GATEWAY_ADDRESS: Base URL of the gateway HTTP API
- GATEWAY_ETL_GATEWAY_PASSWORD: Gateway API password
- GATEWAY_ETL_STORAGE_TIMEOUT_SECONDS: Upper bound for a single storage call
- GATEWAY_ETL_MIGRATION_BATCH_SIZE: v1 rows migrated per checkpoint
"""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway ETL settings.

    Example:
        >>> settings = Settings()
        >>> settings.migration_batch_size
        500
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_ETL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///./gateway_etl.db",
        description="SQLAlchemy database URL for payment records",
    )
    storage_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Timeout applied to every storage call; expiry surfaces as a storage error",
    )

    # Gateway transport
    gateway_address: str = Field(
        default="http://127.0.0.1:8175",
        description="Gateway HTTP API base URL",
    )
    gateway_password: SecretStr | None = Field(
        default=None,
        description="Gateway API password (sent as bearer token)",
    )
    gateway_timeout_seconds: float = Field(default=30.0, gt=0)
    pagination_size: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Payment log entries fetched per request",
    )

    # Ingestion
    verify_duplicates: bool = Field(
        default=False,
        description="Compare redelivered events against the stored row",
    )
    write_retry_attempts: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries for transient storage errors before an event is counted as failed",
    )
    write_retry_base_delay: float = Field(default=0.5, gt=0)
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Pause between two payment log polls of a running ingestion",
    )

    # Migration
    migration_batch_size: int = Field(
        default=500,
        ge=1,
        le=50_000,
        description="v1 rows migrated between two cursor checkpoints",
    )

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    debug: bool = Field(default=False)

    # Metrics
    prometheus_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9108, ge=1, le=65535)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings

    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read settings from the environment."""
    global _settings

    _settings = Settings()
    return _settings
