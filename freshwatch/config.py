"""Centralized configuration using Pydantic BaseSettings"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration with environment variable support"""

    # Database
    db_path: str = Field(default="./data/freshness.db", description="SQLite database file path")
    db_busy_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=600.0,
        description="How long a connection waits for a competing writer before failing",
    )

    # Freshness settings
    # Note: Tunable freshness options live in the freshness_config table;
    # this YAML file only seeds keys that are not stored yet
    freshness_settings_path: str = Field(
        default="freshness.yaml",
        description="Optional YAML file with initial freshness settings overrides",
    )

    # Scheduling
    scheduler_enabled: bool = Field(default=True, description="Run background refresh jobs")
    tick_interval_minutes: int = Field(
        default=15, ge=1, le=1440, description="How often due items are enqueued"
    )
    drain_interval_seconds: int = Field(
        default=30, ge=1, le=3600, description="How often workers claim pending entries"
    )
    worker_id_prefix: str = Field(default="worker", description="Prefix for worker identifiers")
    score_refresh_interval_minutes: int = Field(
        default=60, ge=1, le=1440, description="How often staleness scores are recomputed"
    )
    analytics_interval_minutes: int = Field(
        default=60, ge=5, le=1440, description="How often analytics rollups run"
    )

    # Leases and retries
    lease_timeout_seconds: int = Field(
        default=900, ge=10, le=86400, description="Max time an entry may stay processing"
    )
    reclaim_interval_minutes: int = Field(
        default=5, ge=1, le=1440, description="How often abandoned entries are reclaimed"
    )
    reclaim_alert_threshold: int = Field(
        default=3, ge=1, le=100, description="Reclaims of one entry before alerting"
    )
    reclaim_fail_threshold: int = Field(
        default=5, ge=1, le=100, description="Reclaims of one entry before it is failed"
    )
    retry_base_delay_seconds: int = Field(
        default=60, ge=1, le=86400, description="Base delay before the first retry"
    )
    retry_max_delay_seconds: int = Field(
        default=6 * 3600, ge=1, le=7 * 86400, description="Upper bound for retry backoff"
    )
    version_append_max_attempts: int = Field(
        default=5, ge=1, le=50, description="Attempts for a conflicting version append"
    )
    queue_retention_days: int = Field(
        default=30, ge=1, le=3650, description="Days terminal queue entries are retained"
    )

    # Metadata fetching
    fetch_timeout_seconds: float = Field(
        default=20.0, ge=1.0, le=300.0, description="HTTP timeout for metadata fetches"
    )
    fetch_user_agent: str = Field(
        default="freshwatch/1.0 (+content freshness monitor)",
        description="User-Agent header sent when fetching submission URLs",
    )

    # MCP Server
    mcp_host: str = Field(default="0.0.0.0", description="MCP server bind address")
    mcp_port: int = Field(default=8080, ge=1024, le=65535, description="MCP server port")

    # OpenTelemetry
    otel_logging_enabled: bool = Field(default=False, description="Enable OpenTelemetry logging")
    otel_tracing_enabled: bool = Field(
        default=False, description="Enable OpenTelemetry tracing for HTTP requests"
    )
    otel_endpoint: str = Field(
        default="http://otel-collector.otel.svc.cluster.local:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(
        default="freshwatch", description="Service name for OpenTelemetry"
    )
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )


# Global config instance
config = AppConfig()
