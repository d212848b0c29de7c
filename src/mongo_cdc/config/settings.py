"""
Configuration for the MongoDB CDC replicator.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
Settings objects are frozen: build one with load_settings() and pass it to components.
"""
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceSettings(BaseSettings):
    """Source cluster (change stream origin)."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_SOURCE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    uri: str = Field(default="mongodb://localhost:27017/", description="Source MongoDB URI")
    database: str = Field(default="AUTH", description="Source database name")
    collection: str = Field(default="your_collection", description="Source collection name")
    server_selection_timeout_ms: int = Field(default=10000, gt=0, description="Server selection timeout")

    @property
    def namespace(self) -> str:
        """Oplog namespace of the source collection."""
        return f"{self.database}.{self.collection}"


class TargetSettings(BaseSettings):
    """Target cluster (replica destination)."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_TARGET_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    uri: str = Field(default="mongodb://localhost:27018/", description="Target MongoDB URI")
    database: str = Field(default="REPORT", description="Target database name")
    collection: str = Field(default="your_collection", description="Target collection name")
    server_selection_timeout_ms: int = Field(default=10000, gt=0, description="Server selection timeout")


class CheckpointSettings(BaseSettings):
    """Where the resume position is persisted."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    backend: Literal["file", "sql"] = Field(default="file", description="Checkpoint backend")
    path: str = Field(default="./checkpoint.json", description="Checkpoint file path (file backend)")
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL (sql backend)"
    )
    job_id: str = Field(default="default", description="Job identifier (sql backend)")


class AlertSettings(BaseSettings):
    """Email alerting."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_ALERT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    enabled: bool = Field(default=False, description="Send alert emails")
    from_address: str = Field(default="alerts@localhost", description="Sender address")
    to_addresses: List[str] = Field(default_factory=list, description="Recipients")
    smtp_host: str = Field(default="localhost", description="SMTP server")
    smtp_port: int = Field(default=587, description="SMTP port")
    username: Optional[str] = Field(default=None, description="SMTP username")
    password: Optional[str] = Field(default=None, description="SMTP password")
    use_tls: bool = Field(default=True, description="Issue STARTTLS before login")
    subject_prefix: str = Field(default="[MongoDB CDC Alert]", description="Subject prefix")
    timeout_seconds: float = Field(default=30.0, gt=0, description="SMTP timeout")


class LogSettings(BaseSettings):
    """Log sink configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True
    )

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default="./cdc-replication.log", description="Log file, empty to disable")
    max_bytes: int = Field(default=20 * 1024 * 1024, gt=0, description="Rotate after this many bytes")
    backup_count: int = Field(default=14, ge=0, description="Rotated files to keep")
    json_format: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_prefix="CDC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True
    )

    # Batching
    batch_size: int = Field(default=1000, gt=0, description="Max events before flush")
    flush_interval_seconds: float = Field(default=5.0, gt=0, description="Max seconds before flush")
    max_await_time_ms: int = Field(default=1000, gt=0, description="Max wait per change stream getMore")

    # Retry
    reconnect_delay_seconds: float = Field(default=5.0, gt=0, description="Delay before reopening the stream")
    startup_retry_delay_seconds: float = Field(default=60.0, gt=0, description="Delay between connect attempts")

    # Checkpoint / health
    checkpoint_interval_seconds: float = Field(default=30.0, gt=0, description="Idle checkpoint heartbeat")
    health_check_interval_seconds: float = Field(default=300.0, gt=0, description="Health check period")
    health_stale_threshold_seconds: float = Field(default=300.0, gt=0, description="Max checkpoint age")

    metrics_port: Optional[int] = Field(default=None, description="Prometheus exporter port")

    # Sub-configurations
    source: SourceSettings = Field(default_factory=SourceSettings)
    target: TargetSettings = Field(default_factory=TargetSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    alert: AlertSettings = Field(default_factory=AlertSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @model_validator(mode="after")
    def validate_checkpoint_backend(self) -> "Settings":
        """SQL backend needs a database URL."""
        if self.checkpoint.backend == "sql" and not self.checkpoint.database_url:
            raise ValueError("CDC_CHECKPOINT_DATABASE_URL is required for the sql checkpoint backend")
        return self


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build a fresh settings instance from the environment (and an optional .env file)."""
    if env_file is None:
        return Settings()
    return Settings(
        _env_file=env_file,
        source=SourceSettings(_env_file=env_file),
        target=TargetSettings(_env_file=env_file),
        checkpoint=CheckpointSettings(_env_file=env_file),
        alert=AlertSettings(_env_file=env_file),
        log=LogSettings(_env_file=env_file),
    )
