"""Configuration management with Pydantic Settings.

Environment variables are loaded from:
1. Environment variables (highest priority)
2. .env file (development)
3. Defaults (lowest priority)
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging level."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Logging format."""

    JSON = "json"
    TEXT = "text"


class DatabaseSettings(BaseSettings):
    """PostgreSQL database configuration."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="clusterforge", description="Database user")
    password: str = Field(default="", description="Database password")
    database: str = Field(default="clusterforge", description="Database name")

    @property
    def url(self) -> str:
        """Build database URL (sync driver)."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def async_url(self) -> str:
        """Build async database URL (asyncpg driver)."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class RedisSettings(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: str | None = Field(default=None, description="Redis password")

    @property
    def url(self) -> str:
        """Build Redis URL."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}"
        return f"redis://{self.host}:{self.port}"


class RuntimeSettings(BaseSettings):
    """Container runtime gateway configuration.

    Timeouts are per command. Archive work gets a base budget plus an
    allowance proportional to the amount of data being moved.
    """

    model_config = SettingsConfigDict(env_prefix="RUNTIME_")

    docker_binary: str = Field(default="docker", description="Container runtime CLI")
    image: str = Field(default="php:8.2-apache", description="Workload image")
    internal_port: int = Field(default=80, description="Port the workload listens on")
    data_mount: str = Field(
        default="/var/www/html", description="Container path of the cluster data directory"
    )
    data_dir_name: str = Field(default="src", description="Data directory under the cluster root")
    compose_file_name: str = Field(default="docker-compose.yml")
    service_name: str = Field(default="app", description="Compose service name")
    container_name_prefix: str = Field(default="clusterforge")

    lifecycle_timeout_seconds: float = Field(default=30.0)
    provision_timeout_seconds: float = Field(
        default=300.0, description="compose up may pull the image"
    )
    stop_grace_seconds: int = Field(default=10)
    exec_timeout_seconds: float = Field(default=60.0)
    archive_base_timeout_seconds: float = Field(default=120.0)
    archive_seconds_per_mb: float = Field(default=0.5)
    error_tail_lines: int = Field(default=20, description="Output lines kept on ProvisionError")

    tmpfs_mb_per_disk_gb: int = Field(default=100)
    tmpfs_max_mb: int = Field(default=500)

    def archive_timeout(self, size_bytes: int) -> float:
        """Timeout for archive creation or extraction of ``size_bytes`` of data."""
        size_mb = max(0, size_bytes) / (1024 * 1024)
        return self.archive_base_timeout_seconds + size_mb * self.archive_seconds_per_mb


class HealthSettings(BaseSettings):
    """Health monitoring and recovery defaults.

    These seed each cluster's recovery policy; the persisted health record can
    override them per cluster.
    """

    model_config = SettingsConfigDict(env_prefix="HEALTH_")

    max_recovery_attempts: int = Field(default=3, ge=0)
    retry_interval_seconds: int = Field(default=60, ge=0)
    cooldown_period_seconds: int = Field(default=300, ge=0)
    alert_threshold_failures: int = Field(default=3, ge=1)
    alert_debounce_seconds: int = Field(default=900, ge=0)
    monitoring_enabled: bool = Field(default=True)

    resource_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    max_concurrent_checks: int = Field(default=10, ge=1)
    metrics_retention_days: int = Field(default=7, ge=1, description="Age at which check samples are pruned")

    probe_command: list[str] | None = Field(
        default=None, description="Command executed inside the container; exit 0 means healthy"
    )
    http_endpoint: str | None = Field(
        default=None, description="Application health path checked over HTTP, e.g. /health"
    )
    http_host: str = Field(default="127.0.0.1")
    http_timeout_seconds: float = Field(default=10.0)
    slow_response_ms: int = Field(default=5000, description="Responses slower than this fail")


class BackupSettings(BaseSettings):
    """Backup and retention defaults."""

    model_config = SettingsConfigDict(env_prefix="BACKUP_")

    directory: Path = Field(default=Path("data/backups"))
    auto_backup_enabled: bool = Field(default=True)
    backup_interval_hours: int = Field(default=24, ge=1)
    retention_days: int = Field(default=30, ge=1)
    max_backups: int = Field(default=10, ge=1)
    automatic_backup_type: str = Field(default="FULL")


class SchedulerSettings(BaseSettings):
    """Intervals of the periodic loops."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = Field(default=True)
    health_check_interval_seconds: int = Field(default=60, ge=1)
    recovery_interval_seconds: int = Field(default=300, ge=1)
    automatic_backup_interval_seconds: int = Field(default=3600, ge=1)
    cleanup_interval_seconds: int = Field(default=86400, ge=1)
    error_backoff_seconds: int = Field(default=5, ge=0)


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use the appropriate prefix (e.g., POSTGRES_HOST).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="clusterforge", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        alias="ENV",
        description="Deployment environment",
    )

    # Logging configuration
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: LogFormat = Field(default=LogFormat.JSON, description="Logging format")

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server bind host")
    port: int = Field(default=8080, description="Server bind port")
    workers: int = Field(default=1, description="Number of worker processes")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Nested settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensure workers is at least 1."""
        return max(1, v)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses LRU cache to avoid re-parsing environment variables.
    """
    return Settings()


class ClusterForgeSettings(Settings):
    """Settings specific to the cluster manager service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str | None = Field(
        default=None,
        description="Full async database URL; overrides the POSTGRES_* settings",
    )

    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    # Defaults applied to clusters created without explicit limits
    default_cpu_cores: float = Field(default=1.0, gt=0)
    default_memory_mb: int = Field(default=512, gt=0)
    default_disk_gb: int = Field(default=5, gt=0)
    default_network_mbps: int | None = Field(default=None)

    @property
    def effective_database_url(self) -> str:
        """Database URL used by the service."""
        return self.database_url or self.database.async_url
