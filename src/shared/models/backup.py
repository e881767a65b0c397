"""Backup domain models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import Field

from .base import ClusterForgeBaseModel


class BackupType(str, Enum):
    """What a backup archive contains."""

    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"
    CONFIG_ONLY = "CONFIG_ONLY"
    DATA_ONLY = "DATA_ONLY"


class BackupStatus(str, Enum):
    """Backup lifecycle status.

    IN_PROGRESS -> COMPLETED | FAILED; COMPLETED -> CORRUPTED | EXPIRED.
    """

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CORRUPTED = "CORRUPTED"
    EXPIRED = "EXPIRED"


class BackupPolicy(ClusterForgeBaseModel):
    """Per-cluster backup cadence and retention."""

    auto_backup_enabled: bool = True
    backup_interval_hours: int = Field(default=24, ge=1)
    retention_days: int = Field(default=30, ge=1)
    max_backups: int = Field(default=10, ge=1)


class Backup(ClusterForgeBaseModel):
    """A point-in-time archive of a cluster."""

    id: UUID
    cluster_id: UUID
    backup_type: BackupType
    status: BackupStatus
    storage_path: str | None = None
    size_bytes: int | None = None
    compression_ratio: float | None = None
    checksum: str | None = Field(default=None, description="SHA-256 hex digest of the archive")
    description: str | None = None
    automatic: bool = False
    created_at: datetime
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    restore_count: int = 0
    last_restore_at: datetime | None = None
    error_message: str | None = None
    policy: BackupPolicy | None = None


class BackupStats(ClusterForgeBaseModel):
    """Read-side rollup over the backup record set."""

    total_backups: int = 0
    completed_backups: int = 0
    failed_backups: int = 0
    corrupted_backups: int = 0
    automatic_backups: int = 0
    manual_backups: int = 0
    total_size_bytes: int = 0
    average_size_bytes: float = 0.0
    average_compression_ratio: float | None = None
    total_restores: int = 0
    backups_last_24h: int = 0
    backups_last_7d: int = 0
