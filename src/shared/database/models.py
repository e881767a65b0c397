"""SQLAlchemy ORM models.

Timestamps are stored as naive UTC and always supplied by the service clock.
Health and backup rows are versioned so concurrent read-modify-write cycles
fail with StaleDataError instead of losing updates.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

# =============================================================================
# Cluster aggregate root
# =============================================================================


class ClusterModel(Base):
    """Cluster database model."""

    __tablename__ = "clusters"
    __table_args__ = (
        CheckConstraint(
            "status IN ('CREATED', 'RUNNING', 'STOPPED', 'FAILED')",
            name="valid_cluster_status",
        ),
        CheckConstraint("cpu_cores > 0", name="positive_cpu_cores"),
        CheckConstraint("memory_mb > 0", name="positive_memory_mb"),
        CheckConstraint("disk_gb > 0", name="positive_disk_gb"),
        Index("idx_clusters_owner", "owner"),
        Index("idx_clusters_status", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    root_path: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)
    cpu_cores: Mapped[float] = mapped_column(Float, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    disk_gb: Mapped[int] = mapped_column(Integer, nullable=False)
    network_mbps: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="CREATED")
    container_id: Mapped[str | None] = mapped_column(String(128))
    backup_policy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime)


# =============================================================================
# Health monitoring
# =============================================================================


class HealthStatusModel(Base):
    """Current health record, one per cluster."""

    __tablename__ = "health_status"
    __table_args__ = (
        CheckConstraint(
            "current_state IN ('UNKNOWN', 'HEALTHY', 'UNHEALTHY', 'FAILED', 'RECOVERING')",
            name="valid_health_state",
        ),
        CheckConstraint(
            "recovery_attempts <= max_recovery_attempts",
            name="recovery_attempts_bounded",
        ),
        Index("idx_health_status_state", "current_state"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cluster_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clusters.id"), unique=True, nullable=False
    )
    current_state: Mapped[str] = mapped_column(String(20), nullable=False, default="UNKNOWN")
    last_check_time: Mapped[datetime | None] = mapped_column(DateTime)
    last_successful_check: Mapped[datetime | None] = mapped_column(DateTime)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_recoveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recovery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_recovery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    cooldown_period_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    monitoring_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_recovery_attempt: Mapped[datetime | None] = mapped_column(DateTime)
    alert_threshold_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_alert_time: Mapped[datetime | None] = mapped_column(DateTime)
    event_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Latest observation
    container_status: Mapped[str | None] = mapped_column(String(32))
    uptime_seconds: Mapped[int | None] = mapped_column(Integer)
    restart_count: Mapped[int | None] = mapped_column(Integer)
    response_time_ms: Mapped[float | None] = mapped_column(Float)
    error_message: Mapped[str | None] = mapped_column(Text)
    cpu_percent: Mapped[float | None] = mapped_column(Float)
    memory_used_mb: Mapped[float | None] = mapped_column(Float)
    memory_percent: Mapped[float | None] = mapped_column(Float)
    disk_used_mb: Mapped[float | None] = mapped_column(Float)
    disk_percent: Mapped[float | None] = mapped_column(Float)
    network_rx_mb: Mapped[float | None] = mapped_column(Float)
    network_tx_mb: Mapped[float | None] = mapped_column(Float)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class HealthEventModel(Base):
    """Append-only health audit entry."""

    __tablename__ = "health_events"
    __table_args__ = (
        Index("idx_health_events_cluster_time", "cluster_id", "timestamp", "seq"),
        Index("idx_health_events_type", "event_type"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cluster_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("clusters.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class ClusterMetricsModel(Base):
    """Health check sample, one row per probe."""

    __tablename__ = "cluster_metrics"
    __table_args__ = (Index("idx_cluster_metrics_cluster_time", "cluster_id", "timestamp"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cluster_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("clusters.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    container_status: Mapped[str | None] = mapped_column(String(32))
    response_time_ms: Mapped[float | None] = mapped_column(Float)
    cpu_percent: Mapped[float | None] = mapped_column(Float)
    memory_used_mb: Mapped[float | None] = mapped_column(Float)
    memory_percent: Mapped[float | None] = mapped_column(Float)
    disk_used_mb: Mapped[float | None] = mapped_column(Float)
    disk_percent: Mapped[float | None] = mapped_column(Float)
    network_rx_mb: Mapped[float | None] = mapped_column(Float)
    network_tx_mb: Mapped[float | None] = mapped_column(Float)


class ClusterAlertModel(Base):
    """Stored alert, ACTIVE until the cluster is healthy again."""

    __tablename__ = "cluster_alerts"
    __table_args__ = (
        CheckConstraint(
            "severity IN ('CRITICAL', 'WARNING', 'RECOVERY')",
            name="valid_alert_severity",
        ),
        CheckConstraint("status IN ('ACTIVE', 'RESOLVED')", name="valid_alert_status"),
        Index("idx_cluster_alerts_cluster_created", "cluster_id", "created_at"),
        Index("idx_cluster_alerts_status", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cluster_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("clusters.id"), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ACTIVE")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime)


# =============================================================================
# Backups
# =============================================================================


class BackupModel(Base):
    """Backup record."""

    __tablename__ = "backups"
    __table_args__ = (
        CheckConstraint(
            "backup_type IN ('FULL', 'INCREMENTAL', 'CONFIG_ONLY', 'DATA_ONLY')",
            name="valid_backup_type",
        ),
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'COMPLETED', 'FAILED', 'CORRUPTED', 'EXPIRED')",
            name="valid_backup_status",
        ),
        Index("idx_backups_cluster_created", "cluster_id", "created_at"),
        Index("idx_backups_status", "status"),
        Index("idx_backups_expires_at", "expires_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cluster_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("clusters.id"), nullable=False)
    backup_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="IN_PROGRESS")
    storage_path: Mapped[str | None] = mapped_column(String(1024))
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    compression_ratio: Mapped[float | None] = mapped_column(Float)
    checksum: Mapped[str | None] = mapped_column(String(64))
    description: Mapped[str | None] = mapped_column(Text)
    automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    restore_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_restore_at: Mapped[datetime | None] = mapped_column(DateTime)
    error_message: Mapped[str | None] = mapped_column(Text)
    policy: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
