"""ClusterForge schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Tables:
- clusters: aggregate root with limits and backup policy overrides
- health_status: one health record per cluster (versioned)
- health_events: append-only health audit trail
- backups: backup records (versioned)
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # Clusters
    # =========================================================================

    op.create_table(
        "clusters",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(63), unique=True, nullable=False),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("port", sa.Integer, unique=True, nullable=False),
        sa.Column("root_path", sa.String(1024), unique=True, nullable=False),
        sa.Column("cpu_cores", sa.Float, nullable=False),
        sa.Column("memory_mb", sa.Integer, nullable=False),
        sa.Column("disk_gb", sa.Integer, nullable=False),
        sa.Column("network_mbps", sa.Integer, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="CREATED"),
        sa.Column("container_id", sa.String(128), nullable=True),
        sa.Column("backup_policy", sa.JSON, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=True),
        sa.CheckConstraint(
            "status IN ('CREATED', 'RUNNING', 'STOPPED', 'FAILED')",
            name="valid_cluster_status",
        ),
        sa.CheckConstraint("cpu_cores > 0", name="positive_cpu_cores"),
        sa.CheckConstraint("memory_mb > 0", name="positive_memory_mb"),
        sa.CheckConstraint("disk_gb > 0", name="positive_disk_gb"),
    )
    op.create_index("idx_clusters_owner", "clusters", ["owner"])
    op.create_index("idx_clusters_status", "clusters", ["status"])

    # =========================================================================
    # Health monitoring
    # =========================================================================

    op.create_table(
        "health_status",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "cluster_id",
            sa.Uuid(),
            sa.ForeignKey("clusters.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("current_state", sa.String(20), nullable=False, server_default="UNKNOWN"),
        sa.Column("last_check_time", sa.DateTime, nullable=True),
        sa.Column("last_successful_check", sa.DateTime, nullable=True),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_recoveries", sa.Integer, nullable=False, server_default="0"),
        sa.Column("recovery_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_recovery_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("retry_interval_seconds", sa.Integer, nullable=False, server_default="60"),
        sa.Column("cooldown_period_seconds", sa.Integer, nullable=False, server_default="300"),
        sa.Column("monitoring_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_recovery_attempt", sa.DateTime, nullable=True),
        sa.Column("alert_threshold_failures", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_alert_time", sa.DateTime, nullable=True),
        sa.Column("container_status", sa.String(32), nullable=True),
        sa.Column("uptime_seconds", sa.Integer, nullable=True),
        sa.Column("restart_count", sa.Integer, nullable=True),
        sa.Column("response_time_ms", sa.Float, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("cpu_percent", sa.Float, nullable=True),
        sa.Column("memory_used_mb", sa.Float, nullable=True),
        sa.Column("memory_percent", sa.Float, nullable=True),
        sa.Column("disk_used_mb", sa.Float, nullable=True),
        sa.Column("disk_percent", sa.Float, nullable=True),
        sa.Column("network_rx_mb", sa.Float, nullable=True),
        sa.Column("network_tx_mb", sa.Float, nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.CheckConstraint(
            "current_state IN ('UNKNOWN', 'HEALTHY', 'UNHEALTHY', 'FAILED', 'RECOVERING')",
            name="valid_health_state",
        ),
        sa.CheckConstraint(
            "recovery_attempts <= max_recovery_attempts",
            name="recovery_attempts_bounded",
        ),
    )
    op.create_index("idx_health_status_state", "health_status", ["current_state"])

    op.create_table(
        "health_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("cluster_id", sa.Uuid(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("timestamp", sa.DateTime, nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("details", sa.JSON, nullable=False, server_default="{}"),
    )
    op.create_index(
        "idx_health_events_cluster_time",
        "health_events",
        ["cluster_id", "timestamp"],
    )
    op.create_index("idx_health_events_type", "health_events", ["event_type"])

    # =========================================================================
    # Backups
    # =========================================================================

    op.create_table(
        "backups",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("cluster_id", sa.Uuid(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("backup_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("storage_path", sa.String(1024), nullable=True),
        sa.Column("size_bytes", sa.BigInteger, nullable=True),
        sa.Column("compression_ratio", sa.Float, nullable=True),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("automatic", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("restore_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_restore_at", sa.DateTime, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("policy", sa.JSON, nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.CheckConstraint(
            "backup_type IN ('FULL', 'INCREMENTAL', 'CONFIG_ONLY', 'DATA_ONLY')",
            name="valid_backup_type",
        ),
        sa.CheckConstraint(
            "status IN ('IN_PROGRESS', 'COMPLETED', 'FAILED', 'CORRUPTED', 'EXPIRED')",
            name="valid_backup_status",
        ),
    )
    op.create_index("idx_backups_cluster_created", "backups", ["cluster_id", "created_at"])
    op.create_index("idx_backups_status", "backups", ["status"])
    op.create_index("idx_backups_expires_at", "backups", ["expires_at"])


def downgrade() -> None:
    op.drop_table("backups")
    op.drop_table("health_events")
    op.drop_table("health_status")
    op.drop_table("clusters")
