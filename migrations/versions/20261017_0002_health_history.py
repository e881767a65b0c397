"""Health history tables.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-17

Changes:
- health_events.seq: per-cluster insertion order, numbered from
  health_status.event_seq
- cluster_metrics: one sample per health check
- cluster_alerts: stored alerts with ACTIVE/RESOLVED lifecycle
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # Event ordering
    # =========================================================================

    op.add_column(
        "health_status",
        sa.Column("event_seq", sa.Integer, nullable=False, server_default="0"),
    )
    op.add_column(
        "health_events",
        sa.Column("seq", sa.Integer, nullable=False, server_default="0"),
    )
    op.drop_index("idx_health_events_cluster_time", table_name="health_events")
    op.create_index(
        "idx_health_events_cluster_time",
        "health_events",
        ["cluster_id", "timestamp", "seq"],
    )

    # =========================================================================
    # Metrics history
    # =========================================================================

    op.create_table(
        "cluster_metrics",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("cluster_id", sa.Uuid(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("timestamp", sa.DateTime, nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("container_status", sa.String(32), nullable=True),
        sa.Column("response_time_ms", sa.Float, nullable=True),
        sa.Column("cpu_percent", sa.Float, nullable=True),
        sa.Column("memory_used_mb", sa.Float, nullable=True),
        sa.Column("memory_percent", sa.Float, nullable=True),
        sa.Column("disk_used_mb", sa.Float, nullable=True),
        sa.Column("disk_percent", sa.Float, nullable=True),
        sa.Column("network_rx_mb", sa.Float, nullable=True),
        sa.Column("network_tx_mb", sa.Float, nullable=True),
    )
    op.create_index(
        "idx_cluster_metrics_cluster_time",
        "cluster_metrics",
        ["cluster_id", "timestamp"],
    )

    # =========================================================================
    # Alerts
    # =========================================================================

    op.create_table(
        "cluster_alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("cluster_id", sa.Uuid(), sa.ForeignKey("clusters.id"), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
        sa.CheckConstraint(
            "severity IN ('CRITICAL', 'WARNING', 'RECOVERY')",
            name="valid_alert_severity",
        ),
        sa.CheckConstraint("status IN ('ACTIVE', 'RESOLVED')", name="valid_alert_status"),
    )
    op.create_index(
        "idx_cluster_alerts_cluster_created",
        "cluster_alerts",
        ["cluster_id", "created_at"],
    )
    op.create_index("idx_cluster_alerts_status", "cluster_alerts", ["status"])


def downgrade() -> None:
    op.drop_table("cluster_alerts")
    op.drop_table("cluster_metrics")
    op.drop_index("idx_health_events_cluster_time", table_name="health_events")
    op.create_index(
        "idx_health_events_cluster_time",
        "health_events",
        ["cluster_id", "timestamp"],
    )
    op.drop_column("health_events", "seq")
    op.drop_column("health_status", "event_seq")
