"""Health monitoring domain models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import Field

from .base import ClusterForgeBaseModel


class HealthState(str, Enum):
    """Health state of a cluster.

    UNKNOWN -> HEALTHY <-> UNHEALTHY -> FAILED -> RECOVERING -> HEALTHY | FAILED
    """

    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    FAILED = "FAILED"
    RECOVERING = "RECOVERING"


class HealthEventType(str, Enum):
    """Audit event kinds appended to a cluster's health history."""

    HEALTH_CHECK_PASSED = "HEALTH_CHECK_PASSED"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
    CONTAINER_STOPPED = "CONTAINER_STOPPED"
    CONTAINER_RESTARTED = "CONTAINER_RESTARTED"
    RESOURCE_LIMIT_EXCEEDED = "RESOURCE_LIMIT_EXCEEDED"
    RECOVERY_ATTEMPTED = "RECOVERY_ATTEMPTED"
    RECOVERY_SUCCEEDED = "RECOVERY_SUCCEEDED"
    RECOVERY_FAILED = "RECOVERY_FAILED"
    ALERT_TRIGGERED = "ALERT_TRIGGERED"


class AlertSeverity(str, Enum):
    """Alert severity levels."""

    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    RECOVERY = "RECOVERY"


class AlertStatus(str, Enum):
    """Alert lifecycle: ACTIVE until the cluster is healthy again."""

    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


class RecoveryPolicy(ClusterForgeBaseModel):
    """Recovery and alerting policy of a single cluster."""

    max_recovery_attempts: int = Field(default=3, ge=0)
    retry_interval_seconds: int = Field(default=60, ge=0)
    cooldown_period_seconds: int = Field(default=300, ge=0)
    alert_threshold_failures: int = Field(default=3, ge=1)
    monitoring_enabled: bool = True


class ResourceSnapshot(ClusterForgeBaseModel):
    """Latest resource usage sample of a container."""

    cpu_percent: float | None = None
    memory_used_mb: float | None = None
    memory_percent: float | None = None
    disk_used_mb: float | None = None
    disk_percent: float | None = None
    network_rx_mb: float | None = None
    network_tx_mb: float | None = None


class HealthStatus(ClusterForgeBaseModel):
    """Current health record of a cluster (one per cluster)."""

    id: UUID
    cluster_id: UUID
    current_state: HealthState = HealthState.UNKNOWN
    last_check_time: datetime | None = None
    last_successful_check: datetime | None = None
    consecutive_failures: int = 0
    total_failures: int = 0
    total_recoveries: int = 0
    recovery_attempts: int = 0
    max_recovery_attempts: int = 3
    retry_interval_seconds: int = 60
    cooldown_period_seconds: int = 300
    monitoring_enabled: bool = True
    last_recovery_attempt: datetime | None = None
    alert_threshold_failures: int = 3
    last_alert_time: datetime | None = None
    container_status: str | None = None
    uptime_seconds: int | None = None
    restart_count: int | None = None
    response_time_ms: float | None = None
    error_message: str | None = None
    resources: ResourceSnapshot = Field(default_factory=ResourceSnapshot)


class HealthEvent(ClusterForgeBaseModel):
    """Append-only health audit entry."""

    id: UUID
    cluster_id: UUID
    event_type: HealthEventType
    timestamp: datetime
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Alert(ClusterForgeBaseModel):
    """Alert emitted for an incident or a successful recovery."""

    id: UUID | None = None
    cluster_id: UUID
    severity: AlertSeverity
    title: str
    message: str
    state: HealthState
    consecutive_failures: int = 0
    created_at: datetime
    status: AlertStatus = AlertStatus.ACTIVE
    resolved_at: datetime | None = None


class ClusterMetrics(ClusterForgeBaseModel):
    """One stored health check sample of a cluster."""

    id: UUID
    cluster_id: UUID
    timestamp: datetime
    state: HealthState
    container_status: str | None = None
    response_time_ms: float | None = None
    cpu_percent: float | None = None
    memory_used_mb: float | None = None
    memory_percent: float | None = None
    disk_used_mb: float | None = None
    disk_percent: float | None = None
    network_rx_mb: float | None = None
    network_tx_mb: float | None = None


class HealthMetricsPayload(ClusterForgeBaseModel):
    """Live metrics projection of a HealthStatus for dashboards."""

    cluster_id: UUID
    state: HealthState
    cpu_usage_percent: float | None = None
    memory_usage_percent: float | None = None
    disk_usage_percent: float | None = None
    uptime_seconds: int | None = None
    error_message: str | None = None
    timestamp: datetime


class SystemHealthStats(ClusterForgeBaseModel):
    """Fleet-wide health rollup."""

    total_clusters: int = 0
    healthy: int = 0
    unhealthy: int = 0
    failed: int = 0
    recovering: int = 0
    unknown: int = 0
    monitoring_disabled: int = 0
    total_failures: int = 0
    total_recoveries: int = 0
    health_percentage: float = 0.0
