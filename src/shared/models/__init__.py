"""Shared data models for ClusterForge.

All models follow these conventions:
- Timestamps: naive UTC datetimes
- IDs: UUID v4
- Field names: lowercase snake_case
- Enums: uppercase SNAKE_CASE
"""

# Base
from .base import ClusterForgeBaseModel

# Backup domain
from .backup import (
    Backup,
    BackupPolicy,
    BackupStats,
    BackupStatus,
    BackupType,
)

# Cluster domain
from .cluster import (
    Cluster,
    ClusterCreate,
    ClusterLifecycleStatus,
    ResourceLimits,
)

# Event models
from .events import (
    Event,
    EventType,
)

# Health domain
from .health import (
    Alert,
    AlertSeverity,
    AlertStatus,
    ClusterMetrics,
    HealthEvent,
    HealthEventType,
    HealthMetricsPayload,
    HealthState,
    HealthStatus,
    RecoveryPolicy,
    ResourceSnapshot,
    SystemHealthStats,
)

__all__ = [
    # Base
    "ClusterForgeBaseModel",
    # Cluster
    "Cluster",
    "ClusterCreate",
    "ClusterLifecycleStatus",
    "ResourceLimits",
    # Health
    "Alert",
    "AlertSeverity",
    "AlertStatus",
    "ClusterMetrics",
    "HealthEvent",
    "HealthEventType",
    "HealthMetricsPayload",
    "HealthState",
    "HealthStatus",
    "RecoveryPolicy",
    "ResourceSnapshot",
    "SystemHealthStats",
    # Backup
    "Backup",
    "BackupPolicy",
    "BackupStats",
    "BackupStatus",
    "BackupType",
    # Events
    "Event",
    "EventType",
]
