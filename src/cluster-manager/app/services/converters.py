"""ORM to API model conversion."""

from __future__ import annotations

from shared.database.models import (
    BackupModel,
    ClusterAlertModel,
    ClusterMetricsModel,
    ClusterModel,
    HealthEventModel,
    HealthStatusModel,
)
from shared.models import (
    Alert,
    Backup,
    BackupPolicy,
    Cluster,
    ClusterMetrics,
    HealthEvent,
    HealthStatus,
    ResourceLimits,
    ResourceSnapshot,
)


def to_cluster(model: ClusterModel) -> Cluster:
    return Cluster(
        id=model.id,
        name=model.name,
        owner=model.owner,
        port=model.port,
        root_path=model.root_path,
        limits=ResourceLimits(
            cpu_cores=model.cpu_cores,
            memory_mb=model.memory_mb,
            disk_gb=model.disk_gb,
            network_mbps=model.network_mbps,
        ),
        status=model.status,
        container_id=model.container_id,
        backup_policy=BackupPolicy(**(model.backup_policy or {})),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def to_health_status(model: HealthStatusModel) -> HealthStatus:
    status = HealthStatus.model_validate(model)
    return status.model_copy(update={"resources": ResourceSnapshot.model_validate(model)})


def to_health_event(model: HealthEventModel) -> HealthEvent:
    return HealthEvent.model_validate(model)


def to_cluster_metrics(model: ClusterMetricsModel) -> ClusterMetrics:
    return ClusterMetrics.model_validate(model)


def to_alert(model: ClusterAlertModel) -> Alert:
    return Alert.model_validate(model)


def to_backup(model: BackupModel) -> Backup:
    # policy is stored as JSON and validated into BackupPolicy
    return Backup.model_validate(model)
