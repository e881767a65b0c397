"""Health monitoring data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    ClusterAlertModel,
    ClusterMetricsModel,
    HealthEventModel,
    HealthStatusModel,
)
from shared.models import Alert, AlertSeverity, AlertStatus, HealthState, RecoveryPolicy


class HealthRepository:
    """Repository for health records.

    Health status rows are versioned; ``save`` raises
    ``sqlalchemy.orm.exc.StaleDataError`` when another session committed a
    newer version of the same row first.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._active_alerts: list[ClusterAlertModel] = []

    async def get_by_cluster_id(self, cluster_id: UUID) -> HealthStatusModel | None:
        result = await self.session.execute(
            select(HealthStatusModel).where(HealthStatusModel.cluster_id == cluster_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self, cluster_id: UUID, policy: RecoveryPolicy
    ) -> HealthStatusModel:
        """Get the health record, creating it in UNKNOWN state on first use."""
        status = await self.get_by_cluster_id(cluster_id)
        if status:
            return status

        status = HealthStatusModel(
            cluster_id=cluster_id,
            current_state="UNKNOWN",
            consecutive_failures=0,
            total_failures=0,
            total_recoveries=0,
            recovery_attempts=0,
            max_recovery_attempts=policy.max_recovery_attempts,
            retry_interval_seconds=policy.retry_interval_seconds,
            cooldown_period_seconds=policy.cooldown_period_seconds,
            alert_threshold_failures=policy.alert_threshold_failures,
            monitoring_enabled=policy.monitoring_enabled,
            event_seq=0,
        )
        self.session.add(status)
        await self.session.flush()
        return status

    async def list_all(self) -> list[HealthStatusModel]:
        result = await self.session.execute(select(HealthStatusModel))
        return list(result.scalars().all())

    async def list_by_states(
        self, states: list[str], monitoring_enabled: bool = True
    ) -> list[HealthStatusModel]:
        """Health records in any of ``states``."""
        result = await self.session.execute(
            select(HealthStatusModel).where(
                HealthStatusModel.current_state.in_(states),
                HealthStatusModel.monitoring_enabled == monitoring_enabled,
            )
        )
        return list(result.scalars().all())

    async def save(self, status: HealthStatusModel) -> HealthStatusModel:
        """Commit pending changes to a health record (and any added events)."""
        self.session.add(status)
        await self.session.commit()
        return status

    def add_event(
        self,
        status: HealthStatusModel,
        event_type: str,
        message: str,
        timestamp: datetime,
        details: dict[str, Any] | None = None,
    ) -> HealthEventModel:
        """Stage an append-only health event; committed with the next save.

        Events are numbered from the versioned health record, so two writers
        can never commit the same sequence number for a cluster.
        """
        status.event_seq = (status.event_seq or 0) + 1
        event = HealthEventModel(
            cluster_id=status.cluster_id,
            seq=status.event_seq,
            event_type=event_type,
            message=message,
            timestamp=timestamp,
            details=details or {},
        )
        self.session.add(event)
        return event

    async def list_events(
        self,
        cluster_id: UUID,
        limit: int = 100,
        event_type: str | None = None,
    ) -> list[HealthEventModel]:
        """Most recent events first, latest insert first on equal timestamps."""
        query = select(HealthEventModel).where(HealthEventModel.cluster_id == cluster_id)
        if event_type:
            query = query.where(HealthEventModel.event_type == event_type)
        query = query.order_by(
            HealthEventModel.timestamp.desc(), HealthEventModel.seq.desc()
        ).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Metrics samples
    # -------------------------------------------------------------------------

    def add_metrics(self, status: HealthStatusModel, timestamp: datetime) -> ClusterMetricsModel:
        """Stage a sample of the observation currently held by ``status``."""
        sample = ClusterMetricsModel(
            cluster_id=status.cluster_id,
            timestamp=timestamp,
            state=status.current_state,
            container_status=status.container_status,
            response_time_ms=status.response_time_ms,
            cpu_percent=status.cpu_percent,
            memory_used_mb=status.memory_used_mb,
            memory_percent=status.memory_percent,
            disk_used_mb=status.disk_used_mb,
            disk_percent=status.disk_percent,
            network_rx_mb=status.network_rx_mb,
            network_tx_mb=status.network_tx_mb,
        )
        self.session.add(sample)
        return sample

    async def list_metrics(
        self,
        cluster_id: UUID,
        limit: int = 100,
        since: datetime | None = None,
    ) -> list[ClusterMetricsModel]:
        """Most recent samples first."""
        query = select(ClusterMetricsModel).where(ClusterMetricsModel.cluster_id == cluster_id)
        if since is not None:
            query = query.where(ClusterMetricsModel.timestamp >= since)
        query = query.order_by(ClusterMetricsModel.timestamp.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def delete_metrics_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(ClusterMetricsModel).where(ClusterMetricsModel.timestamp < cutoff)
        )
        await self.session.commit()
        return result.rowcount or 0

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def load_active_alerts(self, cluster_id: UUID) -> list[ClusterAlertModel]:
        """Load the open alerts of a cluster so ``resolve_alerts`` can close them."""
        result = await self.session.execute(
            select(ClusterAlertModel).where(
                ClusterAlertModel.cluster_id == cluster_id,
                ClusterAlertModel.status == AlertStatus.ACTIVE.value,
            )
        )
        self._active_alerts = list(result.scalars().all())
        return self._active_alerts

    def add_alert(self, alert: Alert) -> ClusterAlertModel:
        """Stage an alert; committed with the next save."""
        model = ClusterAlertModel(
            id=alert.id,
            cluster_id=alert.cluster_id,
            severity=AlertSeverity(alert.severity).value,
            status=AlertStatus(alert.status).value,
            title=alert.title,
            message=alert.message,
            state=HealthState(alert.state).value,
            consecutive_failures=alert.consecutive_failures,
            created_at=alert.created_at,
            resolved_at=alert.resolved_at,
        )
        self.session.add(model)
        return model

    def resolve_alerts(self, now: datetime) -> int:
        """Mark the loaded open alerts RESOLVED."""
        resolved = self._active_alerts
        for alert in resolved:
            alert.status = AlertStatus.RESOLVED.value
            alert.resolved_at = now
        self._active_alerts = []
        return len(resolved)

    async def list_alerts(
        self,
        cluster_id: UUID | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ClusterAlertModel]:
        """Newest alerts first, optionally for one cluster or one status."""
        query = select(ClusterAlertModel)
        if cluster_id is not None:
            query = query.where(ClusterAlertModel.cluster_id == cluster_id)
        if status:
            query = query.where(ClusterAlertModel.status == status)
        query = query.order_by(ClusterAlertModel.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())
