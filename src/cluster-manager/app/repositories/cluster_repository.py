"""Cluster data access repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    BackupModel,
    ClusterAlertModel,
    ClusterMetricsModel,
    ClusterModel,
    HealthEventModel,
    HealthStatusModel,
)


class ClusterRepository:
    """Repository for cluster data access."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, data: dict[str, Any]) -> ClusterModel:
        """Create a new cluster."""
        cluster = ClusterModel(**data)
        self.session.add(cluster)
        await self.session.commit()
        await self.session.refresh(cluster)
        return cluster

    async def get_by_id(self, cluster_id: UUID) -> ClusterModel | None:
        """Get cluster by ID."""
        result = await self.session.execute(
            select(ClusterModel).where(ClusterModel.id == cluster_id)
        )
        return result.scalar_one_or_none()

    async def find_conflict(self, name: str, port: int, root_path: str) -> ClusterModel | None:
        """Find a cluster that already uses the name, port or root path."""
        result = await self.session.execute(
            select(ClusterModel).where(
                or_(
                    ClusterModel.name == name,
                    ClusterModel.port == port,
                    ClusterModel.root_path == root_path,
                )
            )
        )
        return result.scalars().first()

    async def list_all(self) -> list[ClusterModel]:
        """List all clusters ordered by creation time."""
        result = await self.session.execute(
            select(ClusterModel).order_by(ClusterModel.created_at, ClusterModel.name)
        )
        return list(result.scalars().all())

    async def update(
        self, cluster_id: UUID, data: dict[str, Any], now: datetime
    ) -> ClusterModel | None:
        """Update a cluster."""
        cluster = await self.get_by_id(cluster_id)
        if not cluster:
            return None

        for key, value in data.items():
            setattr(cluster, key, value)

        cluster.updated_at = now
        await self.session.commit()
        await self.session.refresh(cluster)
        return cluster

    async def delete_cluster_aggregate(self, cluster_id: UUID) -> bool:
        """Delete a cluster with its health data and backup records.

        All deletes run in one transaction.
        """
        cluster = await self.get_by_id(cluster_id)
        if not cluster:
            return False

        await self.session.execute(
            delete(HealthEventModel).where(HealthEventModel.cluster_id == cluster_id)
        )
        for model in (ClusterMetricsModel, ClusterAlertModel):
            await self.session.execute(delete(model).where(model.cluster_id == cluster_id))
        await self.session.execute(
            delete(HealthStatusModel).where(HealthStatusModel.cluster_id == cluster_id)
        )
        await self.session.execute(
            delete(BackupModel).where(BackupModel.cluster_id == cluster_id)
        )
        await self.session.execute(delete(ClusterModel).where(ClusterModel.id == cluster_id))
        await self.session.commit()
        return True
