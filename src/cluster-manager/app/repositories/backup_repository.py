"""Backup data access repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import BackupModel


class BackupRepository:
    """Repository for backup records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, data: dict[str, Any]) -> BackupModel:
        backup = BackupModel(**data)
        self.session.add(backup)
        await self.session.commit()
        await self.session.refresh(backup)
        return backup

    async def get_by_id(self, backup_id: UUID) -> BackupModel | None:
        result = await self.session.execute(
            select(BackupModel).where(BackupModel.id == backup_id)
        )
        return result.scalar_one_or_none()

    async def list_by_cluster(self, cluster_id: UUID) -> list[BackupModel]:
        """Backups of a cluster, newest first."""
        result = await self.session.execute(
            select(BackupModel)
            .where(BackupModel.cluster_id == cluster_id)
            .order_by(BackupModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[BackupModel]:
        result = await self.session.execute(
            select(BackupModel).order_by(BackupModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def latest_for_cluster(
        self, cluster_id: UUID, status: str | None = None
    ) -> BackupModel | None:
        """Most recent backup of a cluster, optionally restricted to a status."""
        query = select(BackupModel).where(BackupModel.cluster_id == cluster_id)
        if status:
            query = query.where(BackupModel.status == status)
        query = query.order_by(BackupModel.created_at.desc()).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_expired_or_corrupted(self, now: datetime) -> list[BackupModel]:
        """Backups past their expiry or in CORRUPTED/EXPIRED status."""
        result = await self.session.execute(
            select(BackupModel).where(
                or_(
                    BackupModel.expires_at < now,
                    BackupModel.status.in_(("CORRUPTED", "EXPIRED")),
                )
            )
        )
        return list(result.scalars().all())

    async def list_completed_oldest_first(self, cluster_id: UUID) -> list[BackupModel]:
        """Completed backups ordered by creation time, then id."""
        result = await self.session.execute(
            select(BackupModel).where(
                BackupModel.cluster_id == cluster_id,
                BackupModel.status == "COMPLETED",
            )
        )
        backups = list(result.scalars().all())
        # Ordered in Python: UUID ordering differs between backends
        backups.sort(key=lambda b: (b.created_at, str(b.id)))
        return backups

    async def save(self, backup: BackupModel) -> BackupModel:
        self.session.add(backup)
        await self.session.commit()
        return backup

    async def delete(self, backup: BackupModel) -> None:
        await self.session.delete(backup)
        await self.session.commit()
