"""Cluster lifecycle service.

Thin glue between the persisted cluster aggregate and the runtime gateway:
create, start, stop, delete and limit updates.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.models import (
    BackupStatus,
    BackupType,
    Cluster,
    ClusterCreate,
    ClusterLifecycleStatus,
    ResourceLimits,
)
from shared.observability import OperationContext, get_logger

from ..clock import Clock, SystemClock
from ..exceptions import (
    ClusterAlreadyExistsError,
    ClusterNotFoundError,
    InvalidLimitsError,
    RuntimeGatewayError,
)
from ..repositories.cluster_repository import ClusterRepository
from ..runtime import RuntimeGateway
from .backup_service import BackupService
from .converters import to_cluster
from .event_service import EventService
from .locks import ClusterLocks

logger = get_logger(__name__)


class ClusterService:
    """Service for cluster lifecycle operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: RuntimeGateway,
        event_service: EventService,
        default_limits: ResourceLimits | None = None,
        locks: ClusterLocks | None = None,
        clock: Clock | None = None,
        backup_service: BackupService | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.event_service = event_service
        self.backup_service = backup_service
        self.default_limits = default_limits or ResourceLimits(
            cpu_cores=1.0, memory_mb=512, disk_gb=5
        )
        self.locks = locks or ClusterLocks()
        self.clock = clock or SystemClock()

    async def create(self, request: ClusterCreate) -> Cluster:
        """Persist a cluster and bring its container up.

        A provisioning failure leaves the cluster FAILED rather than raising,
        so recovery can pick it up. A running cluster gets an initial
        CONFIG_ONLY backup when a backup service is configured.

        Raises:
            ClusterAlreadyExistsError: Name, port or root path already in use
        """
        async with self.session_factory() as session:
            repo = ClusterRepository(session)
            existing = await repo.find_conflict(request.name, request.port, request.root_path)
            if existing:
                raise ClusterAlreadyExistsError(
                    f"Cluster '{existing.name}' already uses this name, port or root path"
                )

            limits = request.limits or self.default_limits
            policy = request.backup_policy.model_dump(exclude_unset=True) if request.backup_policy else {}
            model = await repo.create(
                {
                    "id": uuid4(),
                    "name": request.name,
                    "owner": request.owner,
                    "port": request.port,
                    "root_path": request.root_path,
                    "cpu_cores": limits.cpu_cores,
                    "memory_mb": limits.memory_mb,
                    "disk_gb": limits.disk_gb,
                    "network_mbps": limits.network_mbps,
                    "status": ClusterLifecycleStatus.CREATED.value,
                    "backup_policy": policy,
                    "created_at": self.clock.now(),
                }
            )
            cluster = to_cluster(model)

        logger.info("Cluster created", cluster_id=str(cluster.id), name=cluster.name)
        await self.event_service.publish_cluster_created(cluster)

        async with self.locks.hold(cluster.id), OperationContext(str(cluster.id), "provision"):
            cluster = await self._provision(cluster)

        if self.backup_service is not None and cluster.status == ClusterLifecycleStatus.RUNNING:
            await self._initial_backup(cluster.id)
        return cluster

    async def _initial_backup(self, cluster_id: UUID) -> None:
        """Take the first CONFIG_ONLY backup; failures never fail creation."""
        try:
            backup = await self.backup_service.create_backup(
                cluster_id, BackupType.CONFIG_ONLY, "Initial backup", automatic=True
            )
        except Exception as e:
            logger.error(
                "Initial backup raised",
                cluster_id=str(cluster_id),
                error=str(e),
                exc_info=True,
            )
            return
        if backup.status != BackupStatus.COMPLETED:
            logger.warning(
                "Initial backup failed", cluster_id=str(cluster_id), error=backup.error_message
            )

    async def get(self, cluster_id: UUID) -> Cluster:
        async with self.session_factory() as session:
            model = await ClusterRepository(session).get_by_id(cluster_id)
            if not model:
                raise ClusterNotFoundError(cluster_id)
            return to_cluster(model)

    async def list(self) -> list[Cluster]:
        async with self.session_factory() as session:
            return [to_cluster(m) for m in await ClusterRepository(session).list_all()]

    async def start(self, cluster_id: UUID) -> Cluster:
        """Start a stopped cluster, re-provisioning if its container is gone."""
        cluster = await self.get(cluster_id)
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "start"):
            handle = self.gateway.handle_for(cluster)
            runtime = await self.gateway.inspect(handle)
            if not runtime.exists:
                return await self._provision(cluster)
            try:
                if runtime.paused:
                    await self.gateway.unpause(handle)
                elif not runtime.running:
                    await self.gateway.start(handle)
            except RuntimeGatewayError as e:
                logger.warning("Cluster start failed", error=str(e))
                return await self._set_status(cluster, ClusterLifecycleStatus.FAILED)
            return await self._set_status(cluster, ClusterLifecycleStatus.RUNNING)

    async def stop(self, cluster_id: UUID) -> Cluster:
        """Stop a cluster. Stopped clusters are skipped by probes and recovery."""
        cluster = await self.get(cluster_id)
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "stop"):
            await self.gateway.stop(self.gateway.handle_for(cluster))
            return await self._set_status(cluster, ClusterLifecycleStatus.STOPPED)

    async def delete(self, cluster_id: UUID) -> None:
        """Tear down the container and delete the cluster with all its records."""
        cluster = await self.get(cluster_id)
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "delete"):
            await self.gateway.down(self.gateway.handle_for(cluster))
            async with self.session_factory() as session:
                await ClusterRepository(session).delete_cluster_aggregate(cluster_id)
        self.locks.discard(cluster_id)

        logger.info("Cluster deleted", cluster_id=str(cluster_id), name=cluster.name)
        await self.event_service.publish_cluster_deleted(cluster_id)

    async def update_limits(self, cluster_id: UUID, limits: ResourceLimits | dict[str, Any]) -> Cluster:
        """Change resource limits and re-apply the Compose spec.

        Raises:
            ClusterNotFoundError: Unknown cluster id
            InvalidLimitsError: Limits fail validation
        """
        if isinstance(limits, dict):
            try:
                limits = ResourceLimits.model_validate(limits)
            except ValidationError as e:
                raise InvalidLimitsError(str(e)) from e

        cluster = await self.get(cluster_id)
        changes = {
            key: value
            for key, value in limits.model_dump().items()
            if getattr(cluster.limits, key) != value
        }
        if not changes:
            return cluster

        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "update_limits"):
            async with self.session_factory() as session:
                model = await ClusterRepository(session).update(cluster_id, changes, self.clock.now())
                if not model:
                    raise ClusterNotFoundError(cluster_id)
                cluster = to_cluster(model)

            logger.info("Cluster limits updated", changes=changes)
            await self.event_service.publish_cluster_updated(cluster, changes)
            if cluster.status == ClusterLifecycleStatus.STOPPED:
                self.gateway.write_spec(cluster)
                return cluster
            return await self._provision(cluster)

    async def _provision(self, cluster: Cluster) -> Cluster:
        """Apply the Compose spec and record the outcome on the cluster."""
        try:
            handle = await self.gateway.apply(cluster)
        except RuntimeGatewayError as e:
            logger.error("Cluster provisioning failed", error=str(e))
            return await self._set_status(cluster, ClusterLifecycleStatus.FAILED)
        return await self._set_status(
            cluster, ClusterLifecycleStatus.RUNNING, container_id=handle.container_id
        )

    async def _set_status(
        self,
        cluster: Cluster,
        status: ClusterLifecycleStatus,
        container_id: str | None = None,
    ) -> Cluster:
        data: dict[str, Any] = {"status": status.value}
        if container_id:
            data["container_id"] = container_id
        async with self.session_factory() as session:
            model = await ClusterRepository(session).update(cluster.id, data, self.clock.now())
            if not model:
                raise ClusterNotFoundError(cluster.id)
            updated = to_cluster(model)

        if cluster.status != updated.status:
            await self.event_service.publish_cluster_status_changed(
                cluster.id, cluster.status, updated.status
            )
        return updated
