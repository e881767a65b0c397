"""Backup and retention engine.

Backups are gzip tarballs of the cluster root on the host, checksummed with
SHA-256. A running container is flushed and paused while its files are read
so the snapshot is consistent. Routine failures (runtime errors, full disks,
corrupt archives) end in an inspectable FAILED or CORRUPTED record; only
unknown ids and invalid policies raise.
"""

from __future__ import annotations

import asyncio
import tarfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config import BackupSettings
from shared.database.models import BackupModel, ClusterModel
from shared.models import (
    Backup,
    BackupPolicy,
    BackupStats,
    BackupStatus,
    BackupType,
    Cluster,
)
from shared.observability import OperationContext, get_logger

from ..clock import Clock, SystemClock
from ..exceptions import (
    BackupExportError,
    BackupImportError,
    BackupNotFoundError,
    ClusterNotFoundError,
    InvalidPolicyError,
    RuntimeGatewayError,
)
from ..repositories.backup_repository import BackupRepository
from ..repositories.cluster_repository import ClusterRepository
from ..runtime import RuntimeGateway, RuntimeHandle
from . import archive
from .converters import to_backup, to_cluster
from .event_service import EventService
from .locks import ClusterLocks

logger = get_logger(__name__)

# Failures that end a backup or restore as a recorded failure
ROUTINE_FAILURES = (RuntimeGatewayError, OSError, tarfile.TarError, asyncio.TimeoutError)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupService:
    """Creates, verifies, restores and expires cluster backups."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: RuntimeGateway,
        event_service: EventService,
        settings: BackupSettings | None = None,
        locks: ClusterLocks | None = None,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.event_service = event_service
        self.settings = settings or BackupSettings()
        self.locks = locks or ClusterLocks()
        self.clock = clock or SystemClock()

    @property
    def default_policy(self) -> BackupPolicy:
        return BackupPolicy(
            auto_backup_enabled=self.settings.auto_backup_enabled,
            backup_interval_hours=self.settings.backup_interval_hours,
            retention_days=self.settings.retention_days,
            max_backups=self.settings.max_backups,
        )

    def policy_for(self, cluster: ClusterModel | Cluster) -> BackupPolicy:
        """Effective policy: cluster overrides on top of the defaults."""
        overrides = cluster.backup_policy
        if isinstance(overrides, BackupPolicy):
            overrides = overrides.model_dump(exclude_unset=True)
        return self.default_policy.model_copy(update=overrides or {})

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_backup(
        self,
        cluster_id: UUID,
        backup_type: BackupType = BackupType.FULL,
        description: str | None = None,
        automatic: bool = False,
    ) -> Backup:
        """Snapshot a cluster into a checksummed archive.

        Returns:
            The backup record, COMPLETED or FAILED with error_message

        Raises:
            ClusterNotFoundError: Unknown cluster id
        """
        backup_type = BackupType(backup_type)
        async with self.session_factory() as session:
            cluster_row = await ClusterRepository(session).get_by_id(cluster_id)
            if cluster_row is None:
                raise ClusterNotFoundError(cluster_id)
            cluster = to_cluster(cluster_row)
            policy = self.policy_for(cluster_row)
            repo = BackupRepository(session)

            since = None
            if backup_type == BackupType.INCREMENTAL:
                previous = await repo.latest_for_cluster(cluster_id, BackupStatus.COMPLETED.value)
                since = previous.created_at if previous else None

            now = self.clock.now()
            backup_id = uuid4()
            record = await repo.create(
                {
                    "id": backup_id,
                    "cluster_id": cluster_id,
                    "backup_type": backup_type.value,
                    "status": BackupStatus.IN_PROGRESS.value,
                    "description": description,
                    "automatic": automatic,
                    "created_at": now,
                    "expires_at": now + timedelta(days=policy.retention_days),
                    "restore_count": 0,
                    "policy": policy.model_dump(),
                    "storage_path": str(self._archive_path(cluster_id, backup_id, backup_type, now)),
                }
            )

        log = logger.bind(backup_id=str(backup_id), backup_type=backup_type.value)
        async with self.locks.hold(cluster_id), OperationContext(str(cluster_id), "backup"):
            try:
                info, warning = await self._snapshot(
                    cluster, Path(record.storage_path), backup_type, since
                )
            except ROUTINE_FAILURES as e:
                error = _describe(e)
                log.warning("Backup failed", error=error)
                result = await self._finish(backup_id, failed=error)
            else:
                log.info(
                    "Backup completed",
                    size_bytes=info.size_bytes,
                    files=info.members,
                )
                result = await self._finish(backup_id, info=info, warning=warning)

        await self.event_service.publish_backup_finished(result)
        return result

    async def _snapshot(
        self,
        cluster: Cluster,
        destination: Path,
        backup_type: BackupType,
        since: datetime | None,
    ) -> tuple[archive.ArchiveInfo, str | None]:
        """Archive the cluster files, pausing a running container meanwhile.

        Returns:
            The archive measurements and the unpause error, if any
        """
        handle = self.gateway.handle_for(cluster)
        runtime = await self.gateway.inspect(handle)
        root = Path(cluster.root_path)
        if not root.is_dir():
            raise FileNotFoundError(f"Cluster root {root} does not exist")

        paused = False
        if runtime.running and not runtime.paused:
            flushed = await self.gateway.exec(handle, ["sync"])
            if not flushed.success:
                logger.warning("Filesystem sync failed before backup", exit_code=flushed.exit_code)
            await self.gateway.pause(handle)
            paused = True

        unpause_error = None
        try:
            files = await asyncio.to_thread(
                archive.select_members,
                root,
                backup_type,
                self.gateway.settings.data_dir_name,
                self.gateway.settings.compose_file_name,
                since,
            )
            size = await asyncio.to_thread(archive.total_size, files)
            timeout = self.gateway.settings.archive_timeout(size)
            info = await self._build(root, files, destination, timeout)
        finally:
            if paused:
                unpause_error = await self._unpause(handle)
        return info, unpause_error

    async def _build(
        self, root: Path, files: list[Path], destination: Path, timeout: float
    ) -> archive.ArchiveInfo:
        """Run the archive writer in a thread, stopping it on timeout."""
        cancelled = threading.Event()
        worker = asyncio.ensure_future(
            asyncio.to_thread(archive.build_archive, root, files, destination, cancelled)
        )
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        except asyncio.TimeoutError:
            cancelled.set()
            # Wait for the writer thread to stop before removing its output
            await asyncio.gather(worker, return_exceptions=True)
            await asyncio.to_thread(destination.unlink, missing_ok=True)
            raise

    async def _unpause(self, handle: RuntimeHandle) -> str | None:
        try:
            await self.gateway.unpause(handle)
        except RuntimeGatewayError as e:
            error = f"Container left paused: {_describe(e)}"
            logger.error("Unpause after backup failed", container=handle.container_name, error=error)
            return error
        return None

    async def _finish(
        self,
        backup_id: UUID,
        info: archive.ArchiveInfo | None = None,
        failed: str | None = None,
        warning: str | None = None,
    ) -> Backup:
        async with self.session_factory() as session:
            repo = BackupRepository(session)
            record = await repo.get_by_id(backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id)
            now = self.clock.now()
            if info is not None:
                record.status = BackupStatus.COMPLETED.value
                record.checksum = info.checksum
                record.size_bytes = info.size_bytes
                record.compression_ratio = info.compression_ratio
                record.storage_path = str(info.path)
                record.completed_at = now
                record.error_message = warning
            else:
                record.status = BackupStatus.FAILED.value
                record.error_message = failed
                record.completed_at = now
            await repo.save(record)
            return to_backup(record)

    async def create_automatic_backups(self) -> int:
        """Back up every cluster whose latest backup is older than its interval.

        Returns:
            Number of completed automatic backups
        """
        now = self.clock.now()
        async with self.session_factory() as session:
            clusters = await ClusterRepository(session).list_all()
            repo = BackupRepository(session)
            due: list[UUID] = []
            for cluster in clusters:
                policy = self.policy_for(cluster)
                if not policy.auto_backup_enabled:
                    continue
                latest = await repo.latest_for_cluster(cluster.id)
                interval = timedelta(hours=policy.backup_interval_hours)
                if latest is None or now > latest.created_at + interval:
                    due.append(cluster.id)

        created = 0
        backup_type = BackupType(self.settings.automatic_backup_type)
        for cluster_id in due:
            try:
                backup = await self.create_backup(
                    cluster_id, backup_type, "Automatic backup", automatic=True
                )
            except Exception as e:
                logger.error(
                    "Automatic backup raised",
                    cluster_id=str(cluster_id),
                    error=str(e),
                    exc_info=True,
                )
                continue
            if backup.status == BackupStatus.COMPLETED:
                created += 1

        if due:
            logger.info("Automatic backups completed", due=len(due), created=created)
        return created

    # =========================================================================
    # Integrity and restore
    # =========================================================================

    async def verify_backup_integrity(self, backup_id: UUID) -> bool:
        """Recompute the archive checksum and compare it to the stored one.

        A completed backup whose archive is missing, unreadable or altered is
        marked CORRUPTED.
        """
        async with self.session_factory() as session:
            repo = BackupRepository(session)
            record = await repo.get_by_id(backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id)

            if not record.checksum or not record.storage_path:
                return False

            problem = None
            try:
                actual = await asyncio.to_thread(archive.sha256_file, Path(record.storage_path))
                if actual != record.checksum:
                    problem = f"Checksum mismatch: expected {record.checksum[:12]}, got {actual[:12]}"
            except OSError as e:
                problem = f"Archive unreadable: {_describe(e)}"

            if problem is None:
                return True

            if record.status == BackupStatus.COMPLETED.value:
                record.status = BackupStatus.CORRUPTED.value
                record.error_message = problem
                await repo.save(record)
            logger.warning(
                "Backup integrity check failed",
                backup_id=str(backup_id),
                cluster_id=str(record.cluster_id),
                problem=problem,
            )
            return False

    async def restore_from_backup(self, backup_id: UUID, target_path: str | None = None) -> bool:
        """Restore a backup into the cluster root (or ``target_path``).

        The integrity check gates the restore: a mismatch returns False
        before the cluster is touched.

        Raises:
            BackupNotFoundError: Unknown backup id
        """
        backup = await self.get_backup(backup_id)
        if backup.status != BackupStatus.COMPLETED:
            logger.warning("Restore refused", backup_id=str(backup_id), status=backup.status)
            return False
        if not await self.verify_backup_integrity(backup_id):
            return False

        async with self.session_factory() as session:
            cluster_row = await ClusterRepository(session).get_by_id(backup.cluster_id)
            if cluster_row is None:
                raise ClusterNotFoundError(backup.cluster_id)
            cluster = to_cluster(cluster_row)

        target = Path(target_path) if target_path else Path(cluster.root_path)
        handle = self.gateway.handle_for(cluster)
        replace_data = backup.backup_type in (BackupType.FULL, BackupType.DATA_ONLY)

        async with self.locks.hold(cluster.id), OperationContext(str(cluster.id), "restore"):
            try:
                await self.gateway.stop(handle)
            except RuntimeGatewayError as e:
                logger.warning("Restore aborted, container did not stop", error=str(e))
                return False

            try:
                size = backup.size_bytes or 0
                restored = await asyncio.wait_for(
                    asyncio.to_thread(
                        archive.restore_archive,
                        Path(backup.storage_path),
                        target,
                        self.gateway.settings.data_dir_name,
                        replace_data,
                    ),
                    timeout=self.gateway.settings.archive_timeout(size),
                )
            except ROUTINE_FAILURES as e:
                logger.warning("Archive extraction failed", backup_id=str(backup_id), error=_describe(e))
                await self._restart_after_failed_restore(handle)
                return False

            try:
                await self.gateway.start(handle)
            except RuntimeGatewayError as e:
                logger.warning("Container did not start after restore", error=str(e))
                return False

        async with self.session_factory() as session:
            repo = BackupRepository(session)
            record = await repo.get_by_id(backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id)
            record.restore_count += 1
            record.last_restore_at = self.clock.now()
            await repo.save(record)
            result = to_backup(record)

        logger.info(
            "Backup restored",
            backup_id=str(backup_id),
            cluster_id=str(cluster.id),
            files=restored,
            target=str(target),
        )
        await self.event_service.publish_backup_restored(result, str(target))
        return True

    async def _restart_after_failed_restore(self, handle: RuntimeHandle) -> None:
        try:
            await self.gateway.start(handle)
        except RuntimeGatewayError as e:
            logger.error("Container left stopped after failed restore", error=str(e))

    # =========================================================================
    # Retention
    # =========================================================================

    async def cleanup_old_backups(self) -> int:
        """Remove expired and corrupted backups, then enforce max_backups.

        Returns:
            Number of backup records removed
        """
        now = self.clock.now()
        removed = 0
        async with self.session_factory() as session:
            repo = BackupRepository(session)

            for record in await repo.list_expired_or_corrupted(now):
                if record.status == BackupStatus.IN_PROGRESS.value:
                    continue
                reason = "corrupted" if record.status == BackupStatus.CORRUPTED.value else "expired"
                removed += await self._remove(session, repo, record, reason)

            for cluster in await ClusterRepository(session).list_all():
                policy = self.policy_for(cluster)
                completed = await repo.list_completed_oldest_first(cluster.id)
                excess = len(completed) - policy.max_backups
                for record in completed[: max(0, excess)]:
                    removed += await self._remove(session, repo, record, "max_backups exceeded")

        if removed:
            logger.info("Backup cleanup completed", removed=removed)
        return removed

    async def _remove(
        self,
        session: AsyncSession,
        repo: BackupRepository,
        record: BackupModel,
        reason: str,
    ) -> int:
        """Delete archive then record.

        A completed backup becomes EXPIRED only once its archive is gone; a
        failed deletion leaves the record as it was for the next sweep.
        """
        async with self.locks.hold(record.cluster_id):
            if record.storage_path:
                try:
                    await asyncio.to_thread(Path(record.storage_path).unlink, missing_ok=True)
                except OSError as e:
                    record.error_message = f"Archive deletion failed: {_describe(e)}"
                    await repo.save(record)
                    logger.warning(
                        "Backup archive deletion failed",
                        backup_id=str(record.id),
                        error=record.error_message,
                    )
                    return 0

            if record.status == BackupStatus.COMPLETED.value:
                record.status = BackupStatus.EXPIRED.value
                await repo.save(record)
            await repo.delete(record)
            logger.debug("Backup removed", backup_id=str(record.id), reason=reason)
            return 1

    # =========================================================================
    # Export / import
    # =========================================================================

    async def export_backup(self, backup_id: UUID, destination: str | Path) -> Path:
        """Copy a backup archive out of the managed set.

        Raises:
            BackupNotFoundError: Unknown backup id
            BackupExportError: The archive is missing or cannot be copied
        """
        backup = await self.get_backup(backup_id)
        if not backup.storage_path:
            raise BackupExportError(f"Backup {backup_id} has no archive")
        source = Path(backup.storage_path)
        if not source.is_file():
            raise BackupExportError(f"Archive {source} does not exist")
        try:
            exported = await asyncio.to_thread(archive.copy_archive, source, Path(destination))
        except OSError as e:
            raise BackupExportError(f"Export failed: {_describe(e)}") from e
        logger.info("Backup exported", backup_id=str(backup_id), destination=str(exported))
        return exported

    async def import_backup(self, source: str | Path, cluster_id: UUID) -> Backup:
        """Register an external archive as a FULL manual backup of a cluster.

        Raises:
            ClusterNotFoundError: Unknown cluster id
            BackupImportError: The source is missing or not a tar archive
        """
        source = Path(source)
        async with self.session_factory() as session:
            cluster_row = await ClusterRepository(session).get_by_id(cluster_id)
            if cluster_row is None:
                raise ClusterNotFoundError(cluster_id)
            policy = self.policy_for(cluster_row)

        if not source.is_file():
            raise BackupImportError(f"Archive {source} does not exist")

        now = self.clock.now()
        backup_id = uuid4()
        destination = self._cluster_dir(cluster_id) / (
            f"imported_{now.strftime(TIMESTAMP_FORMAT)}_{backup_id.hex[:8]}.tar.gz"
        )
        try:
            await asyncio.to_thread(archive.copy_archive, source, destination)
            info = await asyncio.to_thread(archive.inspect_archive, destination)
        except (OSError, tarfile.TarError) as e:
            destination.unlink(missing_ok=True)
            raise BackupImportError(f"Cannot import {source.name}: {_describe(e)}") from e

        async with self.session_factory() as session:
            record = await BackupRepository(session).create(
                {
                    "id": backup_id,
                    "cluster_id": cluster_id,
                    "backup_type": BackupType.FULL.value,
                    "status": BackupStatus.COMPLETED.value,
                    "description": f"Imported from {source.name}",
                    "automatic": False,
                    "created_at": now,
                    "completed_at": now,
                    "expires_at": now + timedelta(days=policy.retention_days),
                    "restore_count": 0,
                    "policy": policy.model_dump(),
                    "storage_path": str(destination),
                    "checksum": info.checksum,
                    "size_bytes": info.size_bytes,
                    "compression_ratio": info.compression_ratio,
                }
            )
            result = to_backup(record)

        logger.info("Backup imported", backup_id=str(backup_id), cluster_id=str(cluster_id))
        return result

    # =========================================================================
    # Queries and management
    # =========================================================================

    async def get_backup(self, backup_id: UUID) -> Backup:
        async with self.session_factory() as session:
            record = await BackupRepository(session).get_by_id(backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id)
            return to_backup(record)

    async def list_cluster_backups(self, cluster_id: UUID) -> list[Backup]:
        async with self.session_factory() as session:
            if not await ClusterRepository(session).get_by_id(cluster_id):
                raise ClusterNotFoundError(cluster_id)
            records = await BackupRepository(session).list_by_cluster(cluster_id)
            return [to_backup(r) for r in records]

    async def list_all_backups(self) -> list[Backup]:
        async with self.session_factory() as session:
            return [to_backup(r) for r in await BackupRepository(session).list_all()]

    async def delete_backup(self, backup_id: UUID) -> None:
        """Delete a backup archive and its record."""
        async with self.session_factory() as session:
            repo = BackupRepository(session)
            record = await repo.get_by_id(backup_id)
            if record is None:
                raise BackupNotFoundError(backup_id)
            async with self.locks.hold(record.cluster_id):
                if record.storage_path:
                    await asyncio.to_thread(Path(record.storage_path).unlink, missing_ok=True)
                await repo.delete(record)
        logger.info("Backup deleted", backup_id=str(backup_id))

    async def configure_backup_policy(
        self,
        cluster_id: UUID,
        auto_backup_enabled: bool | None = None,
        backup_interval_hours: int | None = None,
        retention_days: int | None = None,
        max_backups: int | None = None,
    ) -> BackupPolicy:
        """Override the backup policy of one cluster.

        Raises:
            ClusterNotFoundError: Unknown cluster id
            InvalidPolicyError: Interval, retention or max_backups below 1
        """
        for name, value in (
            ("backup_interval_hours", backup_interval_hours),
            ("retention_days", retention_days),
            ("max_backups", max_backups),
        ):
            if value is not None and value < 1:
                raise InvalidPolicyError(f"{name} must be >= 1, got {value}")

        async with self.session_factory() as session:
            repo = ClusterRepository(session)
            cluster = await repo.get_by_id(cluster_id)
            if cluster is None:
                raise ClusterNotFoundError(cluster_id)

            overrides = dict(cluster.backup_policy or {})
            for name, value in (
                ("auto_backup_enabled", auto_backup_enabled),
                ("backup_interval_hours", backup_interval_hours),
                ("retention_days", retention_days),
                ("max_backups", max_backups),
            ):
                if value is not None:
                    overrides[name] = value
            await repo.update(cluster_id, {"backup_policy": overrides}, self.clock.now())

        policy = self.default_policy.model_copy(update=overrides)
        logger.info("Backup policy updated", cluster_id=str(cluster_id), **policy.model_dump())
        return policy

    async def get_backup_stats(self) -> BackupStats:
        """Aggregate counts and sizes over all backup records."""
        now = self.clock.now()
        backups = await self.list_all_backups()

        sizes = [b.size_bytes for b in backups if b.size_bytes is not None]
        ratios = [b.compression_ratio for b in backups if b.compression_ratio is not None]
        stats = BackupStats(
            total_backups=len(backups),
            completed_backups=sum(1 for b in backups if b.status == BackupStatus.COMPLETED),
            failed_backups=sum(1 for b in backups if b.status == BackupStatus.FAILED),
            corrupted_backups=sum(1 for b in backups if b.status == BackupStatus.CORRUPTED),
            automatic_backups=sum(1 for b in backups if b.automatic),
            manual_backups=sum(1 for b in backups if not b.automatic),
            total_size_bytes=sum(sizes),
            average_size_bytes=round(sum(sizes) / len(sizes), 2) if sizes else 0.0,
            average_compression_ratio=round(sum(ratios) / len(ratios), 4) if ratios else None,
            total_restores=sum(b.restore_count for b in backups),
            backups_last_24h=sum(1 for b in backups if b.created_at > now - timedelta(hours=24)),
            backups_last_7d=sum(1 for b in backups if b.created_at > now - timedelta(days=7)),
        )
        return stats

    # =========================================================================
    # Internals
    # =========================================================================

    def _cluster_dir(self, cluster_id: UUID) -> Path:
        return Path(self.settings.directory) / str(cluster_id)

    def _archive_path(
        self, cluster_id: UUID, backup_id: UUID, backup_type: BackupType, created_at: datetime
    ) -> Path:
        name = (
            f"cluster_{cluster_id.hex[:8]}_{created_at.strftime(TIMESTAMP_FORMAT)}"
            f"_{backup_type.value.lower()}_{backup_id.hex[:8]}.tar.gz"
        )
        return self._cluster_dir(cluster_id) / name


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Archive operation timed out"
    return str(error) or error.__class__.__name__
