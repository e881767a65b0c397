"""Tests for backups, restore and retention."""

import os
import shutil
import tarfile
import threading
from datetime import timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from shared.models import BackupStatus, BackupType
from shared.models.events import EventType

from app.exceptions import (
    BackupExportError,
    BackupImportError,
    BackupNotFoundError,
    ClusterNotFoundError,
    InvalidPolicyError,
    RuntimeCommandError,
)
from app.repositories.backup_repository import BackupRepository
from app.services.archive import (
    ArchiveCancelledError,
    build_archive,
    restore_archive,
    sha256_file,
)


def archive_names(path: str) -> list[str]:
    with tarfile.open(path, "r:gz") as tar:
        return sorted(m.name for m in tar.getmembers() if m.isfile())


def data_dir(cluster) -> Path:
    return Path(cluster.root_path) / "src"


def set_mtime(path: Path, when) -> None:
    ts = when.replace(tzinfo=timezone.utc).timestamp()
    os.utime(path, (ts, ts))


class TestCreateBackup:
    """Test backup creation."""

    async def test_full_backup_of_running_cluster(self, backup_service, cluster, gateway, clock, mock_redis, backup_settings):
        backup = await backup_service.create_backup(cluster.id, BackupType.FULL, "before upgrade")

        assert backup.status == BackupStatus.COMPLETED
        assert len(backup.checksum) == 64
        assert backup.checksum == sha256_file(Path(backup.storage_path))
        assert backup.size_bytes == Path(backup.storage_path).stat().st_size
        assert backup.compression_ratio is not None
        assert backup.description == "before upgrade"
        assert backup.automatic is False
        assert backup.completed_at == clock.now()
        assert backup.expires_at == backup.created_at + timedelta(days=30)
        assert backup.policy.retention_days == 30

        path = Path(backup.storage_path)
        assert path.parent == backup_settings.directory / str(cluster.id)
        assert path.name.startswith(f"cluster_{cluster.id.hex[:8]}_20260101_120000_full_")
        assert archive_names(backup.storage_path) == [
            "docker-compose.yml",
            "src/assets/app.css",
            "src/index.php",
        ]

        assert gateway.actions() == ["inspect", "exec", "pause", "unpause"]
        assert mock_redis.event_types()[-1] == EventType.BACKUP_COMPLETED

    async def test_stopped_cluster_is_not_paused(self, backup_service, cluster, gateway):
        gateway.running = False

        backup = await backup_service.create_backup(cluster.id)

        assert backup.status == BackupStatus.COMPLETED
        assert gateway.actions() == ["inspect"]

    async def test_config_only_backup(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id, BackupType.CONFIG_ONLY)
        assert archive_names(backup.storage_path) == ["docker-compose.yml"]

    async def test_data_only_backup(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id, BackupType.DATA_ONLY)
        assert archive_names(backup.storage_path) == ["src/assets/app.css", "src/index.php"]

    async def test_incremental_backup_takes_changed_files(self, backup_service, cluster, clock):
        earlier = clock.now() - timedelta(days=1)
        for path in Path(cluster.root_path).rglob("*"):
            if path.is_file():
                set_mtime(path, earlier)
        await backup_service.create_backup(cluster.id, BackupType.FULL)

        clock.advance(hours=2)
        changed = data_dir(cluster) / "index.php"
        changed.write_text("<?php echo 'v2';\n")
        set_mtime(changed, clock.now() - timedelta(hours=1))

        backup = await backup_service.create_backup(cluster.id, BackupType.INCREMENTAL)

        assert backup.backup_type == BackupType.INCREMENTAL
        assert archive_names(backup.storage_path) == ["src/index.php"]

    async def test_incremental_without_previous_backup_is_full(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id, BackupType.INCREMENTAL)
        assert len(archive_names(backup.storage_path)) == 3

    async def test_missing_root_fails_but_keeps_record(self, backup_service, cluster, gateway, mock_redis):
        gateway.running = False
        shutil.rmtree(cluster.root_path)

        backup = await backup_service.create_backup(cluster.id)

        assert backup.status == BackupStatus.FAILED
        assert "does not exist" in backup.error_message
        assert backup.checksum is None
        assert (await backup_service.get_backup(backup.id)).status == BackupStatus.FAILED
        assert mock_redis.event_types()[-1] == EventType.BACKUP_FAILED

    async def test_runtime_error_fails_backup(self, backup_service, cluster, gateway):
        gateway.inspect_error = RuntimeCommandError(["docker", "inspect"], 1, "daemon unavailable")

        backup = await backup_service.create_backup(cluster.id)

        assert backup.status == BackupStatus.FAILED
        assert "daemon unavailable" in backup.error_message

    async def test_unpause_failure_keeps_archive(self, backup_service, health_service, cluster, gateway):
        gateway.unpause_error = RuntimeCommandError(["docker", "unpause"], 1, "cgroup is frozen")

        backup = await backup_service.create_backup(cluster.id)

        assert backup.status == BackupStatus.COMPLETED
        assert Path(backup.storage_path).is_file()
        assert backup.checksum == sha256_file(Path(backup.storage_path))
        assert "Container left paused" in backup.error_message
        assert gateway.paused is True

        status = await health_service.probe(cluster.id)
        assert status.error_message == "Container is paused"

    async def test_archive_timeout_leaves_no_file(self, backup_service, cluster, gateway):
        gateway.settings.archive_base_timeout_seconds = 0
        gateway.settings.archive_seconds_per_mb = 0

        backup = await backup_service.create_backup(cluster.id)

        assert backup.status == BackupStatus.FAILED
        assert backup.error_message == "Archive operation timed out"
        assert not Path(backup.storage_path).exists()
        assert gateway.actions()[-1] == "unpause"
        assert gateway.paused is False

    async def test_unknown_cluster(self, backup_service):
        with pytest.raises(ClusterNotFoundError):
            await backup_service.create_backup(uuid4())


class TestRestore:
    """Test restore and integrity checks."""

    async def test_round_trip_restores_content(self, backup_service, cluster, gateway, clock, mock_redis):
        index = data_dir(cluster) / "index.php"
        original = index.read_bytes()
        backup = await backup_service.create_backup(cluster.id)

        index.write_text("<?php echo 'broken';\n")
        (data_dir(cluster) / "stray.txt").write_text("left over")
        gateway.calls.clear()
        clock.advance(hours=1)

        assert await backup_service.restore_from_backup(backup.id) is True

        assert index.read_bytes() == original
        assert not (data_dir(cluster) / "stray.txt").exists()
        assert gateway.lifecycle_actions() == ["stop", "start"]
        restored = await backup_service.get_backup(backup.id)
        assert restored.restore_count == 1
        assert restored.last_restore_at == clock.now()
        assert mock_redis.event_types()[-1] == EventType.BACKUP_RESTORED
        assert not any(p.name.startswith(".restore-") for p in Path(cluster.root_path).iterdir())

    async def test_restore_into_target_path(self, backup_service, cluster, tmp_path):
        backup = await backup_service.create_backup(cluster.id)
        target = tmp_path / "restored"

        assert await backup_service.restore_from_backup(backup.id, str(target)) is True

        assert (target / "src" / "index.php").exists()
        assert (target / "docker-compose.yml").exists()

    async def test_tampered_archive_is_refused(self, backup_service, cluster, gateway):
        backup = await backup_service.create_backup(cluster.id)
        with open(backup.storage_path, "ab") as f:
            f.write(b"tampered")
        gateway.calls.clear()

        assert await backup_service.restore_from_backup(backup.id) is False

        assert gateway.calls == []
        assert (await backup_service.get_backup(backup.id)).status == BackupStatus.CORRUPTED

    async def test_verify_detects_mismatch(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id)
        assert await backup_service.verify_backup_integrity(backup.id) is True

        Path(backup.storage_path).write_bytes(b"not the archive")

        assert await backup_service.verify_backup_integrity(backup.id) is False
        corrupted = await backup_service.get_backup(backup.id)
        assert corrupted.status == BackupStatus.CORRUPTED
        assert "Checksum mismatch" in corrupted.error_message

    async def test_verify_missing_archive(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id)
        Path(backup.storage_path).unlink()

        assert await backup_service.verify_backup_integrity(backup.id) is False
        assert (await backup_service.get_backup(backup.id)).status == BackupStatus.CORRUPTED

    async def test_verify_failed_backup_leaves_status(self, backup_service, cluster, gateway):
        gateway.inspect_error = RuntimeCommandError(["docker", "inspect"], 1, "daemon unavailable")
        backup = await backup_service.create_backup(cluster.id)

        assert await backup_service.verify_backup_integrity(backup.id) is False
        assert (await backup_service.get_backup(backup.id)).status == BackupStatus.FAILED

    async def test_restore_failed_backup_refused(self, backup_service, cluster, gateway):
        gateway.inspect_error = RuntimeCommandError(["docker", "inspect"], 1, "daemon unavailable")
        backup = await backup_service.create_backup(cluster.id)
        gateway.calls.clear()

        assert await backup_service.restore_from_backup(backup.id) is False
        assert gateway.calls == []

    async def test_extraction_failure_restarts_cluster(self, backup_service, cluster, gateway, session_factory, clock, tmp_path):
        garbage = tmp_path / "garbage.tar.gz"
        garbage.write_bytes(b"definitely not gzip")
        async with session_factory() as session:
            record = await BackupRepository(session).create(
                {
                    "id": uuid4(),
                    "cluster_id": cluster.id,
                    "backup_type": "FULL",
                    "status": "COMPLETED",
                    "storage_path": str(garbage),
                    "checksum": sha256_file(garbage),
                    "created_at": clock.now(),
                    "restore_count": 0,
                }
            )

        assert await backup_service.restore_from_backup(record.id) is False

        assert gateway.lifecycle_actions() == ["stop", "start"]
        assert (data_dir(cluster) / "index.php").exists()

    async def test_stop_failure_aborts_restore(self, backup_service, cluster, gateway):
        backup = await backup_service.create_backup(cluster.id)
        (data_dir(cluster) / "index.php").write_text("changed")
        gateway.stop_error = RuntimeCommandError(["docker", "stop"], 1, "permission denied")

        assert await backup_service.restore_from_backup(backup.id) is False
        assert (data_dir(cluster) / "index.php").read_text() == "changed"

    async def test_unknown_backup(self, backup_service):
        with pytest.raises(BackupNotFoundError):
            await backup_service.restore_from_backup(uuid4())


class TestRetention:
    """Test cleanup of expired, corrupted and excess backups."""

    async def test_expired_backups_removed(self, backup_service, cluster, clock):
        backup = await backup_service.create_backup(cluster.id)
        clock.advance(days=31)

        assert await backup_service.cleanup_old_backups() == 1

        assert not Path(backup.storage_path).exists()
        with pytest.raises(BackupNotFoundError):
            await backup_service.get_backup(backup.id)

    async def test_fresh_backups_kept(self, backup_service, cluster, clock):
        await backup_service.create_backup(cluster.id)
        clock.advance(days=29)

        assert await backup_service.cleanup_old_backups() == 0

    async def test_corrupted_backups_removed(self, backup_service, cluster):
        corrupted = await backup_service.create_backup(cluster.id)
        healthy = await backup_service.create_backup(cluster.id, BackupType.CONFIG_ONLY)
        Path(corrupted.storage_path).write_bytes(b"junk")
        await backup_service.verify_backup_integrity(corrupted.id)

        assert await backup_service.cleanup_old_backups() == 1

        remaining = await backup_service.list_cluster_backups(cluster.id)
        assert [b.id for b in remaining] == [healthy.id]

    async def test_max_backups_evicts_oldest(self, backup_service, cluster, clock):
        await backup_service.configure_backup_policy(cluster.id, max_backups=2)
        created = []
        for _ in range(4):
            created.append(await backup_service.create_backup(cluster.id))
            clock.advance(hours=1)

        assert await backup_service.cleanup_old_backups() == 2

        remaining = await backup_service.list_cluster_backups(cluster.id)
        assert [b.id for b in remaining] == [created[3].id, created[2].id]
        assert not Path(created[0].storage_path).exists()

    async def test_failed_eviction_is_retried(self, backup_service, cluster, clock):
        await backup_service.configure_backup_policy(cluster.id, max_backups=1)
        oldest = await backup_service.create_backup(cluster.id)
        clock.advance(hours=1)
        newest = await backup_service.create_backup(cluster.id)
        blocked = Path(oldest.storage_path)
        blocked.unlink()
        blocked.mkdir()
        (blocked / "busy").write_text("x")

        assert await backup_service.cleanup_old_backups() == 0

        kept = await backup_service.get_backup(oldest.id)
        assert kept.status == BackupStatus.COMPLETED
        assert "Archive deletion failed" in kept.error_message

        shutil.rmtree(blocked)
        assert await backup_service.cleanup_old_backups() == 1
        remaining = await backup_service.list_cluster_backups(cluster.id)
        assert [b.id for b in remaining] == [newest.id]

    async def test_leftover_expired_record_removed(self, backup_service, cluster, session_factory, clock):
        async with session_factory() as session:
            record = await BackupRepository(session).create(
                {
                    "id": uuid4(),
                    "cluster_id": cluster.id,
                    "backup_type": "FULL",
                    "status": "EXPIRED",
                    "created_at": clock.now(),
                    "expires_at": clock.now() + timedelta(days=10),
                    "restore_count": 0,
                }
            )

        assert await backup_service.cleanup_old_backups() == 1

        with pytest.raises(BackupNotFoundError):
            await backup_service.get_backup(record.id)

    async def test_in_progress_backups_untouched(self, backup_service, cluster, session_factory, clock):
        async with session_factory() as session:
            record = await BackupRepository(session).create(
                {
                    "id": uuid4(),
                    "cluster_id": cluster.id,
                    "backup_type": "FULL",
                    "status": "IN_PROGRESS",
                    "created_at": clock.now() - timedelta(days=40),
                    "expires_at": clock.now() - timedelta(days=10),
                    "restore_count": 0,
                }
            )

        assert await backup_service.cleanup_old_backups() == 0
        assert (await backup_service.get_backup(record.id)).status == BackupStatus.IN_PROGRESS


class TestAutomaticBackups:
    """Test the automatic backup cadence."""

    async def test_first_run_backs_up(self, backup_service, cluster):
        assert await backup_service.create_automatic_backups() == 1

        backups = await backup_service.list_cluster_backups(cluster.id)
        assert len(backups) == 1
        assert backups[0].automatic is True
        assert backups[0].backup_type == BackupType.FULL

    async def test_cadence_follows_interval(self, backup_service, cluster, clock):
        await backup_service.create_automatic_backups()

        clock.advance(hours=23)
        assert await backup_service.create_automatic_backups() == 0

        clock.advance(hours=2)
        assert await backup_service.create_automatic_backups() == 1

    async def test_manual_backup_resets_cadence(self, backup_service, cluster, clock):
        await backup_service.create_backup(cluster.id)
        clock.advance(hours=1)

        assert await backup_service.create_automatic_backups() == 0

    async def test_disabled_policy_skips_cluster(self, backup_service, cluster):
        await backup_service.configure_backup_policy(cluster.id, auto_backup_enabled=False)
        assert await backup_service.create_automatic_backups() == 0

    async def test_failed_backup_not_counted(self, backup_service, cluster, gateway):
        gateway.inspect_error = RuntimeCommandError(["docker", "inspect"], 1, "daemon unavailable")

        assert await backup_service.create_automatic_backups() == 0
        backups = await backup_service.list_cluster_backups(cluster.id)
        assert backups[0].status == BackupStatus.FAILED


class TestExportImport:
    """Test moving archives in and out."""

    async def test_export_copies_archive(self, backup_service, cluster, tmp_path):
        backup = await backup_service.create_backup(cluster.id)
        destination = tmp_path / "exports"
        destination.mkdir()

        exported = await backup_service.export_backup(backup.id, destination)

        assert exported == destination / Path(backup.storage_path).name
        assert sha256_file(exported) == backup.checksum

    async def test_export_missing_archive(self, backup_service, cluster, tmp_path):
        backup = await backup_service.create_backup(cluster.id)
        Path(backup.storage_path).unlink()

        with pytest.raises(BackupExportError):
            await backup_service.export_backup(backup.id, tmp_path)

    async def test_import_registers_full_manual_backup(self, backup_service, cluster, tmp_path, clock):
        backup = await backup_service.create_backup(cluster.id, BackupType.DATA_ONLY)
        exported = await backup_service.export_backup(backup.id, tmp_path / "copy.tar.gz")

        imported = await backup_service.import_backup(exported, cluster.id)

        assert imported.status == BackupStatus.COMPLETED
        assert imported.backup_type == BackupType.FULL
        assert imported.automatic is False
        assert imported.checksum == backup.checksum
        assert Path(imported.storage_path).name.startswith("imported_20260101_120000_")
        assert await backup_service.verify_backup_integrity(imported.id) is True

    async def test_import_plain_tar_restores(self, backup_service, cluster, tmp_path):
        external = tmp_path / "external" / "src"
        external.mkdir(parents=True)
        (external / "index.php").write_text("<?php echo 'imported';\n")
        source = tmp_path / "external.tar"
        with tarfile.open(source, "w") as tar:
            tar.add(external / "index.php", arcname="src/index.php")

        imported = await backup_service.import_backup(source, cluster.id)

        assert imported.status == BackupStatus.COMPLETED
        assert await backup_service.restore_from_backup(imported.id) is True
        assert (data_dir(cluster) / "index.php").read_text() == "<?php echo 'imported';\n"

    async def test_import_rejects_non_archive(self, backup_service, cluster, tmp_path):
        source = tmp_path / "notes.txt"
        source.write_text("just text")

        with pytest.raises(BackupImportError):
            await backup_service.import_backup(source, cluster.id)

        assert await backup_service.list_cluster_backups(cluster.id) == []

    async def test_import_missing_source(self, backup_service, cluster, tmp_path):
        with pytest.raises(BackupImportError):
            await backup_service.import_backup(tmp_path / "missing.tar.gz", cluster.id)

    async def test_import_unknown_cluster(self, backup_service, tmp_path):
        with pytest.raises(ClusterNotFoundError):
            await backup_service.import_backup(tmp_path / "missing.tar.gz", uuid4())


class TestManagement:
    """Test queries, deletion, policy and statistics."""

    async def test_delete_backup(self, backup_service, cluster):
        backup = await backup_service.create_backup(cluster.id)

        await backup_service.delete_backup(backup.id)

        assert not Path(backup.storage_path).exists()
        assert await backup_service.list_all_backups() == []

    async def test_delete_unknown_backup(self, backup_service):
        with pytest.raises(BackupNotFoundError):
            await backup_service.delete_backup(uuid4())

    async def test_list_newest_first(self, backup_service, cluster, clock):
        first = await backup_service.create_backup(cluster.id)
        clock.advance(minutes=5)
        second = await backup_service.create_backup(cluster.id)

        listed = await backup_service.list_cluster_backups(cluster.id)

        assert [b.id for b in listed] == [second.id, first.id]

    async def test_list_unknown_cluster(self, backup_service):
        with pytest.raises(ClusterNotFoundError):
            await backup_service.list_cluster_backups(uuid4())

    async def test_configure_policy(self, backup_service, cluster):
        policy = await backup_service.configure_backup_policy(
            cluster.id, retention_days=7, backup_interval_hours=6
        )

        assert policy.retention_days == 7
        assert policy.backup_interval_hours == 6
        assert policy.max_backups == 10

        backup = await backup_service.create_backup(cluster.id)
        assert backup.expires_at == backup.created_at + timedelta(days=7)
        assert backup.policy.retention_days == 7

    @pytest.mark.parametrize(
        "overrides",
        [{"retention_days": 0}, {"max_backups": 0}, {"backup_interval_hours": -1}],
    )
    async def test_invalid_policy(self, backup_service, cluster, overrides):
        with pytest.raises(InvalidPolicyError):
            await backup_service.configure_backup_policy(cluster.id, **overrides)

    async def test_stats(self, backup_service, cluster, gateway, clock):
        first = await backup_service.create_backup(cluster.id)
        await backup_service.restore_from_backup(first.id)
        clock.advance(days=2)
        await backup_service.create_backup(cluster.id, automatic=True)
        gateway.inspect_error = RuntimeCommandError(["docker", "inspect"], 1, "daemon unavailable")
        await backup_service.create_backup(cluster.id)

        stats = await backup_service.get_backup_stats()

        assert stats.total_backups == 3
        assert stats.completed_backups == 2
        assert stats.failed_backups == 1
        assert stats.automatic_backups == 1
        assert stats.manual_backups == 2
        assert stats.total_restores == 1
        assert stats.backups_last_24h == 2
        assert stats.backups_last_7d == 3
        assert stats.total_size_bytes > 0

    async def test_stats_empty(self, backup_service):
        stats = await backup_service.get_backup_stats()
        assert stats.total_backups == 0
        assert stats.average_size_bytes == 0.0
        assert stats.average_compression_ratio is None


class TestArchiveWriter:
    """Test the blocking archive helpers."""

    def test_cancelled_writer_removes_partial_archive(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (root / "index.php").write_text("<?php\n")
        cancelled = threading.Event()
        cancelled.set()
        destination = tmp_path / "out" / "partial.tar.gz"

        with pytest.raises(ArchiveCancelledError):
            build_archive(root, [root / "index.php"], destination, cancelled)

        assert not destination.exists()

    def test_restore_reads_uncompressed_tar(self, tmp_path):
        source = tmp_path / "plain"
        source.mkdir()
        (source / "index.php").write_text("<?php echo 1;\n")
        plain = tmp_path / "plain.tar"
        with tarfile.open(plain, "w") as tar:
            tar.add(source / "index.php", arcname="src/index.php")

        restored = restore_archive(plain, tmp_path / "target", "src", replace_data=True)

        assert restored == 1
        assert (tmp_path / "target" / "src" / "index.php").read_text() == "<?php echo 1;\n"
