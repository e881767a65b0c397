"""Archive helpers for backups.

Blocking filesystem work; callers run these in a worker thread.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from shared.models import BackupType

CHUNK_SIZE = 1024 * 1024


class ArchiveCancelledError(Exception):
    """Archive creation was abandoned before it finished."""


@dataclass(frozen=True)
class ArchiveInfo:
    """Measurements of a finished archive."""

    path: Path
    size_bytes: int
    uncompressed_bytes: int
    checksum: str
    members: int

    @property
    def compression_ratio(self) -> float | None:
        """Compressed size divided by original size."""
        if self.uncompressed_bytes <= 0:
            return None
        return round(self.size_bytes / self.uncompressed_bytes, 4)


def sha256_file(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def _walk_files(path: Path) -> list[Path]:
    if path.is_file():
        return [path]
    if not path.is_dir():
        return []
    return sorted(p for p in path.rglob("*") if p.is_file() and not p.is_symlink())


def select_members(
    root: Path,
    backup_type: BackupType | str,
    data_dir_name: str,
    compose_file_name: str,
    modified_since: datetime | None = None,
) -> list[Path]:
    """Files that go into an archive of ``backup_type``.

    FULL takes the whole cluster root, DATA_ONLY the data directory and
    CONFIG_ONLY the Compose file. INCREMENTAL takes files modified after
    ``modified_since`` (naive UTC) and degrades to FULL without it.
    """
    backup_type = BackupType(backup_type)
    if backup_type == BackupType.CONFIG_ONLY:
        return _walk_files(root / compose_file_name)
    if backup_type == BackupType.DATA_ONLY:
        return _walk_files(root / data_dir_name)

    files = _walk_files(root)
    if backup_type == BackupType.INCREMENTAL and modified_since is not None:
        cutoff = modified_since.replace(tzinfo=timezone.utc).timestamp()
        files = [p for p in files if p.stat().st_mtime > cutoff]
    return files


def total_size(files: list[Path]) -> int:
    return sum(p.stat().st_size for p in files)


def build_archive(
    root: Path,
    files: list[Path],
    destination: Path,
    cancelled: threading.Event | None = None,
) -> ArchiveInfo:
    """Write ``files`` (relative to ``root``) into a gzip tarball.

    A partially written archive is removed on failure. Setting ``cancelled``
    stops the writer before the next file.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    uncompressed = 0
    try:
        with tarfile.open(destination, "w:gz") as tar:
            for path in files:
                if cancelled is not None and cancelled.is_set():
                    raise ArchiveCancelledError(str(destination))
                tar.add(path, arcname=path.relative_to(root).as_posix(), recursive=False)
                uncompressed += path.stat().st_size
    except BaseException:
        destination.unlink(missing_ok=True)
        raise

    return ArchiveInfo(
        path=destination,
        size_bytes=destination.stat().st_size,
        uncompressed_bytes=uncompressed,
        checksum=sha256_file(destination),
        members=len(files),
    )


def inspect_archive(path: Path) -> ArchiveInfo:
    """Measure an existing archive; raises tarfile.TarError if it is not one."""
    with tarfile.open(path, "r:*") as tar:
        members = [m for m in tar.getmembers() if m.isfile()]
    return ArchiveInfo(
        path=path,
        size_bytes=path.stat().st_size,
        uncompressed_bytes=sum(m.size for m in members),
        checksum=sha256_file(path),
        members=len(members),
    )


def restore_archive(archive: Path, target: Path, data_dir_name: str, replace_data: bool) -> int:
    """Extract ``archive`` into ``target``.

    Extraction goes to a staging directory first, so a corrupt archive leaves
    ``target`` untouched. With ``replace_data`` the data directory is
    replaced wholesale instead of overlaid.

    Returns:
        Number of files restored
    """
    target.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".restore-", dir=target))
    try:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(staging, filter="data")

        restored = len(_walk_files(staging))
        staged_data = staging / data_dir_name
        if replace_data and staged_data.is_dir():
            shutil.rmtree(target / data_dir_name, ignore_errors=True)
        for item in staging.iterdir():
            _merge(item, target / item.name)
        return restored
    finally:
        shutil.rmtree(staging, ignore_errors=True)


def _merge(source: Path, destination: Path) -> None:
    if source.is_dir():
        if destination.exists() and not destination.is_dir():
            destination.unlink()
        destination.mkdir(exist_ok=True)
        for child in source.iterdir():
            _merge(child, destination / child.name)
        return
    if destination.is_dir():
        shutil.rmtree(destination)
    os.replace(source, destination)


def copy_archive(source: Path, destination: Path) -> Path:
    """Copy an archive, keeping its name when ``destination`` is a directory."""
    if destination.is_dir():
        destination = destination / source.name
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    return destination
