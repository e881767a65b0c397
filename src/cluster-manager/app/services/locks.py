"""Per-cluster serialization of runtime lifecycle work."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID


class ClusterLocks:
    """One asyncio.Lock per cluster id.

    Probe, recovery, backup and restore of the same cluster hold the same
    lock, so their stop/start sequences never interleave. Different clusters
    never block each other.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}

    def get(self, cluster_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(cluster_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[cluster_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, cluster_id: UUID) -> AsyncIterator[None]:
        async with self.get(cluster_id):
            yield

    def is_locked(self, cluster_id: UUID) -> bool:
        lock = self._locks.get(cluster_id)
        return lock is not None and lock.locked()

    def discard(self, cluster_id: UUID) -> None:
        """Forget the lock of a deleted cluster (no-op while it is held)."""
        lock = self._locks.get(cluster_id)
        if lock is not None and not lock.locked():
            del self._locks[cluster_id]
