"""Background scheduler for health, recovery, backup and cleanup loops."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from shared.config import SchedulerSettings
from shared.observability import get_logger

from .backup_service import BackupService
from .health_service import HealthService

logger = get_logger(__name__)


class Scheduler:
    """Runs each periodic job as an independent asyncio task.

    A failing iteration is logged and retried after a short backoff; it
    never stops the loop or the other jobs.
    """

    def __init__(
        self,
        health_service: HealthService,
        backup_service: BackupService,
        settings: SchedulerSettings | None = None,
    ):
        self.health_service = health_service
        self.backup_service = backup_service
        self.settings = settings or SchedulerSettings()
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def jobs(self) -> dict[str, tuple[Callable[[], Awaitable[Any]], float]]:
        """Job name -> (coroutine function, interval seconds)."""
        return {
            "health_checks": (
                self.health_service.check_all_clusters,
                self.settings.health_check_interval_seconds,
            ),
            "recovery": (
                self.health_service.recover_failed_clusters,
                self.settings.recovery_interval_seconds,
            ),
            "automatic_backups": (
                self.backup_service.create_automatic_backups,
                self.settings.automatic_backup_interval_seconds,
            ),
            "backup_cleanup": (
                self.backup_service.cleanup_old_backups,
                self.settings.cleanup_interval_seconds,
            ),
            "metrics_cleanup": (
                self.health_service.prune_metrics,
                self.settings.cleanup_interval_seconds,
            ),
        }

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        for name, (job, interval) in self.jobs().items():
            self._tasks[name] = asyncio.create_task(self._run_periodic(name, job, interval))
        logger.info("Scheduler started", jobs=list(self._tasks))

    async def stop(self) -> None:
        self._running = False

        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        logger.info("Scheduler stopped")

    async def _run_periodic(
        self, name: str, job: Callable[[], Awaitable[Any]], interval: float
    ) -> None:
        logger.info("Starting periodic job", job=name, interval_seconds=interval)

        while self._running:
            try:
                result = await job()
                logger.debug("Periodic job finished", job=name, result=result)
                await asyncio.sleep(interval)

            except asyncio.CancelledError:
                logger.info("Periodic job cancelled", job=name)
                break
            except Exception as e:
                logger.error("Error in periodic job", job=name, error=str(e), exc_info=True)
                await asyncio.sleep(self.settings.error_backoff_seconds)
