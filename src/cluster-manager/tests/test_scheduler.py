"""Tests for the background scheduler."""

import asyncio

from shared.config import SchedulerSettings

from app.services.scheduler import Scheduler


class StubService:
    """Counts calls to the periodic job methods."""

    def __init__(self, failures: int = 0):
        self.calls: dict[str, int] = {}
        self.failures = failures

    async def _record(self, name: str) -> int:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("transient failure")
        return 0

    async def check_all_clusters(self):
        return await self._record("health_checks")

    async def recover_failed_clusters(self):
        return await self._record("recovery")

    async def create_automatic_backups(self):
        return await self._record("automatic_backups")

    async def cleanup_old_backups(self):
        return await self._record("backup_cleanup")

    async def prune_metrics(self):
        return await self._record("metrics_cleanup")


def fast_settings() -> SchedulerSettings:
    return SchedulerSettings(
        health_check_interval_seconds=1,
        recovery_interval_seconds=1,
        automatic_backup_interval_seconds=1,
        cleanup_interval_seconds=1,
        error_backoff_seconds=0,
    )


async def wait_for_calls(service: StubService, name: str, count: int) -> None:
    for _ in range(200):
        if service.calls.get(name, 0) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{name} ran {service.calls.get(name, 0)} times, expected {count}")


def test_jobs_use_configured_intervals():
    health = StubService()
    backups = StubService()
    scheduler = Scheduler(health, backups, SchedulerSettings(recovery_interval_seconds=120))

    jobs = scheduler.jobs()

    assert set(jobs) == {
        "health_checks",
        "recovery",
        "automatic_backups",
        "backup_cleanup",
        "metrics_cleanup",
    }
    assert jobs["recovery"][1] == 120
    assert jobs["health_checks"][1] == 60


async def test_start_runs_every_job_once_and_stop_cancels():
    health = StubService()
    backups = StubService()
    scheduler = Scheduler(health, backups, fast_settings())

    await scheduler.start()
    assert scheduler.running is True
    await wait_for_calls(health, "health_checks", 1)
    await wait_for_calls(health, "recovery", 1)
    await wait_for_calls(backups, "automatic_backups", 1)
    await wait_for_calls(backups, "backup_cleanup", 1)
    await wait_for_calls(health, "metrics_cleanup", 1)

    await scheduler.stop()

    assert scheduler.running is False
    assert scheduler._tasks == {}


async def test_start_twice_keeps_one_task_per_job():
    scheduler = Scheduler(StubService(), StubService(), fast_settings())

    await scheduler.start()
    tasks = dict(scheduler._tasks)
    await scheduler.start()

    assert scheduler._tasks == tasks
    await scheduler.stop()


async def test_failing_iteration_does_not_stop_loop():
    health = StubService(failures=2)
    scheduler = Scheduler(health, StubService(), fast_settings())
    scheduler._running = True

    task = asyncio.create_task(
        scheduler._run_periodic("health_checks", health.check_all_clusters, 0.01)
    )
    await wait_for_calls(health, "health_checks", 4)
    scheduler._running = False
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert health.failures == 0
    assert health.calls["health_checks"] >= 4
