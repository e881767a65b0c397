"""In-memory stand-ins for the runtime, the command runner, Redis and time."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from shared.config import RuntimeSettings
from shared.models import Cluster, Event

from app.runtime import CommandResult, RuntimeGateway, RuntimeHandle
from app.runtime.gateway import ExecResult, ResourceUsage, RuntimeStatus

START_TIME = datetime(2026, 1, 1, 12, 0, 0)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeRunner:
    """Command runner returning scripted results.

    ``responses`` maps a command prefix (tuple) to a CommandResult; the
    longest matching prefix wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.commands: list[list[str]] = []
        self.timeouts: list[float] = []
        self.responses: dict[tuple[str, ...], CommandResult] = {}

    def respond(self, prefix: tuple[str, ...], stdout: str = "", stderr: str = "", exit_code: int = 0):
        self.responses[prefix] = CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def run(self, command: list[str], timeout: float, cwd: Any = None) -> CommandResult:
        self.commands.append(command)
        self.timeouts.append(timeout)
        matches = [p for p in self.responses if tuple(command[: len(p)]) == p]
        if not matches:
            return CommandResult(stdout="", stderr="", exit_code=0, command=command)
        scripted = self.responses[max(matches, key=len)]
        return CommandResult(
            stdout=scripted.stdout,
            stderr=scripted.stderr,
            exit_code=scripted.exit_code,
            command=command,
            timed_out=scripted.timed_out,
        )


class FakeRuntimeGateway(RuntimeGateway):
    """Gateway simulating one container per cluster without a runtime.

    Spec rendering and Compose file writing are real; lifecycle calls only
    flip in-memory state and are recorded in ``calls``.
    """

    def __init__(self, settings: RuntimeSettings | None = None, clock: ManualClock | None = None):
        super().__init__(settings or RuntimeSettings(), FakeRunner(), clock)
        self.calls: list[tuple[str, str]] = []
        self.exists = True
        self.running = True
        self.paused = False
        self.exit_code: int | None = None
        self.restart_count = 0
        self.disk_usage_bytes: int | None = None
        self.usage: ResourceUsage | None = None
        self.exec_exit_code = 0
        self.apply_error: Exception | None = None
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.inspect_error: Exception | None = None
        self.unpause_error: Exception | None = None
        self.running_after_apply = True
        self.applied = 0

    def _record(self, action: str, handle: RuntimeHandle) -> None:
        self.calls.append((action, handle.container_name))

    def actions(self) -> list[str]:
        return [action for action, _ in self.calls]

    def lifecycle_actions(self) -> list[str]:
        return [a for a in self.actions() if a not in ("inspect", "stats", "exec")]

    async def apply(self, cluster: Cluster) -> RuntimeHandle:
        handle = self.handle_for(cluster)
        self._record("apply", handle)
        self.write_spec(cluster)
        if self.apply_error is not None:
            raise self.apply_error
        self.applied += 1
        self.exists = True
        self.running = self.running_after_apply
        self.paused = False
        return RuntimeHandle(
            cluster_id=handle.cluster_id,
            project_name=handle.project_name,
            root_path=handle.root_path,
            compose_file=handle.compose_file,
            container_name=handle.container_name,
            container_id=f"c0ffee{self.applied:058d}",
        )

    async def start(self, handle: RuntimeHandle) -> None:
        self._record("start", handle)
        if self.start_error is not None:
            raise self.start_error
        self.running = True

    async def stop(self, handle: RuntimeHandle) -> None:
        self._record("stop", handle)
        if self.stop_error is not None:
            raise self.stop_error
        self.running = False
        self.paused = False

    async def remove(self, handle: RuntimeHandle) -> None:
        self._record("remove", handle)
        self.exists = False
        self.running = False

    async def pause(self, handle: RuntimeHandle) -> None:
        self._record("pause", handle)
        self.paused = True

    async def unpause(self, handle: RuntimeHandle) -> None:
        self._record("unpause", handle)
        if self.unpause_error is not None:
            raise self.unpause_error
        self.paused = False

    async def down(self, handle: RuntimeHandle) -> None:
        self._record("down", handle)
        self.exists = False
        self.running = False

    async def exec(self, handle: RuntimeHandle, command: list[str], timeout: float | None = None) -> ExecResult:
        self._record("exec", handle)
        return ExecResult(stdout="", exit_code=self.exec_exit_code)

    async def inspect(self, handle: RuntimeHandle) -> RuntimeStatus:
        self._record("inspect", handle)
        if self.inspect_error is not None:
            raise self.inspect_error
        if not self.exists:
            return RuntimeStatus(exists=False, running=False, status="missing")
        return RuntimeStatus(
            exists=True,
            running=self.running,
            status="paused" if self.paused else ("running" if self.running else "exited"),
            exit_code=None if self.running else self.exit_code,
            restart_count=self.restart_count,
            uptime_seconds=120 if self.running else None,
            disk_usage_bytes=self.disk_usage_bytes,
            paused=self.paused,
        )

    async def stats(self, handle: RuntimeHandle) -> ResourceUsage | None:
        self._record("stats", handle)
        return self.usage if self.running else None


class MockRedisClient:
    """Mock Redis client recording published events and cache writes."""

    def __init__(self):
        self.events: list[Event] = []
        self.cache: dict[str, Any] = {}
        self.fail = False

    async def connect(self):
        pass

    async def close(self):
        pass

    async def publish_event(self, event: Event) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.events.append(event)
        return 1

    async def cache_set(self, service: str, key: str, value: Any, ttl_seconds: int = 300) -> None:
        self.cache[f"cache:{service}:{key}"] = value

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "databases": {}}

    def event_types(self) -> list[str]:
        return [e.event_type for e in self.events]
