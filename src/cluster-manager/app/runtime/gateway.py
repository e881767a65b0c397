"""Container runtime gateway.

The single place that talks to the ``docker`` CLI. Everything else works
with the typed results defined here; textual output is parsed once, in this
module, and classified into success, idempotent no-op, or failure.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import UUID

from shared.config import RuntimeSettings
from shared.models import Cluster
from shared.observability import get_logger

from ..clock import Clock, SystemClock
from ..exceptions import ProvisionError, RuntimeCommandError
from .compose import ComposeDocument, container_name, dump_spec, project_name, render_spec
from .runner import CommandResult, CommandRunner

logger = get_logger(__name__)

_MISSING_MARKERS = ("no such container", "no such object", "not found")
_SIZE_PATTERN = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$")
_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "kib": 1024,
    "mb": 1000**2,
    "mib": 1024**2,
    "gb": 1000**3,
    "gib": 1024**3,
    "tb": 1000**4,
    "tib": 1024**4,
}


# =============================================================================
# Typed results
# =============================================================================


@dataclass(frozen=True)
class RuntimeHandle:
    """Addresses one cluster's container and its Compose project."""

    cluster_id: UUID
    project_name: str
    root_path: Path
    compose_file: Path
    container_name: str
    container_id: str | None = None

    @property
    def target(self) -> str:
        """Name used on the CLI; stable across re-provisioning."""
        return self.container_name


@dataclass(frozen=True)
class ExecResult:
    """Output of a command run inside the container."""

    stdout: str
    exit_code: int
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class RuntimeStatus:
    """Observed container state."""

    exists: bool
    running: bool
    status: str
    exit_code: int | None = None
    restart_count: int = 0
    uptime_seconds: int | None = None
    disk_usage_bytes: int | None = None
    paused: bool = False


@dataclass(frozen=True)
class ResourceUsage:
    """One ``docker stats`` sample."""

    cpu_percent: float
    memory_used_bytes: int
    memory_limit_bytes: int
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0

    @property
    def memory_percent(self) -> float | None:
        if self.memory_limit_bytes <= 0:
            return None
        return self.memory_used_bytes / self.memory_limit_bytes * 100


# =============================================================================
# Parsing helpers
# =============================================================================


def parse_size(value: str) -> int:
    """Parse a runtime size string such as ``12.5MiB`` or ``1.2kB`` into bytes."""
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Unparseable size: {value!r}")
    number, unit = match.groups()
    multiplier = _UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown size unit: {unit!r}")
    return int(float(number) * multiplier)


def parse_pair(value: str) -> tuple[int, int]:
    """Parse ``"<a> / <b>"`` size pairs used by MemUsage, NetIO and BlockIO."""
    left, _, right = value.partition("/")
    return parse_size(left), parse_size(right or "0")


def parse_percent(value: str) -> float:
    return float(value.strip().rstrip("%") or 0)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a runtime RFC 3339 timestamp into naive UTC.

    The runtime reports nanoseconds and a trailing ``Z``; the zero value
    ``0001-01-01T00:00:00Z`` means "never".
    """
    if not value or value.startswith("0001-01-01"):
        return None
    match = re.match(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|[+-]\d{2}:\d{2})?$", value)
    if not match:
        return None
    base, fraction, _ = match.groups()
    if fraction:
        base = f"{base}{fraction[:7]}"
    return datetime.fromisoformat(base)


def parse_stats(line: str) -> ResourceUsage:
    """Parse one JSON line of ``docker stats --format '{{json .}}'``."""
    data = json.loads(line)
    mem_used, mem_limit = parse_pair(data.get("MemUsage", "0B / 0B"))
    net_rx, net_tx = parse_pair(data.get("NetIO", "0B / 0B"))
    block_read, block_write = parse_pair(data.get("BlockIO", "0B / 0B"))
    return ResourceUsage(
        cpu_percent=parse_percent(data.get("CPUPerc", "0%")),
        memory_used_bytes=mem_used,
        memory_limit_bytes=mem_limit,
        network_rx_bytes=net_rx,
        network_tx_bytes=net_tx,
        block_read_bytes=block_read,
        block_write_bytes=block_write,
    )


def is_missing(result: CommandResult) -> bool:
    """Whether a failed command failed because the container does not exist."""
    output = result.output.lower()
    return any(marker in output for marker in _MISSING_MARKERS)


# =============================================================================
# Gateway
# =============================================================================


class RuntimeGateway:
    """Translates clusters into Compose projects and drives their containers.

    Stop, remove, pause and unpause are idempotent: acting on a container
    that is already in the requested state (or already gone) is success.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        runner: CommandRunner | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.runner = runner or CommandRunner()
        self.clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Spec rendering
    # -------------------------------------------------------------------------

    def render_spec(self, cluster: Cluster) -> ComposeDocument:
        return render_spec(cluster, self.settings)

    def handle_for(self, cluster: Cluster) -> RuntimeHandle:
        """Handle addressing an existing cluster's container."""
        root = Path(cluster.root_path)
        return RuntimeHandle(
            cluster_id=cluster.id,
            project_name=project_name(cluster),
            root_path=root,
            compose_file=root / self.settings.compose_file_name,
            container_name=container_name(cluster, self.settings),
            container_id=cluster.container_id,
        )

    def data_dir(self, cluster: Cluster) -> Path:
        return Path(cluster.root_path) / self.settings.data_dir_name

    def write_spec(self, cluster: Cluster) -> Path:
        """Render and write docker-compose.yml into the cluster root."""
        root = Path(cluster.root_path)
        self.data_dir(cluster).mkdir(parents=True, exist_ok=True)
        compose_file = root / self.settings.compose_file_name
        compose_file.write_text(dump_spec(self.render_spec(cluster)), encoding="utf-8")
        return compose_file

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def apply(self, cluster: Cluster) -> RuntimeHandle:
        """Write the Compose file and bring the container up.

        Raises:
            ProvisionError: The file cannot be written or the runtime fails
        """
        handle = self.handle_for(cluster)
        try:
            self.write_spec(cluster)
        except OSError as e:
            raise ProvisionError(f"Cannot write compose file: {e}") from e

        result = await self.runner.run(
            self._compose(handle, "up", "-d"),
            timeout=self.settings.provision_timeout_seconds,
            cwd=handle.root_path,
        )
        if not result.success:
            raise ProvisionError(
                f"compose up exited with {result.exit_code}",
                result.tail(self.settings.error_tail_lines),
            )

        ps = await self.runner.run(
            self._compose(handle, "ps", "-q", self.settings.service_name),
            timeout=self.settings.lifecycle_timeout_seconds,
            cwd=handle.root_path,
        )
        container_id = ps.stdout.strip().splitlines()[0] if ps.success and ps.stdout.strip() else None
        if not container_id:
            raise ProvisionError(
                "Container id not reported after compose up",
                ps.tail(self.settings.error_tail_lines),
            )

        logger.info(
            "Cluster container provisioned",
            cluster_id=str(cluster.id),
            container_id=container_id[:12],
            project=handle.project_name,
        )
        return RuntimeHandle(
            cluster_id=handle.cluster_id,
            project_name=handle.project_name,
            root_path=handle.root_path,
            compose_file=handle.compose_file,
            container_name=handle.container_name,
            container_id=container_id,
        )

    async def start(self, handle: RuntimeHandle) -> None:
        """Start the container; starting a running container is a no-op."""
        await self._lifecycle(handle, ["start", handle.target], tolerate_missing=False)

    async def stop(self, handle: RuntimeHandle) -> None:
        """Stop the container; already stopped or gone is success."""
        await self._lifecycle(
            handle,
            ["stop", "-t", str(self.settings.stop_grace_seconds), handle.target],
            tolerate_missing=True,
        )

    async def remove(self, handle: RuntimeHandle) -> None:
        """Remove the container; already gone is success."""
        await self._lifecycle(handle, ["rm", "-f", handle.target], tolerate_missing=True)

    async def pause(self, handle: RuntimeHandle) -> None:
        await self._lifecycle(
            handle, ["pause", handle.target], tolerate_missing=False, tolerate=("already paused",)
        )

    async def unpause(self, handle: RuntimeHandle) -> None:
        await self._lifecycle(
            handle, ["unpause", handle.target], tolerate_missing=False, tolerate=("is not paused",)
        )

    async def down(self, handle: RuntimeHandle) -> None:
        """Tear down the Compose project; a missing project is success."""
        if not handle.compose_file.exists():
            await self.remove(handle)
            return
        result = await self.runner.run(
            self._compose(handle, "down", "--remove-orphans"),
            timeout=self.settings.lifecycle_timeout_seconds,
            cwd=handle.root_path,
        )
        if not result.success and not is_missing(result):
            raise RuntimeCommandError(result.command, result.exit_code, result.output)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    async def exec(
        self,
        handle: RuntimeHandle,
        command: list[str],
        timeout: float | None = None,
    ) -> ExecResult:
        """Run ``command`` inside the container. Never raises on non-zero exit."""
        result = await self.runner.run(
            [self.settings.docker_binary, "exec", handle.target, *command],
            timeout=timeout or self.settings.exec_timeout_seconds,
        )
        return ExecResult(stdout=result.stdout, exit_code=result.exit_code, stderr=result.stderr)

    async def inspect(self, handle: RuntimeHandle) -> RuntimeStatus:
        """Inspect the live container.

        Raises:
            RuntimeCommandError: The runtime failed for a reason other than a
                missing container, or returned unparseable output
        """
        result = await self.runner.run(
            [self.settings.docker_binary, "inspect", "--size", handle.target],
            timeout=self.settings.lifecycle_timeout_seconds,
        )
        if not result.success:
            if is_missing(result):
                return RuntimeStatus(exists=False, running=False, status="missing")
            raise RuntimeCommandError(result.command, result.exit_code, result.output)

        try:
            payload = json.loads(result.stdout)
            container = payload[0]
        except (json.JSONDecodeError, IndexError, KeyError, TypeError) as e:
            raise RuntimeCommandError(
                result.command, result.exit_code, f"Malformed inspect output: {e}"
            ) from e
        return self._status_from_inspect(container)

    async def stats(self, handle: RuntimeHandle) -> ResourceUsage | None:
        """Sample resource usage; None when the container is not running."""
        result = await self.runner.run(
            [
                self.settings.docker_binary,
                "stats",
                "--no-stream",
                "--format",
                "{{json .}}",
                handle.target,
            ],
            timeout=self.settings.lifecycle_timeout_seconds,
        )
        if not result.success or not result.stdout.strip():
            return None
        try:
            return parse_stats(result.stdout.strip().splitlines()[0])
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning("Unparseable stats output", container=handle.target, error=str(e))
            return None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _compose(self, handle: RuntimeHandle, *args: str) -> list[str]:
        return [
            self.settings.docker_binary,
            "compose",
            "-f",
            str(handle.compose_file),
            "-p",
            handle.project_name,
            *args,
        ]

    async def _lifecycle(
        self,
        handle: RuntimeHandle,
        args: list[str],
        tolerate_missing: bool,
        tolerate: tuple[str, ...] = (),
    ) -> None:
        result = await self.runner.run(
            [self.settings.docker_binary, *args],
            timeout=self.settings.lifecycle_timeout_seconds,
        )
        if result.success:
            return
        if tolerate_missing and not result.timed_out and is_missing(result):
            logger.debug("Container already gone", container=handle.target, action=args[0])
            return
        if tolerate and any(marker in result.output.lower() for marker in tolerate):
            return
        raise RuntimeCommandError(result.command, result.exit_code, result.output)

    def _status_from_inspect(self, container: dict[str, Any]) -> RuntimeStatus:
        state = container.get("State") or {}
        running = bool(state.get("Running"))
        started_at = parse_timestamp(state.get("StartedAt"))
        uptime = None
        if running and started_at is not None:
            uptime = max(0, int((self.clock.now() - started_at).total_seconds()))
        return RuntimeStatus(
            exists=True,
            running=running,
            status=str(state.get("Status") or ("running" if running else "exited")),
            exit_code=state.get("ExitCode"),
            restart_count=int(container.get("RestartCount") or 0),
            uptime_seconds=uptime,
            disk_usage_bytes=container.get("SizeRw"),
            paused=bool(state.get("Paused")),
        )
