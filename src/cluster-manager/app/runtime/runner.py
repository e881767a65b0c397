"""Subprocess execution with enforced timeouts.

Every runtime CLI invocation goes through CommandRunner so a hung command
becomes a failed result instead of blocking the scheduler.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

from shared.observability import get_logger, log_command_end, log_command_start

logger = get_logger(__name__)

# Exit code reported for commands killed on timeout (same as coreutils timeout)
TIMEOUT_EXIT_CODE = 124
# Exit code reported when the binary cannot be started
NOT_FOUND_EXIT_CODE = 127


@dataclass
class CommandResult:
    """Result of one command execution.

    Attributes:
        stdout: Standard output as string
        stderr: Standard error as string
        exit_code: Process exit code (0 = success)
        duration_seconds: Wall clock time for execution
        command: The command that was executed
        timed_out: Whether the process was killed due to timeout
    """

    stdout: str
    stderr: str
    exit_code: int
    duration_seconds: float = 0.0
    command: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def tail(self, lines: int) -> list[str]:
        """Last ``lines`` non-empty output lines."""
        return [line for line in self.output.splitlines() if line.strip()][-lines:]


class CommandRunner:
    """Runs commands with asyncio subprocesses."""

    def __init__(self, kill_timeout: float = 5.0, encoding: str = "utf-8"):
        self.kill_timeout = kill_timeout
        self.encoding = encoding

    async def run(
        self,
        command: list[str],
        timeout: float,
        cwd: str | Path | None = None,
    ) -> CommandResult:
        """Run ``command`` and wait at most ``timeout`` seconds."""
        log_command_start(logger, command, timeout)
        start = time.monotonic()
        timed_out = False

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except (FileNotFoundError, PermissionError) as e:
            duration = time.monotonic() - start
            log_command_end(logger, command, NOT_FOUND_EXIT_CODE, duration * 1000)
            return CommandResult(
                stdout="",
                stderr=str(e),
                exit_code=NOT_FOUND_EXIT_CODE,
                duration_seconds=duration,
                command=command,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            await self._terminate_process(proc, command)
            stdout, stderr = b"", f"Process killed after {timeout:.0f}s timeout".encode()

        duration = time.monotonic() - start
        exit_code = TIMEOUT_EXIT_CODE if timed_out else (proc.returncode or 0)
        log_command_end(logger, command, exit_code, duration * 1000, timed_out=timed_out)

        return CommandResult(
            stdout=stdout.decode(self.encoding, errors="replace") if stdout else "",
            stderr=stderr.decode(self.encoding, errors="replace") if stderr else "",
            exit_code=exit_code,
            duration_seconds=duration,
            command=command,
            timed_out=timed_out,
        )

    async def _terminate_process(
        self,
        proc: asyncio.subprocess.Process,
        command: list[str],
    ) -> None:
        """Terminate a process with SIGTERM, then SIGKILL."""
        cmd_str = " ".join(command[:3])
        try:
            proc.terminate()
            logger.warning("Sending SIGTERM to timed out command", command=cmd_str)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_timeout)
                return
            except asyncio.TimeoutError:
                pass

            logger.warning("SIGTERM failed, sending SIGKILL", command=cmd_str)
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            # Already exited
            pass
