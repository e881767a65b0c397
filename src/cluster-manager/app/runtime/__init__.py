"""Container runtime gateway."""

from .compose import ComposeDocument, dump_spec, render_spec
from .gateway import (
    ExecResult,
    ResourceUsage,
    RuntimeGateway,
    RuntimeHandle,
    RuntimeStatus,
)
from .runner import TIMEOUT_EXIT_CODE, CommandResult, CommandRunner

__all__ = [
    "ComposeDocument",
    "render_spec",
    "dump_spec",
    "RuntimeGateway",
    "RuntimeHandle",
    "RuntimeStatus",
    "ExecResult",
    "ResourceUsage",
    "CommandRunner",
    "CommandResult",
    "TIMEOUT_EXIT_CODE",
]
