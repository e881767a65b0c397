"""Observability module for structured logging."""

from .logging import (
    OperationContext,
    cluster_id_var,
    get_logger,
    log_command_end,
    log_command_start,
    operation_var,
    setup_logging,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_logger",
    # Context
    "OperationContext",
    "cluster_id_var",
    "operation_var",
    # Logging helpers
    "log_command_start",
    "log_command_end",
]
