"""Structured logging configuration.

Features:
- JSON and text format support
- Service context injection
- Cluster and operation correlation through context variables
"""

import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from shared.config import LogFormat, LogLevel, get_settings

# Context variables for operation tracking
cluster_id_var: ContextVar[str | None] = ContextVar("cluster_id", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)


def add_service_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service context to log events."""
    settings = get_settings()
    event_dict["service"] = settings.app_name
    event_dict["environment"] = settings.environment.value
    return event_dict


def add_operation_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add cluster/operation context from context variables."""
    if (cluster_id := cluster_id_var.get()) and "cluster_id" not in event_dict:
        event_dict["cluster_id"] = cluster_id
    if operation := operation_var.get():
        event_dict["operation"] = operation
    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO 8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    service_name: str | None = None,
    log_level: LogLevel | None = None,
    log_format: LogFormat | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        service_name: Name bound to every event (defaults to settings.app_name)
        log_level: Override log level (defaults to settings.log_level)
        log_format: Override log format (defaults to settings.log_format)
    """
    settings = get_settings()

    level = log_level or settings.log_level
    fmt = log_format or settings.log_format

    level_str = level.value if isinstance(level, LogLevel) else str(level).upper()
    numeric_level = getattr(logging, level_str)

    logging.basicConfig(
        level=numeric_level,
        stream=sys.stdout,
        format="%(message)s",
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_service_context,
        add_operation_context,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    fmt_str = fmt.value if isinstance(fmt, LogFormat) else str(fmt).lower()
    if fmt_str == LogFormat.JSON.value:
        # JSON format for production
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Text format for development
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if service_name:
        structlog.contextvars.bind_contextvars(service_name=service_name)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (defaults to module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class OperationContext:
    """Context manager binding a cluster id and operation name to log events.

    Usage:
        async with OperationContext(cluster_id=str(cid), operation="recover"):
            logger.info("Stopping container")  # Includes cluster_id and operation
    """

    def __init__(self, cluster_id: str | None = None, operation: str | None = None):
        self.cluster_id = cluster_id
        self.operation = operation
        self._tokens: list[tuple[ContextVar[Any], Token[Any]]] = []

    def __enter__(self) -> "OperationContext":
        if self.cluster_id:
            self._tokens.append((cluster_id_var, cluster_id_var.set(self.cluster_id)))
        if self.operation:
            self._tokens.append((operation_var, operation_var.set(self.operation)))
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    async def __aenter__(self) -> "OperationContext":
        return self.__enter__()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def log_command_start(
    logger: structlog.stdlib.BoundLogger,
    argv: list[str],
    timeout: float,
) -> None:
    """Log a runtime command invocation."""
    logger.debug(
        "Runtime command started",
        command=" ".join(argv[:4]),
        timeout_seconds=timeout,
    )


def log_command_end(
    logger: structlog.stdlib.BoundLogger,
    argv: list[str],
    exit_code: int,
    duration_ms: float,
    timed_out: bool = False,
) -> None:
    """Log a runtime command result."""
    log_method = logger.warning if exit_code != 0 else logger.debug
    log_method(
        "Runtime command completed",
        command=" ".join(argv[:4]),
        exit_code=exit_code,
        duration_ms=round(duration_ms, 2),
        timed_out=timed_out,
    )
