"""Configuration management module.

This module provides:
- Environment-based configuration with validation
- Service-specific settings classes
- Cached settings access via get_settings()
"""

from .settings import (
    BackupSettings,
    ClusterForgeSettings,
    DatabaseSettings,
    Environment,
    HealthSettings,
    LogFormat,
    LogLevel,
    RedisSettings,
    RuntimeSettings,
    SchedulerSettings,
    Settings,
    get_settings,
)

__all__ = [
    # Main settings
    "Settings",
    "get_settings",
    # Enums
    "Environment",
    "LogLevel",
    "LogFormat",
    # Component settings
    "DatabaseSettings",
    "RedisSettings",
    "RuntimeSettings",
    "HealthSettings",
    "BackupSettings",
    "SchedulerSettings",
    # Service-specific settings
    "ClusterForgeSettings",
]
