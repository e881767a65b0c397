"""Database configuration and models."""

from .base import Base, create_all, create_engine, create_session_factory
from .models import (
    BackupModel,
    ClusterAlertModel,
    ClusterMetricsModel,
    ClusterModel,
    HealthEventModel,
    HealthStatusModel,
)

__all__ = [
    # Base
    "Base",
    "create_all",
    "create_engine",
    "create_session_factory",
    # Models
    "ClusterModel",
    "HealthStatusModel",
    "HealthEventModel",
    "ClusterMetricsModel",
    "ClusterAlertModel",
    "BackupModel",
]
