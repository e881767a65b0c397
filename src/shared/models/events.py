"""Event models published on the event bus."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import Field

from .base import ClusterForgeBaseModel


class EventType(str, Enum):
    """Event types for the event bus."""

    # Cluster lifecycle events
    CLUSTER_CREATED = "CLUSTER_CREATED"
    CLUSTER_UPDATED = "CLUSTER_UPDATED"
    CLUSTER_DELETED = "CLUSTER_DELETED"
    CLUSTER_STATUS_CHANGED = "CLUSTER_STATUS_CHANGED"

    # Health events
    CLUSTER_METRICS = "CLUSTER_METRICS"
    ALERT_TRIGGERED = "ALERT_TRIGGERED"
    RECOVERY_COMPLETED = "RECOVERY_COMPLETED"

    # Backup events
    BACKUP_COMPLETED = "BACKUP_COMPLETED"
    BACKUP_FAILED = "BACKUP_FAILED"
    BACKUP_RESTORED = "BACKUP_RESTORED"


class Event(ClusterForgeBaseModel):
    """Event envelope.

    Events are ephemeral (not persisted, streamed only).
    """

    event_id: UUID
    event_type: EventType
    cluster_id: UUID | None = None
    timestamp: datetime
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Event-specific payload"
    )
