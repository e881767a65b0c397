"""Event service for Redis pub/sub."""

from __future__ import annotations

from typing import Any
from uuid import UUID, uuid4

from redis.exceptions import RedisError

from shared.models import Alert, Backup, HealthMetricsPayload
from shared.models.events import Event, EventType
from shared.observability import get_logger
from shared.redis_client import RedisClient

from ..clock import Clock, SystemClock

logger = get_logger(__name__)

METRICS_CACHE_TTL_SECONDS = 300


class EventService:
    """Service for publishing events to Redis.

    Events emitted:
    - CLUSTER_CREATED / CLUSTER_UPDATED / CLUSTER_DELETED
    - CLUSTER_STATUS_CHANGED
    - CLUSTER_METRICS
    - ALERT_TRIGGERED
    - RECOVERY_COMPLETED
    - BACKUP_COMPLETED / BACKUP_FAILED / BACKUP_RESTORED

    Publishing is best effort: a Redis outage is logged and never fails the
    operation that produced the event.
    """

    def __init__(self, redis_client: RedisClient | None, clock: Clock | None = None):
        self.redis = redis_client
        self.clock = clock or SystemClock()

    async def publish(
        self, event_type: EventType, payload: dict[str, Any], cluster_id: UUID | None = None
    ) -> None:
        """Publish an event to Redis."""
        if self.redis is None:
            return

        event = Event(
            event_id=uuid4(),
            event_type=event_type,
            cluster_id=cluster_id,
            timestamp=self.clock.now(),
            payload=payload,
        )

        try:
            await self.redis.publish_event(event)
        except (RedisError, RuntimeError, OSError) as e:
            logger.warning("Event publish failed", event_type=event_type.value, error=str(e))
            return
        logger.debug("Event published", event_type=event_type.value)

    async def publish_cluster_created(self, cluster: Any) -> None:
        payload = {
            "cluster_id": str(cluster.id),
            "name": cluster.name,
            "owner": cluster.owner,
            "port": cluster.port,
        }
        await self.publish(EventType.CLUSTER_CREATED, payload, cluster.id)

    async def publish_cluster_updated(self, cluster: Any, changes: dict[str, Any]) -> None:
        payload = {
            "cluster_id": str(cluster.id),
            "name": cluster.name,
            "changes": changes,
        }
        await self.publish(EventType.CLUSTER_UPDATED, payload, cluster.id)

    async def publish_cluster_deleted(self, cluster_id: UUID) -> None:
        payload = {"cluster_id": str(cluster_id)}
        await self.publish(EventType.CLUSTER_DELETED, payload, cluster_id)

    async def publish_cluster_status_changed(
        self, cluster_id: UUID, old_state: str, new_state: str
    ) -> None:
        """Publish CLUSTER_STATUS_CHANGED event."""
        payload = {
            "cluster_id": str(cluster_id),
            "old_state": old_state,
            "new_state": new_state,
        }
        await self.publish(EventType.CLUSTER_STATUS_CHANGED, payload, cluster_id)

    async def publish_metrics(self, metrics: HealthMetricsPayload) -> None:
        """Publish the live metrics payload and cache it as the latest sample."""
        payload = metrics.model_dump(mode="json")
        await self.publish(EventType.CLUSTER_METRICS, payload, metrics.cluster_id)
        if self.redis is None:
            return
        try:
            await self.redis.cache_set(
                "metrics", str(metrics.cluster_id), payload, ttl_seconds=METRICS_CACHE_TTL_SECONDS
            )
        except (RedisError, RuntimeError, OSError) as e:
            logger.warning("Metrics cache update failed", error=str(e))

    async def publish_alert(self, alert: Alert) -> None:
        """Publish ALERT_TRIGGERED event."""
        await self.publish(
            EventType.ALERT_TRIGGERED, alert.model_dump(mode="json"), alert.cluster_id
        )

    async def publish_recovery_completed(
        self, cluster_id: UUID, succeeded: bool, attempt: int
    ) -> None:
        payload = {
            "cluster_id": str(cluster_id),
            "succeeded": succeeded,
            "attempt": attempt,
        }
        await self.publish(EventType.RECOVERY_COMPLETED, payload, cluster_id)

    async def publish_backup_finished(self, backup: Backup) -> None:
        """Publish BACKUP_COMPLETED or BACKUP_FAILED depending on the outcome."""
        event_type = (
            EventType.BACKUP_COMPLETED if backup.status == "COMPLETED" else EventType.BACKUP_FAILED
        )
        payload = {
            "backup_id": str(backup.id),
            "cluster_id": str(backup.cluster_id),
            "backup_type": backup.backup_type,
            "status": backup.status,
            "automatic": backup.automatic,
            "size_bytes": backup.size_bytes,
            "error_message": backup.error_message,
        }
        await self.publish(event_type, payload, backup.cluster_id)

    async def publish_backup_restored(self, backup: Backup, target_path: str) -> None:
        payload = {
            "backup_id": str(backup.id),
            "cluster_id": str(backup.cluster_id),
            "target_path": target_path,
            "restore_count": backup.restore_count,
        }
        await self.publish(EventType.BACKUP_RESTORED, payload, backup.cluster_id)
