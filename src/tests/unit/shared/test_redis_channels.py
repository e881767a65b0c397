"""Unit tests for event channel routing."""

from datetime import datetime
from uuid import uuid4

import pytest

from shared.models import Event, EventType
from shared.redis_client import CHANNEL_PREFIX, RedisClient, RedisDB


def make_event(event_type: EventType, cluster_id=None) -> Event:
    return Event(
        event_id=uuid4(),
        event_type=event_type,
        cluster_id=cluster_id,
        timestamp=datetime(2026, 1, 1, 12, 0, 0),
    )


def test_cluster_scoped_event_channels() -> None:
    cluster_id = uuid4()
    channels = RedisClient.channels_for(make_event(EventType.BACKUP_COMPLETED, cluster_id))
    assert channels == [
        f"{CHANNEL_PREFIX}:all",
        f"{CHANNEL_PREFIX}:backup",
        f"{CHANNEL_PREFIX}:cluster:{cluster_id}",
    ]


def test_unscoped_event_channels() -> None:
    channels = RedisClient.channels_for(make_event(EventType.CLUSTER_DELETED))
    assert channels == ["clusterforge:events:all", "clusterforge:events:cluster"]


def test_client_requires_connect() -> None:
    client = RedisClient("redis://localhost:6379")
    with pytest.raises(RuntimeError, match="not connected"):
        client.get_client(RedisDB.PUBSUB)
