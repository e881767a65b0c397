"""Redis client wrapper.

Redis Database Layout:
- DB 0: PubSub, Events (clusterforge:events:*)
- DB 2: Latest metrics cache (cache:metrics:{cluster_id})
"""

import json
from enum import IntEnum
from typing import Any

import redis.asyncio as redis
from pydantic import BaseModel

from shared.models import Event


class RedisDB(IntEnum):
    """Redis database numbers."""

    PUBSUB = 0
    CACHE = 2


CHANNEL_PREFIX = "clusterforge:events"


class RedisClient:
    """Async Redis client with connection pooling."""

    def __init__(self, url: str = "redis://localhost:6379"):
        """Initialize Redis client.

        Args:
            url: Redis connection URL
        """
        self._url = url
        self._pools: dict[int, redis.ConnectionPool] = {}
        self._clients: dict[int, redis.Redis] = {}

    async def connect(self) -> None:
        """Initialize connection pools for all databases."""
        for db in RedisDB:
            pool = redis.ConnectionPool.from_url(
                self._url,
                db=db.value,
                decode_responses=True,
            )
            self._pools[db] = pool
            self._clients[db] = redis.Redis(connection_pool=pool)

    async def close(self) -> None:
        """Close all connections."""
        for client in self._clients.values():
            await client.aclose()
        for pool in self._pools.values():
            await pool.disconnect()
        self._clients.clear()
        self._pools.clear()

    def get_client(self, db: RedisDB) -> redis.Redis:
        """Get Redis client for specific database."""
        if db not in self._clients:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._clients[db]

    # =========================================================================
    # PubSub Operations (DB 0)
    # =========================================================================

    @staticmethod
    def channels_for(event: Event) -> list[str]:
        """Channels an event is published to.

        clusterforge:events:all, clusterforge:events:{category} and, for
        cluster-scoped events, clusterforge:events:cluster:{cluster_id}.
        """
        # event_type is stored as a plain string (use_enum_values=True)
        event_type_str = (
            event.event_type.value if hasattr(event.event_type, "value") else event.event_type
        )
        channels = [
            f"{CHANNEL_PREFIX}:all",
            f"{CHANNEL_PREFIX}:{event_type_str.lower().split('_')[0]}",
        ]
        if event.cluster_id:
            channels.append(f"{CHANNEL_PREFIX}:cluster:{event.cluster_id}")
        return channels

    async def publish_event(self, event: Event) -> int:
        """Publish event to Redis PubSub.

        Args:
            event: Event to publish

        Returns:
            Number of subscribers on the main channel that received the message
        """
        client = self.get_client(RedisDB.PUBSUB)
        message = event.model_dump_json()

        main_channel, *other_channels = self.channels_for(event)
        receivers = await client.publish(main_channel, message)
        for channel in other_channels:
            await client.publish(channel, message)

        return receivers

    # =========================================================================
    # Cache Operations (DB 2)
    # =========================================================================

    async def cache_set(
        self,
        service: str,
        key: str,
        value: str | dict[str, Any] | BaseModel,
        ttl_seconds: int = 300,
    ) -> None:
        """Set cached value.

        Key pattern: cache:{service}:{key}
        """
        client = self.get_client(RedisDB.CACHE)
        cache_key = f"cache:{service}:{key}"

        if isinstance(value, BaseModel):
            serialized = value.model_dump_json()
        elif isinstance(value, dict):
            serialized = json.dumps(value, default=str)
        else:
            serialized = value

        await client.setex(cache_key, ttl_seconds, serialized)

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict[str, Any]:
        """Check Redis connectivity.

        Returns:
            Health status dict
        """
        results = {}
        for db in RedisDB:
            try:
                client = self.get_client(db)
                await client.ping()
                results[db.name.lower()] = {"status": "healthy"}
            except (redis.RedisError, RuntimeError) as e:
                results[db.name.lower()] = {"status": "unhealthy", "error": str(e)}

        all_healthy = all(r["status"] == "healthy" for r in results.values())
        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "databases": results,
        }
