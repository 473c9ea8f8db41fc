"""Subscription registry shared by every process through Redis.

Forward record: one hash per connection (``ws:subscription:{conn}``) with
the owning user and one ``topic:{T}`` field per subscribed topic.
Reverse index: one set per topic (``ticker:{T}:subscribers``).
Live connections per user: ``user:{uid}:connections``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from redis.exceptions import RedisError

from marketpulse.config import settings
from marketpulse.infra.redis_store import RedisStore

logger = logging.getLogger(__name__)

TOPIC_FIELD_PREFIX = "topic:"


def subscription_key(connection_id: str) -> str:
    return f"ws:subscription:{connection_id}"


def topic_subscribers_key(topic: str) -> str:
    return f"ticker:{topic}:subscribers"


def user_connections_key(user_id: str) -> str:
    return f"user:{user_id}:connections"


def normalize_topic(topic: str) -> str:
    return topic.strip().upper()


def _normalize_all(topics: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for topic in topics:
        if isinstance(topic, str) and topic.strip():
            seen.setdefault(normalize_topic(topic), None)
    return list(seen)


class SubscriptionRegistry:
    """
    Maps topics to live connections and back.

    Forward and reverse indices are updated in the same MULTI block so
    readers in other processes never see one without the other.
    """

    def __init__(self, store: RedisStore, connection_ttl_seconds: Optional[int] = None):
        self.store = store
        self.connection_ttl = connection_ttl_seconds or settings.connection_ttl_seconds

    @property
    def client(self):
        return self.store.client

    async def register_connection(self, connection_id: str, user_id: str) -> None:
        """Create the forward record and mark the user online."""
        now = datetime.now(timezone.utc).isoformat()
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(
                subscription_key(connection_id),
                mapping={"connection_id": connection_id, "user_id": user_id, "connected_at": now},
            )
            pipe.expire(subscription_key(connection_id), self.connection_ttl)
            pipe.sadd(user_connections_key(user_id), connection_id)
            pipe.expire(user_connections_key(user_id), self.connection_ttl)
            await pipe.execute()
        logger.debug(f"Registered connection {connection_id} for user {user_id}")

    async def touch(self, connection_id: str, user_id: str) -> None:
        """Renew the TTL on a live connection's records."""
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.expire(subscription_key(connection_id), self.connection_ttl)
            pipe.expire(user_connections_key(user_id), self.connection_ttl)
            await pipe.execute()

    async def subscribe(self, connection_id: str, topics: Iterable[str]) -> list[str]:
        """
        Subscribe a connection to topics.

        Returns:
            The normalized topics that were applied
        """
        normalized = _normalize_all(topics)
        if not normalized:
            return []
        now = datetime.now(timezone.utc).isoformat()
        key = subscription_key(connection_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for topic in normalized:
                pipe.sadd(topic_subscribers_key(topic), connection_id)
                pipe.hset(key, f"{TOPIC_FIELD_PREFIX}{topic}", now)
            pipe.expire(key, self.connection_ttl)
            await pipe.execute()
        logger.debug(f"Connection {connection_id} subscribed to {normalized}")
        return normalized

    async def unsubscribe(self, connection_id: str, topics: Iterable[str]) -> list[str]:
        """Reverse exactly the given subscriptions; other topics are untouched."""
        normalized = _normalize_all(topics)
        if not normalized:
            return []
        key = subscription_key(connection_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for topic in normalized:
                pipe.srem(topic_subscribers_key(topic), connection_id)
                pipe.hdel(key, f"{TOPIC_FIELD_PREFIX}{topic}")
            await pipe.execute()
        logger.debug(f"Connection {connection_id} unsubscribed from {normalized}")
        return normalized

    async def topics_for(self, connection_id: str) -> list[str]:
        record = await self.client.hgetall(subscription_key(connection_id))
        return sorted(
            name[len(TOPIC_FIELD_PREFIX):]
            for name in record
            if name.startswith(TOPIC_FIELD_PREFIX)
        )

    async def remove_connection(self, connection_id: str) -> list[str]:
        """
        Remove a connection from every index its forward record lists.

        Returns:
            Topics the connection was removed from
        """
        key = subscription_key(connection_id)
        record = await self.client.hgetall(key)
        topics = [
            name[len(TOPIC_FIELD_PREFIX):]
            for name in record
            if name.startswith(TOPIC_FIELD_PREFIX)
        ]
        user_id = record.get("user_id")

        async with self.client.pipeline(transaction=True) as pipe:
            for topic in topics:
                pipe.srem(topic_subscribers_key(topic), connection_id)
            if user_id:
                pipe.srem(user_connections_key(user_id), connection_id)
            pipe.delete(key)
            await pipe.execute()
        logger.debug(f"Removed connection {connection_id} ({len(topics)} topics)")
        return topics

    async def connections_for(self, topic: str) -> set[str]:
        return set(await self.client.smembers(topic_subscribers_key(normalize_topic(topic))))

    async def users_subscribed_to(self, topic: str) -> list[str]:
        """Distinct users with at least one live connection subscribed to ``topic``."""
        return await self.owners_of(sorted(await self.connections_for(topic)))

    async def owners_of(self, connection_ids: Iterable[str]) -> list[str]:
        """Distinct owners of the given connections; expired records are skipped."""
        connection_ids = list(connection_ids)
        if not connection_ids:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for connection_id in connection_ids:
                pipe.hget(subscription_key(connection_id), "user_id")
            owners = await pipe.execute()
        users: dict[str, None] = {}
        for owner in owners:
            if owner:
                users.setdefault(owner, None)
        return list(users)

    async def live_connections(self, user_id: str) -> list[str]:
        """Connections of a user whose forward record is still alive."""
        connection_ids = sorted(await self.client.smembers(user_connections_key(user_id)))
        if not connection_ids:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for connection_id in connection_ids:
                pipe.exists(subscription_key(connection_id))
            alive = await pipe.execute()
        return [cid for cid, exists in zip(connection_ids, alive) if exists]

    async def is_user_online(self, user_id: str) -> bool:
        return bool(await self.live_connections(user_id))

    async def _prune_set(self, set_key: str) -> int:
        members = list(await self.client.smembers(set_key))
        if not members:
            return 0
        async with self.client.pipeline(transaction=False) as pipe:
            for connection_id in members:
                pipe.exists(subscription_key(connection_id))
            alive = await pipe.execute()
        dead = [cid for cid, exists in zip(members, alive) if not exists]
        if dead:
            await self.client.srem(set_key, *dead)
        return len(dead)

    async def cleanup_orphans(self) -> int:
        """
        Drop index members whose forward record has expired.

        Connections held by a crashed process stop renewing their TTL; this
        sweep removes what they left behind in the reverse indices.

        Returns:
            Number of index entries removed
        """
        removed = 0
        for pattern in ("ticker:*:subscribers", "user:*:connections"):
            async for set_key in self.client.scan_iter(match=pattern, count=200):
                removed += await self._prune_set(set_key)
        if removed:
            logger.info(f"Removed {removed} orphaned subscription entries")
        return removed

    async def stats(self) -> dict[str, Any]:
        """Connection and per-topic subscriber counts; empty on store errors."""
        try:
            active_connections = 0
            async for _ in self.client.scan_iter(match="ws:subscription:*", count=200):
                active_connections += 1

            subscribers: dict[str, int] = {}
            async for set_key in self.client.scan_iter(match="ticker:*:subscribers", count=200):
                topic = set_key[len("ticker:"):-len(":subscribers")]
                count = await self.client.scard(set_key)
                if count:
                    subscribers[topic] = count
        except RedisError as e:
            logger.error(f"Error getting subscription stats: {e}")
            return {}

        return {
            "active_connections": active_connections,
            "active_topics": len(subscribers),
            "subscribers_per_topic": dict(sorted(subscribers.items())),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
