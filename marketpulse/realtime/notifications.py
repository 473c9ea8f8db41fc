"""Durable per-user inbox for alerts raised while a user was offline."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from marketpulse.infra.redis_store import RedisStore
from marketpulse.queue.jobs import NotificationJob, to_ms

logger = logging.getLogger(__name__)

PENDING_USERS_KEY = "users:with:pending_notifications"


def inbox_key(user_id: str) -> str:
    return f"user:{user_id}:notifications"


def notification_message(notification: NotificationJob) -> str:
    """
    Render the socket message for a notification.

    The rendering is deterministic so storing the same notification twice
    leaves a single inbox entry.
    """
    content = notification.payload
    return json.dumps(
        {
            "type": "alert",
            "data": {
                "ticker_id": notification.ticker_id,
                "alert_type": content.alert_type,
                "severity": content.severity,
                "message": content.message,
                **content.data,
            },
            "timestamp": content.data.get("timestamp"),
            "expires_at": notification.expires_at.isoformat(),
        },
        sort_keys=True,
        default=str,
    )


class NotificationInbox:
    """Sorted set per user scored by expiry time (ms)."""

    def __init__(self, store: RedisStore):
        self.store = store

    @property
    def client(self):
        return self.store.client

    async def store_notification(self, notification: NotificationJob) -> bool:
        """
        Persist a notification until it is delivered or expires.

        Returns:
            True if it was new, False if it was already stored
        """
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(
                inbox_key(notification.user_id),
                {notification_message(notification): to_ms(notification.expires_at)},
            )
            pipe.sadd(PENDING_USERS_KEY, notification.user_id)
            added, _ = await pipe.execute()
        if added:
            logger.debug(f"Stored notification for offline user {notification.user_id}")
        return bool(added)

    async def drain(self, user_id: str, now: Optional[datetime] = None) -> list[str]:
        """
        Take every unexpired notification for a user, oldest expiry first.

        The read and delete run in one MULTI block so two connections of the
        same user never both receive a stored notification.
        """
        now_ms = to_ms(now or datetime.now(timezone.utc))
        key = inbox_key(user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zrangebyscore(key, now_ms, "+inf")
            pipe.delete(key)
            pipe.srem(PENDING_USERS_KEY, user_id)
            messages, _, _ = await pipe.execute()
        if messages:
            logger.info(f"Delivering {len(messages)} pending notifications to {user_id}")
        return list(messages)

    async def pending_count(self, user_id: str, now: Optional[datetime] = None) -> int:
        now_ms = to_ms(now or datetime.now(timezone.utc))
        return await self.client.zcount(inbox_key(user_id), now_ms, "+inf")

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove expired notifications from every inbox.

        Returns:
            Number of notifications removed
        """
        now_ms = to_ms(now or datetime.now(timezone.utc))
        removed = 0
        for user_id in await self.client.smembers(PENDING_USERS_KEY):
            key = inbox_key(user_id)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", f"({now_ms}")
                pipe.zcard(key)
                expired, remaining = await pipe.execute()
            removed += expired
            if not remaining:
                await self.client.srem(PENDING_USERS_KEY, user_id)
        if removed:
            logger.info(f"Swept {removed} expired notifications")
        return removed
