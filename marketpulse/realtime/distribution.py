"""Routes alert jobs to live user channels or offline notifications."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from marketpulse import metrics
from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import DeliveryError, MarketPulseError
from marketpulse.infra.redis_store import RedisStore
from marketpulse.queue.jobs import (
    AlertJob,
    NotificationContent,
    NotificationJob,
    notification_priority,
    to_ms,
)
from marketpulse.queue.queue_set import QueueSet
from marketpulse.realtime.registry import SubscriptionRegistry, normalize_topic

logger = logging.getLogger(__name__)


def user_channel(user_id: str) -> str:
    return f"user:{user_id}:notifications"


def time_bucket(moment: datetime, minutes: int) -> int:
    """Start of the ``minutes``-wide bucket containing ``moment`` (ms)."""
    width = minutes * 60 * 1000
    return to_ms(moment) // width * width


class WatcherDirectory(ABC):
    """Users who asked to be alerted about a ticker."""

    @abstractmethod
    async def watchers_of(self, ticker: str) -> list[str]:
        """User ids watching ``ticker`` with alerts enabled."""


class DeliveryDedupe:
    """Remembers which (user, alert) pairs were delivered."""

    def __init__(self, store: RedisStore, ttl_hours: int):
        self.store = store
        self.ttl_hours = ttl_hours

    def _key(self, user_id: str, alert_key: str) -> str:
        return f"delivery:{user_id}:{alert_key}"

    async def is_delivered(self, user_id: str, alert_key: str) -> bool:
        exists = await self.store.client.exists(self._key(user_id, alert_key))
        return exists > 0

    async def mark_delivered(self, user_id: str, alert_key: str) -> None:
        key = self._key(user_id, alert_key)
        await self.store.client.setex(key, self.ttl_hours * 3600, "1")
        logger.debug(f"Marked delivery: {key} (TTL: {self.ttl_hours}h)")


@dataclass
class DistributionResult:
    published: int = 0
    queued: int = 0
    skipped: int = 0


def alert_message(alert: AlertJob) -> str:
    """Socket message pushed to live users."""
    return json.dumps(
        {
            "type": "alert",
            "data": {
                "ticker_id": alert.ticker_id,
                "alert_type": alert.alert_type,
                "severity": alert.severity,
                "message": alert.message,
                "metadata": alert.metadata,
            },
            "timestamp": alert.timestamp.isoformat(),
        },
        default=str,
    )


def alert_key(alert: AlertJob, bucket_minutes: int) -> str:
    """
    Identity of an alert when its job id is not known.

    Filing alerts are identified by accession number and spike alerts by
    spike id; anything else falls back to its time bucket.
    """
    ticker = normalize_topic(alert.ticker_id)
    for field in ("accession_number", "volume_spike_id"):
        value = alert.metadata.get(field)
        if value:
            return f"{alert.alert_type}-{ticker}-{value}"
    return f"{alert.alert_type}-{ticker}-{time_bucket(alert.timestamp, bucket_minutes)}"


class AlertDistributor:
    """
    Delivers an alert to every interested user exactly once.

    Recipients are the ticker's watchers plus any user live-subscribed to
    the ticker. Online users get a publish on their channel; offline users,
    and online users whose publish reached no listener, get a notification
    job. A retried job skips users already served.
    """

    def __init__(
        self,
        store: RedisStore,
        registry: SubscriptionRegistry,
        queues: QueueSet,
        watchers: Optional[WatcherDirectory] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry
        self.queues = queues
        self.watchers = watchers
        self.config = config or default_settings
        self.dedupe = DeliveryDedupe(store, self.config.delivery_dedupe_ttl_hours)

    async def recipients(self, ticker: str) -> list[str]:
        """Watchers first, then live subscribers, without repeats."""
        users: dict[str, None] = {}
        if self.watchers is not None:
            for user_id in await self.watchers.watchers_of(ticker):
                users.setdefault(user_id, None)
        for user_id in await self.registry.users_subscribed_to(ticker):
            users.setdefault(user_id, None)
        return list(users)

    async def distribute(self, alert: AlertJob, alert_id: Optional[str] = None) -> DistributionResult:
        """
        Deliver one alert.

        Args:
            alert: The alert payload
            alert_id: Stable identity of the alert (its job id); derived from
                the payload when omitted

        Raises:
            DeliveryError: If any recipient could not be served (the job retries
                and the dedupe keys make the retry skip users already served)
        """
        ticker = normalize_topic(alert.ticker_id)
        key = alert_id or alert_key(alert, self.config.alert_time_bucket_minutes)
        recipients = await self.recipients(ticker)
        result = DistributionResult()

        if not recipients:
            logger.info(f"No recipients for {alert.alert_type} alert on {ticker}")
            return result

        message = alert_message(alert)
        failed: list[str] = []

        for user_id in recipients:
            try:
                if await self.dedupe.is_delivered(user_id, key):
                    result.skipped += 1
                    continue

                receivers = 0
                if await self.registry.is_user_online(user_id):
                    receivers = await self.store.client.publish(user_channel(user_id), message)
                if receivers:
                    metrics.record_alert_published(alert.alert_type, alert.severity)
                    result.published += 1
                else:
                    await self.queues.enqueue_notification(
                        self._notification_for(user_id, alert),
                        job_id=f"notif-{user_id}-{key}",
                    )
                    metrics.record_notification_queued(alert.severity)
                    result.queued += 1

                await self.dedupe.mark_delivered(user_id, key)
            except (RedisError, MarketPulseError) as e:
                logger.error(f"Failed to deliver {ticker} alert to {user_id}: {e}")
                failed.append(user_id)

        logger.info(
            f"Distributed {alert.alert_type} alert for {ticker}: "
            f"{result.published} live, {result.queued} queued, {result.skipped} already delivered"
        )
        if failed:
            raise DeliveryError(ticker, failed)
        return result

    def _notification_for(self, user_id: str, alert: AlertJob) -> NotificationJob:
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.config.notification_ttl_hours)
        return NotificationJob(
            user_id=user_id,
            ticker_id=normalize_topic(alert.ticker_id),
            payload=NotificationContent(
                alert_type=alert.alert_type,
                message=alert.message,
                severity=alert.severity,
                data={"metadata": alert.metadata, "timestamp": alert.timestamp.isoformat()},
            ),
            priority=notification_priority(alert.severity),
            expires_at=expires_at,
        )
