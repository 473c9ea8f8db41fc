"""The fixed set of named queues used by MarketPulse."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import JobNotFoundError, JobStateError, MarketPulseError
from marketpulse.infra.redis_store import RedisStore
from marketpulse.queue.jobs import (
    AlertJob,
    Job,
    NotificationJob,
    alert_job_id,
    alert_priority,
    notification_job_id,
    notification_priority,
)
from marketpulse.queue.queue import QueueOptions, RedisJobQueue

logger = logging.getLogger(__name__)

ALERTS = "alerts"
NOTIFICATIONS = "notifications"
WEBSOCKET = "websocket"
WORKER_JOBS = "worker-jobs"
MARKET_DATA = "market-data-ingestion"
NEWS_POLLING = "news-polling"
SEC_FILINGS = "sec-filing-ingestion"

QUEUE_JOB_TYPES: dict[str, frozenset[str]] = {
    ALERTS: frozenset({"alert"}),
    NOTIFICATIONS: frozenset({"notification"}),
    WEBSOCKET: frozenset({"websocket"}),
    WORKER_JOBS: frozenset({"spike_analysis", "contradiction_check", "alert_validation"}),
    MARKET_DATA: frozenset({"market_data"}),
    NEWS_POLLING: frozenset({"news_polling"}),
    SEC_FILINGS: frozenset({"sec_filing"}),
}

# Queues whose attempt count differs from the default
ATTEMPT_OVERRIDES = {
    WEBSOCKET: 1,
    NOTIFICATIONS: 5,
}


def build_queue_options(config: Settings) -> dict[str, QueueOptions]:
    """Create the options for every named queue from settings."""
    return {
        name: QueueOptions(
            name=name,
            job_types=job_types,
            attempts=ATTEMPT_OVERRIDES.get(name, config.queue_default_attempts),
            backoff_delay_ms=config.queue_backoff_delay_ms,
            lock_duration_ms=config.queue_lock_duration_ms,
            lock_renew_ms=config.queue_lock_renew_ms,
            max_stalled_count=config.queue_max_stalled_count,
        )
        for name, job_types in QUEUE_JOB_TYPES.items()
    }


class QueueSet:
    """
    Registry of the named queues plus domain-level enqueue helpers.

    All queues share the store's dedicated queue connection.
    """

    def __init__(
        self,
        store: RedisStore,
        config: Optional[Settings] = None,
        options: Optional[dict[str, QueueOptions]] = None,
    ):
        self.store = store
        self.config = config or default_settings
        self.options = options or build_queue_options(self.config)
        self.queues: dict[str, RedisJobQueue] = {
            name: RedisJobQueue(store, opts, prefix=self.config.queue_prefix)
            for name, opts in self.options.items()
        }

    def get(self, name: str) -> RedisJobQueue:
        """
        Look up a queue by name.

        Raises:
            JobNotFoundError: For an unknown queue name (mapped to 404 by the API)
        """
        queue = self.queues.get(name)
        if queue is None:
            raise JobNotFoundError(name, "*")
        return queue

    @property
    def names(self) -> list[str]:
        return list(self.queues)

    async def enqueue_alert(self, alert: AlertJob, job_id: Optional[str] = None) -> Job:
        """Enqueue an alert with severity-derived priority and time-based identity."""
        return await self.queues[ALERTS].enqueue(
            alert,
            job_id=job_id or alert_job_id(alert.ticker_id, alert.timestamp),
            priority=alert_priority(alert.severity),
        )

    async def enqueue_notification(
        self, notification: NotificationJob, job_id: Optional[str] = None
    ) -> Job:
        """Enqueue a notification for an offline user."""
        created = datetime.now(timezone.utc)
        priority = notification_priority(notification.payload.severity)
        return await self.queues[NOTIFICATIONS].enqueue(
            notification,
            job_id=job_id or notification_job_id(notification.user_id, created),
            priority=priority,
        )

    async def stats(self) -> dict[str, dict[str, int]]:
        """Job counts for every queue; a failing queue reports empty counts."""
        names = list(self.queues)
        results = await asyncio.gather(
            *(self.queues[name].get_job_counts() for name in names),
            return_exceptions=True,
        )
        stats: dict[str, dict[str, int]] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to read counts for queue {name}: {result}")
                stats[name] = {}
            else:
                stats[name] = result
        return stats

    async def cleanup_expired_notifications(self, now: Optional[datetime] = None) -> int:
        """
        Cancel pending notification jobs whose ``expires_at`` has passed.

        Returns:
            Number of jobs removed
        """
        now = now or datetime.now(timezone.utc)
        queue = self.queues[NOTIFICATIONS]
        removed = 0
        for job in await queue.get_pending():
            try:
                notification = job.parsed_payload()
            except MarketPulseError as e:
                logger.warning(f"Skipping notification job {job.id} with bad payload: {e}")
                continue
            if notification.expires_at <= now:
                try:
                    await queue.cancel(job.id)
                    removed += 1
                except (JobNotFoundError, JobStateError):
                    # Picked up by a worker in the meantime
                    continue
        if removed:
            logger.info(f"Removed {removed} expired notification jobs")
        return removed

    async def close(self) -> None:
        """Queues hold no resources of their own; the store owns the connections."""
        logger.info("Queue set closed")

