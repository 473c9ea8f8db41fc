"""APScheduler job definitions."""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import MarketPulseError
from marketpulse.queue.jobs import IngestionJob
from marketpulse.queue.queue_set import MARKET_DATA, NEWS_POLLING, SEC_FILINGS, QueueSet
from marketpulse.realtime.distribution import time_bucket
from marketpulse.realtime.notifications import NotificationInbox
from marketpulse.realtime.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class ScheduledTasks:
    """
    Recurring work triggered by the scheduler.

    Ingestion runs are only enqueued here; the worker pool executes them.
    Each run's job id is derived from its schedule slot, so several
    scheduler processes enqueue a slot once.
    """

    def __init__(
        self,
        queues: QueueSet,
        inbox: NotificationInbox,
        registry: SubscriptionRegistry,
        config: Optional[Settings] = None,
    ):
        self.queues = queues
        self.inbox = inbox
        self.registry = registry
        self.config = config or default_settings

    async def _enqueue_ingestion(self, queue_name: str, kind: str, slot_minutes: int) -> None:
        slot = time_bucket(datetime.now(timezone.utc), slot_minutes)
        try:
            await self.queues.get(queue_name).enqueue(
                IngestionJob(kind=kind), job_id=f"{kind}-{slot}"
            )
        except (RedisError, MarketPulseError) as e:
            logger.error(f"Failed to schedule {kind} ingestion: {e}")

    async def enqueue_market_data(self):
        await self._enqueue_ingestion(
            MARKET_DATA, "market_data", self.config.market_data_interval_minutes
        )

    async def enqueue_news_polling(self):
        await self._enqueue_ingestion(
            NEWS_POLLING, "news_polling", self.config.news_polling_interval_minutes
        )

    async def enqueue_sec_filings(self):
        await self._enqueue_ingestion(SEC_FILINGS, "sec_filing", 24 * 60)

    async def cleanup_notifications(self):
        """Drop expired inbox entries and expired notification jobs."""
        try:
            swept = await self.inbox.sweep_expired()
            cancelled = await self.queues.cleanup_expired_notifications()
        except (RedisError, MarketPulseError) as e:
            logger.error(f"Notification cleanup failed: {e}")
            return
        logger.info(f"Notification cleanup: {swept} inbox entries, {cancelled} queued jobs")

    async def cleanup_subscriptions(self):
        try:
            await self.registry.cleanup_orphans()
        except RedisError as e:
            logger.error(f"Subscription cleanup failed: {e}")


def setup_scheduler(tasks: ScheduledTasks, config: Optional[Settings] = None) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Market data and news ingestion at their configured intervals
    - SEC filings daily at settings.sec_filing_cron_hour
    - Notification cleanup hourly, orphaned subscription cleanup every 30 minutes

    Returns:
        Configured scheduler instance
    """
    config = config or default_settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        tasks.enqueue_market_data,
        IntervalTrigger(minutes=config.market_data_interval_minutes),
        id="market_data_ingestion",
        name="Enqueue market data ingestion",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        tasks.enqueue_news_polling,
        IntervalTrigger(minutes=config.news_polling_interval_minutes),
        id="news_polling",
        name="Enqueue news polling",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        tasks.enqueue_sec_filings,
        CronTrigger(hour=config.sec_filing_cron_hour, minute=0),
        id="sec_filing_ingestion",
        name="Enqueue SEC filing ingestion",
        max_instances=1,
        replace_existing=True,
    )

    scheduler.add_job(
        tasks.cleanup_notifications,
        IntervalTrigger(minutes=config.notification_cleanup_interval_minutes),
        id="notification_cleanup",
        name="Remove expired notifications",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        tasks.cleanup_subscriptions,
        IntervalTrigger(minutes=config.subscription_cleanup_interval_minutes),
        id="subscription_cleanup",
        name="Remove orphaned subscriptions",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: market data every %d minutes, news every %d minutes, "
        "SEC filings daily at %02d:00, notification cleanup every %d minutes, "
        "subscription cleanup every %d minutes",
        config.market_data_interval_minutes,
        config.news_polling_interval_minutes,
        config.sec_filing_cron_hour,
        config.notification_cleanup_interval_minutes,
        config.subscription_cleanup_interval_minutes,
    )
    return scheduler
