"""Service container wiring every component from one Settings object."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from marketpulse.config import Settings, settings as default_settings
from marketpulse.db.repository import MarketRepository
from marketpulse.db.session import build_engine, build_session_factory, create_all
from marketpulse.detect.validation import AlertValidationEngine
from marketpulse.detect.volume import VolumeSpikeDetector
from marketpulse.infra.cache import CacheService
from marketpulse.infra.rate_limiter import RateLimiter
from marketpulse.infra.redis_store import RedisStore
from marketpulse.ingest.analysis import OpenAIAnalysisProvider
from marketpulse.ingest.base import AnalysisProvider, FilingProvider, MarketDataProvider, NewsProvider
from marketpulse.ingest.edgar import EdgarClient
from marketpulse.ingest.finnhub import FinnhubClient
from marketpulse.queue.jobs import WebSocketJob, websocket_job_id
from marketpulse.queue.queue_set import WEBSOCKET, QueueSet
from marketpulse.realtime.distribution import AlertDistributor
from marketpulse.realtime.gateway import FanoutGateway
from marketpulse.realtime.notifications import NotificationInbox
from marketpulse.realtime.registry import SubscriptionRegistry
from marketpulse.worker.handlers import JobHandlers
from marketpulse.worker.pool import WorkerPool
from marketpulse.worker.scheduler import ScheduledTasks, setup_scheduler

logger = logging.getLogger(__name__)


class Services:
    """
    Explicitly constructed services shared by the API and worker processes.

    Everything is built eagerly but connects lazily; ``startup()`` only
    checks connectivity and ``shutdown()`` releases connections in reverse
    order. Providers left unset are built from settings when their API key
    is configured.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        store: Optional[RedisStore] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        market_data: Optional[MarketDataProvider] = None,
        news: Optional[NewsProvider] = None,
        filings: Optional[FilingProvider] = None,
        analysis: Optional[AnalysisProvider] = None,
    ):
        self.config = config or default_settings
        self.store = store or RedisStore(self.config)

        self.db_engine: Optional[AsyncEngine] = None
        if session_factory is None:
            self.db_engine = build_engine(self.config.database_url, echo=self.config.debug)
            session_factory = build_session_factory(self.db_engine)
        self.session_factory = session_factory
        self.repository = MarketRepository(session_factory)

        self.limiter = RateLimiter(self.store)
        self.cache = CacheService(self.store, self.config.cache_invalidation_channel)
        self.queues = QueueSet(self.store, self.config)
        self.registry = SubscriptionRegistry(self.store, self.config.connection_ttl_seconds)
        self.inbox = NotificationInbox(self.store)
        self.distributor = AlertDistributor(
            self.store, self.registry, self.queues, watchers=self.repository, config=self.config
        )
        self.gateway = FanoutGateway(self.store, self.registry, self.inbox, self.config)
        self.validation = AlertValidationEngine(self.repository, self.config)
        self._invalidation_listener: Optional[asyncio.Task] = None

        finnhub = None
        if (market_data is None or news is None) and self.config.finnhub_api_key:
            finnhub = FinnhubClient(self.limiter, self.config)
        self.market_data = market_data or finnhub
        self.news = news or finnhub
        self.filings = filings or EdgarClient(self.limiter, self.cache, self.config)
        if analysis is None and self.config.openai_api_key:
            analysis = OpenAIAnalysisProvider(self.config)
        self.analysis = analysis

        self.handlers = JobHandlers(
            store=self.store,
            queues=self.queues,
            cache=self.cache,
            registry=self.registry,
            inbox=self.inbox,
            distributor=self.distributor,
            engine=self.validation,
            ingestion=self.repository,
            market_data=self.market_data,
            news=self.news,
            filings=self.filings,
            analysis=self.analysis,
            detector=VolumeSpikeDetector(self.config.volume_spike_threshold),
            config=self.config,
        )

    async def startup(self, create_tables: bool = False, listen_for_invalidation: bool = False) -> None:
        """
        Check connectivity; a missing Redis is logged, not fatal.

        Args:
            create_tables: Create missing database tables
            listen_for_invalidation: Relay cache invalidation broadcasts to live
                subscribers (run in exactly one process role)
        """
        if await self.store.test_connection():
            logger.info("Redis connection verified")
        else:
            logger.warning("Redis is unreachable; commands will retry with backoff")

        if create_tables and self.db_engine is not None:
            await create_all(self.db_engine)

        missing = [
            name
            for name, provider in (
                ("market data", self.market_data),
                ("news", self.news),
                ("analysis", self.analysis),
            )
            if provider is None
        ]
        if missing:
            logger.warning(f"Providers not configured: {', '.join(missing)}")

        if listen_for_invalidation and self._invalidation_listener is None:
            self._invalidation_listener = self.cache.listen_for_invalidation(self.on_cache_invalidation)

    async def on_cache_invalidation(self, message: dict[str, Any]) -> None:
        """Tell live subscribers of a ticker that its cached data changed."""
        if message.get("scope") != "ticker":
            return
        ticker = str(message.get("pattern", "")).rpartition(":")[2]
        if not ticker:
            return
        try:
            if not await self.registry.connections_for(ticker):
                return
            await self.queues.get(WEBSOCKET).enqueue(
                WebSocketJob(ticker_id=ticker, event_type="ticker_updated", data={}),
                job_id=websocket_job_id(ticker, datetime.now(timezone.utc)),
            )
        except RedisError as e:
            logger.warning(f"Could not relay cache invalidation for {ticker}: {e}")

    def build_worker_pool(self, concurrency: Optional[int] = None) -> WorkerPool:
        pool = WorkerPool(self.queues, concurrency=concurrency, config=self.config)
        pool.register_all(self.handlers.routes())
        return pool

    def build_scheduler(self) -> AsyncIOScheduler:
        tasks = ScheduledTasks(self.queues, self.inbox, self.registry, self.config)
        return setup_scheduler(tasks, self.config)

    async def shutdown(self) -> None:
        """Release provider clients, Redis connections and the database engine."""
        if self._invalidation_listener is not None:
            self._invalidation_listener.cancel()
            await asyncio.gather(self._invalidation_listener, return_exceptions=True)
            self._invalidation_listener = None

        closed: set[int] = set()
        for provider in (self.market_data, self.news, self.filings, self.analysis):
            if provider is None or id(provider) in closed:
                continue
            closed.add(id(provider))
            close = getattr(provider, "close", None)
            if close is not None:
                await close()

        await self.queues.close()
        await self.store.close()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("Services shut down")
