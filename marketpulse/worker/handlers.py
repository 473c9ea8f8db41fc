"""Domain handlers, one per job type."""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from marketpulse.config import Settings, settings as default_settings
from marketpulse.detect.validation import AlertValidationEngine, CandidateAlert, validate_contradiction
from marketpulse.detect.volume import VolumeSpike, VolumeSpikeDetector
from marketpulse.errors import JobPayloadError, MarketPulseError, ProviderError
from marketpulse.infra.cache import CacheKeys, CacheService, CacheTTL
from marketpulse.infra.redis_store import RedisStore
from marketpulse.ingest.base import (
    MATERIAL_FORMS,
    AnalysisProvider,
    Filing,
    FilingProvider,
    IngestionStore,
    MarketDataProvider,
    NewsProvider,
    Quote,
)
from marketpulse.queue.jobs import (
    AlertJob,
    AnalysisJob,
    IngestionJob,
    Job,
    NotificationJob,
    WebSocketJob,
    alert_job_id,
    from_ms,
    websocket_job_id,
)
from marketpulse.queue.queue_set import (
    ALERTS,
    MARKET_DATA,
    NEWS_POLLING,
    NOTIFICATIONS,
    SEC_FILINGS,
    WEBSOCKET,
    WORKER_JOBS,
    QueueSet,
)
from marketpulse.realtime.distribution import AlertDistributor, time_bucket, user_channel
from marketpulse.realtime.notifications import NotificationInbox, notification_message
from marketpulse.realtime.registry import SubscriptionRegistry, normalize_topic

logger = logging.getLogger(__name__)

Handler = Callable[[Job, BaseModel], Awaitable[None]]

FILING_FORMS = tuple(sorted(MATERIAL_FORMS))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobHandlers:
    """
    Handlers for every job type.

    Providers are optional: a handler whose provider is missing is simply not
    routed, so its jobs fail as unknown instead of retrying forever.
    """

    def __init__(
        self,
        *,
        store: RedisStore,
        queues: QueueSet,
        cache: CacheService,
        registry: SubscriptionRegistry,
        inbox: NotificationInbox,
        distributor: AlertDistributor,
        engine: AlertValidationEngine,
        ingestion: IngestionStore,
        market_data: Optional[MarketDataProvider] = None,
        news: Optional[NewsProvider] = None,
        filings: Optional[FilingProvider] = None,
        analysis: Optional[AnalysisProvider] = None,
        detector: Optional[VolumeSpikeDetector] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.queues = queues
        self.cache = cache
        self.registry = registry
        self.inbox = inbox
        self.distributor = distributor
        self.engine = engine
        self.ingestion = ingestion
        self.market_data = market_data
        self.news = news
        self.filings = filings
        self.analysis = analysis
        self.config = config or default_settings
        self.detector = detector or VolumeSpikeDetector(self.config.volume_spike_threshold)

    def routes(self) -> dict[tuple[str, str], Handler]:
        """Handler registry keyed by (queue name, job type)."""
        routes: dict[tuple[str, str], Handler] = {
            (ALERTS, "alert"): self.handle_alert,
            (NOTIFICATIONS, "notification"): self.handle_notification,
            (WEBSOCKET, "websocket"): self.handle_websocket,
            (WORKER_JOBS, "alert_validation"): self.handle_alert_validation,
        }
        if self.market_data is not None:
            routes[(MARKET_DATA, "market_data")] = self.handle_market_data
        if self.news is not None:
            routes[(NEWS_POLLING, "news_polling")] = self.handle_news_polling
        if self.filings is not None:
            routes[(SEC_FILINGS, "sec_filing")] = self.handle_sec_filing
        if self.analysis is not None:
            routes[(WORKER_JOBS, "spike_analysis")] = self.handle_spike_analysis
            routes[(WORKER_JOBS, "contradiction_check")] = self.handle_contradiction_check
        return routes

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def handle_alert(self, job: Job, alert: AlertJob) -> None:
        await self.distributor.distribute(alert, alert_id=job.id)

    async def handle_notification(self, job: Job, notification: NotificationJob) -> None:
        """Push to the user's channel when they are online, otherwise keep it in the inbox."""
        if notification.expires_at <= _utcnow():
            logger.info(f"Dropping expired notification {job.id} for {notification.user_id}")
            return

        if await self.registry.is_user_online(notification.user_id):
            receivers = await self.store.client.publish(
                user_channel(notification.user_id), notification_message(notification)
            )
            if receivers:
                logger.debug(f"Notification {job.id} pushed live to {notification.user_id}")
                return

        await self.inbox.store_notification(notification)

    async def handle_websocket(self, job: Job, broadcast: WebSocketJob) -> None:
        """Publish an event to the channel of every user subscribed to the ticker."""
        ticker = normalize_topic(broadcast.ticker_id)
        if broadcast.connection_ids:
            users = await self.registry.owners_of(broadcast.connection_ids)
        else:
            users = await self.registry.users_subscribed_to(ticker)

        if not users:
            logger.debug(f"No live subscribers for {ticker} {broadcast.event_type}")
            return

        message = json.dumps(
            {
                "type": broadcast.event_type,
                "data": {"ticker_id": ticker, **broadcast.data},
                "timestamp": _utcnow().isoformat(),
            },
            default=str,
        )
        for user_id in users:
            await self.store.client.publish(user_channel(user_id), message)
        logger.info(f"Broadcast {broadcast.event_type} for {ticker} to {len(users)} users")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _tickers(self, payload: IngestionJob) -> list[str]:
        tickers = payload.tickers or await self.ingestion.active_tickers()
        return list(dict.fromkeys(normalize_topic(t) for t in tickers if t.strip()))

    async def handle_market_data(self, job: Job, payload: IngestionJob) -> None:
        """
        Fetch quotes, cache them and raise validated volume-spike alerts.

        Tickers are processed independently; if any failed the job raises
        afterwards so the queue retries it (alerts already raised are
        deduplicated by their time-bucket id).
        """
        tickers = await self._tickers(payload)
        failed: list[str] = []
        alerts = 0

        for ticker in tickers:
            try:
                if await self._process_quote(ticker):
                    alerts += 1
            except MarketPulseError as e:
                logger.error(f"Market data processing failed for {ticker}: {e}")
                failed.append(ticker)

        logger.info(
            f"Market data pass: {len(tickers) - len(failed)}/{len(tickers)} tickers, "
            f"{alerts} alerts raised"
        )
        if failed:
            raise ProviderError(f"Market data failed for {', '.join(failed)}")

    async def _process_quote(self, ticker: str) -> bool:
        quote = await self.market_data.get_quote(ticker)
        if quote is None:
            return False

        await self._cache_quote(quote)
        await self._broadcast_quote(quote)

        if not quote.volume:
            return False

        observed_at = quote.timestamp or _utcnow()
        day = observed_at.date()
        average = await self._baseline_volume(ticker, day)
        spike = self.detector.detect(ticker, quote.volume, average, quote.change_percent)
        alerted = False
        if spike is not None:
            alerted = await self._handle_spike(spike, observed_at)

        # Recorded after validation, which reads the trailing snapshots
        await self.ingestion.record_snapshot(ticker, day, quote.volume, quote.price)
        return alerted

    async def _baseline_volume(self, ticker: str, day: date) -> float:
        """Trailing average volume for the days before ``day``, cached per day."""
        key = CacheKeys.volume_stats(ticker)
        cached = await self.cache.get(key)
        if isinstance(cached, dict) and cached.get("as_of") == day.isoformat():
            return cached["average"]

        average = await self.ingestion.average_volume(
            ticker, self.config.volume_average_days, before=day
        )
        if average:
            await self.cache.set(
                key, {"as_of": day.isoformat(), "average": average}, CacheTTL.VOLUME_STATS
            )
        return average

    async def _cache_quote(self, quote: Quote) -> None:
        snapshot = {
            "symbol": quote.ticker,
            "price": quote.price,
            "change_percent": quote.change_percent,
            "volume": quote.volume,
            "high": quote.high,
            "low": quote.low,
            "open": quote.open,
            "previous_close": quote.previous_close,
            "timestamp": quote.timestamp.isoformat() if quote.timestamp else None,
        }
        await self.cache.mset(
            {
                CacheKeys.market_data(quote.ticker): (snapshot, CacheTTL.REAL_TIME_MARKET_DATA),
                CacheKeys.latest_price(quote.ticker): (quote.price, CacheTTL.LATEST_PRICE),
            }
        )

    async def _broadcast_quote(self, quote: Quote) -> None:
        if not await self.registry.connections_for(quote.ticker):
            return
        moment = quote.timestamp or _utcnow()
        await self.queues.get(WEBSOCKET).enqueue(
            WebSocketJob(
                ticker_id=quote.ticker,
                event_type="market_data",
                data={
                    "price": quote.price,
                    "change_percent": quote.change_percent,
                    "volume": quote.volume,
                },
            ),
            job_id=websocket_job_id(quote.ticker, moment),
        )

    async def _handle_spike(self, spike: VolumeSpike, observed_at: datetime) -> bool:
        """
        Duplicate check, validation, persistence and alert enqueue for one spike.

        A quote seen again (retry or unchanged quote) finds its stored spike
        and only re-enqueues the alert under the same ids.
        """
        candidate = CandidateAlert(
            ticker=spike.ticker,
            spike_percentage=spike.spike_percentage,
            volume=spike.volume,
            price_movement=spike.price_movement,
            observed_at=observed_at,
        )

        spike_id = await self.ingestion.find_spike(spike.ticker, observed_at)
        if spike_id is None:
            duplicate = await self.engine.check_duplicate(candidate)
            if duplicate.is_duplicate:
                logger.info(
                    f"Skipping {spike.ticker} spike {spike.spike_percentage:.1f}%: "
                    f"{len(duplicate.matching)} similar spikes already alerted"
                )
                return False

            result = await self.engine.validate_alert(candidate)
            spike_id = await self.ingestion.record_spike(spike, observed_at)
            await self.ingestion.record_validation(spike.ticker, spike_id, result)
            await self.cache.delete(CacheKeys.volume_spike(spike.ticker))

            if self.analysis is not None:
                await self.queues.get(WORKER_JOBS).enqueue(
                    AnalysisJob(kind="spike_analysis", ticker_id=spike.ticker, volume_spike_id=spike_id),
                    job_id=f"spike_analysis-{spike_id}",
                )
        else:
            logger.debug(f"Spike {spike_id} for {spike.ticker} already stored")
            # Past the delivery dedupe window a re-enqueue would alert users again
            if _utcnow() - observed_at > timedelta(hours=self.config.delivery_dedupe_ttl_hours):
                return False
            result = await self.engine.validate_alert(candidate)

        if result.recommendation != "alert":
            logger.info(
                f"Spike on {spike.ticker} not alerted: {result.recommendation} "
                f"(confidence {result.confidence_score:.2f})"
            )
            return False

        alert = AlertJob(
            ticker_id=spike.ticker,
            alert_type="volume_spike",
            severity=spike.severity,
            message=(
                f"{spike.ticker} volume {spike.ratio:.1f}x its {self.config.volume_average_days}-day "
                f"average ({spike.spike_percentage:+.0f}%), price {spike.price_movement:+.2f}%"
            ),
            metadata={
                "volume_spike_id": spike_id,
                "volume": spike.volume,
                "average_volume": spike.average_volume,
                "spike_percentage": spike.spike_percentage,
                "price_movement": spike.price_movement,
                "confidence_score": result.confidence_score,
                "false_positive_probability": result.false_positive_probability,
                "reasons": list(result.reasons),
            },
            timestamp=observed_at,
        )
        bucket = from_ms(time_bucket(observed_at, self.config.alert_time_bucket_minutes))
        await self.queues.enqueue_alert(alert, job_id=alert_job_id(spike.ticker, bucket))
        return True

    async def handle_news_polling(self, job: Job, payload: IngestionJob) -> None:
        tickers = await self._tickers(payload)
        end = _utcnow().date()
        start = end - timedelta(days=self.config.news_lookback_days)
        failed: list[str] = []
        saved = 0

        for ticker in tickers:
            try:
                articles = await self.news.company_news(ticker, start, end)
                new = await self.ingestion.save_news(articles)
            except MarketPulseError as e:
                logger.error(f"News polling failed for {ticker}: {e}")
                failed.append(ticker)
                continue
            if new:
                saved += new
                await self.cache.invalidate_ticker(ticker)

        logger.info(f"News polling stored {saved} new articles for {len(tickers)} tickers")
        if failed:
            raise ProviderError(f"News polling failed for {', '.join(failed)}")

    async def handle_sec_filing(self, job: Job, payload: IngestionJob) -> None:
        """
        Alert on new material filings, then store them.

        Alerts are enqueued before the filings are saved, so a failure in
        between leaves the filings unsaved and the retry raises the alerts
        again under the same accession-number job ids.
        """
        tickers = await self._tickers(payload)
        failed: list[str] = []

        for ticker in tickers:
            try:
                filings = await self.filings.recent_filings(ticker, FILING_FORMS)
                new = await self.ingestion.unsaved_filings(filings)
                for filing in new:
                    if filing.is_material:
                        await self._alert_filing(filing)
                saved = await self.ingestion.save_filings(new)
            except MarketPulseError as e:
                logger.error(f"SEC filing ingestion failed for {ticker}: {e}")
                failed.append(ticker)
                continue
            if saved:
                await self.cache.delete(CacheKeys.sec_filings(ticker))

        if failed:
            raise ProviderError(f"SEC filing ingestion failed for {', '.join(failed)}")

    async def _alert_filing(self, filing: Filing) -> None:
        ticker = normalize_topic(filing.ticker)
        alert = AlertJob(
            ticker_id=ticker,
            alert_type="filing",
            severity="high" if filing.form_type == "8-K" else "medium",
            message=f"New {filing.form_type} filed by {ticker}",
            metadata={
                "accession_number": filing.accession_number,
                "form_type": filing.form_type,
                "url": filing.url,
                "filed_at": filing.filed_at.isoformat(),
            },
            timestamp=filing.filed_at,
        )
        # Several filings can share a filing date; the accession number is unique
        await self.queues.enqueue_alert(alert, job_id=f"alert-{ticker}-{filing.accession_number}")

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def handle_alert_validation(self, job: Job, payload: AnalysisJob) -> None:
        if not payload.volume_spike_id:
            raise JobPayloadError(f"alert_validation job {job.id} has no volume_spike_id")
        spike = await self.ingestion.get_spike(payload.volume_spike_id)
        if spike is None:
            logger.warning(f"Spike {payload.volume_spike_id} not found; nothing to validate")
            return

        result = await self.engine.validate_alert(
            CandidateAlert(
                ticker=spike.ticker,
                spike_percentage=spike.spike_percentage,
                volume=spike.volume,
                price_movement=spike.price_movement,
                observed_at=spike.observed_at,
            )
        )
        await self.ingestion.record_validation(spike.ticker, spike.id, result)

    async def handle_spike_analysis(self, job: Job, payload: AnalysisJob) -> None:
        if not payload.volume_spike_id:
            raise JobPayloadError(f"spike_analysis job {job.id} has no volume_spike_id")
        spike = await self.ingestion.get_spike(payload.volume_spike_id)
        if spike is None:
            logger.warning(f"Spike {payload.volume_spike_id} not found; skipping analysis")
            return

        outcome = await self.analysis.analyze_spike(spike)
        await self.ingestion.record_spike_analysis(spike.id, outcome)
        logger.info(f"Analyzed spike {spike.id} for {spike.ticker} (confidence {outcome.confidence_score:.2f})")

    async def handle_contradiction_check(self, job: Job, payload: AnalysisJob) -> None:
        if not payload.contradiction_id:
            raise JobPayloadError(f"contradiction_check job {job.id} has no contradiction_id")
        contradiction = await self.ingestion.get_contradiction(payload.contradiction_id)
        if contradiction is None:
            logger.warning(f"Contradiction {payload.contradiction_id} not found")
            return

        outcome = await self.analysis.assess_contradiction(payload.ticker_id, contradiction)
        verdict = validate_contradiction(outcome.confidence_score)
        await self.ingestion.update_contradiction(
            payload.contradiction_id, outcome.confidence_score, verdict.validation_status
        )
        logger.info(
            f"Contradiction {payload.contradiction_id} on {payload.ticker_id}: "
            f"{verdict.validation_status} ({outcome.confidence_score:.2f})"
        )
