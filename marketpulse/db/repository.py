"""SQLAlchemy-backed stores for spike history, watchers and ingestion."""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketpulse.db.models import (
    AlertValidation,
    HistoricalSnapshot,
    NarrativeContradiction,
    NewsArticle as NewsArticleModel,
    SecFiling,
    Ticker,
    VolumeSpike as VolumeSpikeModel,
    WatchlistItem,
)
from marketpulse.detect.validation import HistoricalSpike, SpikeHistorySource, ValidationResult
from marketpulse.detect.volume import VolumeSpike
from marketpulse.ingest.base import (
    AnalysisOutcome,
    Filing,
    IngestionStore,
    NewsArticle,
    StoredSpike,
)
from marketpulse.realtime.distribution import WatcherDirectory

logger = logging.getLogger(__name__)


def _naive_utc(moment: datetime) -> datetime:
    """Columns store naive UTC."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _int_id(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MarketRepository(SpikeHistorySource, WatcherDirectory, IngestionStore):
    """
    One repository over the relational store.

    Each call opens its own short session from the factory so the object can
    be shared by concurrent handlers.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _ticker_id(
        self, db: AsyncSession, symbol: str, create: bool = False
    ) -> Optional[int]:
        symbol = symbol.upper()
        result = await db.execute(select(Ticker.id).where(Ticker.symbol == symbol))
        ticker_id = result.scalar_one_or_none()
        if ticker_id is not None or not create:
            return ticker_id

        ticker = Ticker(symbol=symbol)
        db.add(ticker)
        try:
            await db.commit()
            return ticker.id
        except IntegrityError:
            # Created concurrently by another worker
            await db.rollback()
            result = await db.execute(select(Ticker.id).where(Ticker.symbol == symbol))
            return result.scalar_one()

    # Tickers and watchlists

    async def ensure_ticker(self, symbol: str, name: Optional[str] = None) -> int:
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, symbol, create=True)
            if name:
                ticker = await db.get(Ticker, ticker_id)
                ticker.name = name
            await db.commit()
            return ticker_id

    async def add_watch(self, user_id: str, symbol: str, alerts_enabled: bool = True) -> None:
        """Add (or update) a watchlist entry."""
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, symbol, create=True)
            result = await db.execute(
                select(WatchlistItem).where(
                    WatchlistItem.user_id == user_id,
                    WatchlistItem.ticker_id == ticker_id,
                )
            )
            item = result.scalar_one_or_none()
            if item is None:
                db.add(WatchlistItem(user_id=user_id, ticker_id=ticker_id, alerts_enabled=alerts_enabled))
            else:
                item.alerts_enabled = alerts_enabled
            await db.commit()

    async def watchers_of(self, ticker: str) -> list[str]:
        async with self.session_factory() as db:
            query = (
                select(WatchlistItem.user_id)
                .join(Ticker, Ticker.id == WatchlistItem.ticker_id)
                .where(Ticker.symbol == ticker.upper(), WatchlistItem.alerts_enabled == True)  # noqa: E712
                .order_by(WatchlistItem.user_id)
            )
            result = await db.execute(query)
            return list(result.scalars().all())

    async def active_tickers(self) -> list[str]:
        async with self.session_factory() as db:
            query = (
                select(Ticker.symbol)
                .join(WatchlistItem, WatchlistItem.ticker_id == Ticker.id)
                .where(Ticker.is_active == True)  # noqa: E712
                .distinct()
                .order_by(Ticker.symbol)
            )
            result = await db.execute(query)
            return list(result.scalars().all())

    # Snapshots

    async def record_snapshot(
        self,
        symbol: str,
        snapshot_date: date,
        volume: float,
        close_price: Optional[float] = None,
    ) -> None:
        """Insert or replace the daily snapshot for a ticker."""
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, symbol, create=True)
            result = await db.execute(
                select(HistoricalSnapshot).where(
                    HistoricalSnapshot.ticker_id == ticker_id,
                    HistoricalSnapshot.snapshot_date == snapshot_date,
                )
            )
            snapshot = result.scalar_one_or_none()
            if snapshot is None:
                db.add(
                    HistoricalSnapshot(
                        ticker_id=ticker_id,
                        snapshot_date=snapshot_date,
                        volume=volume,
                        close_price=close_price,
                    )
                )
            else:
                snapshot.volume = volume
                snapshot.close_price = close_price
            await db.commit()

    async def average_volume(self, ticker: str, days: int, before: Optional[date] = None) -> float:
        """Average of the daily snapshots in the ``days`` before ``before`` (default today)."""
        until = before or datetime.now(timezone.utc).date()
        since = until - timedelta(days=days)
        async with self.session_factory() as db:
            query = (
                select(func.avg(HistoricalSnapshot.volume))
                .join(Ticker, Ticker.id == HistoricalSnapshot.ticker_id)
                .where(
                    Ticker.symbol == ticker.upper(),
                    HistoricalSnapshot.snapshot_date >= since,
                    HistoricalSnapshot.snapshot_date < until,
                )
            )
            result = await db.execute(query)
            average = result.scalar()
        return float(average) if average else 0.0

    async def volume_snapshots(self, ticker: str, limit: int) -> list[float]:
        async with self.session_factory() as db:
            query = (
                select(HistoricalSnapshot.volume)
                .join(Ticker, Ticker.id == HistoricalSnapshot.ticker_id)
                .where(Ticker.symbol == ticker.upper())
                .order_by(HistoricalSnapshot.snapshot_date.desc())
                .limit(limit)
            )
            result = await db.execute(query)
            return [float(v) for v in result.scalars().all()]

    # Spikes

    async def _spike_id(self, db: AsyncSession, ticker_id: int, observed_at: datetime) -> Optional[int]:
        result = await db.execute(
            select(VolumeSpikeModel.id).where(
                VolumeSpikeModel.ticker_id == ticker_id,
                VolumeSpikeModel.observed_at == _naive_utc(observed_at),
            )
        )
        return result.scalar_one_or_none()

    async def find_spike(self, ticker: str, observed_at: datetime) -> Optional[str]:
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, ticker)
            if ticker_id is None:
                return None
            spike_id = await self._spike_id(db, ticker_id, observed_at)
        return str(spike_id) if spike_id is not None else None

    async def record_spike(self, spike: VolumeSpike, observed_at: datetime) -> str:
        """Store a spike; one row per (ticker, observed_at), an existing row's id is returned."""
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, spike.ticker, create=True)
            existing = await self._spike_id(db, ticker_id, observed_at)
            if existing is not None:
                return str(existing)

            row = VolumeSpikeModel(
                ticker_id=ticker_id,
                observed_at=_naive_utc(observed_at),
                volume=spike.volume,
                average_volume=spike.average_volume,
                spike_percentage=spike.spike_percentage,
                price_movement=spike.price_movement,
                severity=spike.severity,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug(f"Spike for {spike.ticker} at {observed_at} stored concurrently")
                return str(await self._spike_id(db, ticker_id, observed_at))
            logger.info(f"Recorded {spike.severity} volume spike {row.id} for {spike.ticker}")
            return str(row.id)

    async def get_spike(self, spike_id: str) -> Optional[StoredSpike]:
        row_id = _int_id(spike_id)
        if row_id is None:
            return None
        async with self.session_factory() as db:
            query = (
                select(VolumeSpikeModel, Ticker.symbol)
                .join(Ticker, Ticker.id == VolumeSpikeModel.ticker_id)
                .where(VolumeSpikeModel.id == row_id)
            )
            result = await db.execute(query)
            row = result.one_or_none()
        if row is None:
            return None
        spike, symbol = row
        return StoredSpike(
            id=str(spike.id),
            ticker=symbol,
            spike_percentage=spike.spike_percentage,
            volume=spike.volume,
            price_movement=spike.price_movement,
            observed_at=_aware(spike.observed_at),
        )

    async def spikes_between(
        self, ticker: str, start: datetime, end: datetime
    ) -> list[HistoricalSpike]:
        async with self.session_factory() as db:
            query = (
                select(VolumeSpikeModel)
                .join(Ticker, Ticker.id == VolumeSpikeModel.ticker_id)
                .where(
                    Ticker.symbol == ticker.upper(),
                    VolumeSpikeModel.observed_at > _naive_utc(start),
                    VolumeSpikeModel.observed_at < _naive_utc(end),
                )
                .order_by(VolumeSpikeModel.observed_at.desc())
            )
            result = await db.execute(query)
            spikes = result.scalars().all()
        return [
            HistoricalSpike(
                spike_percentage=spike.spike_percentage,
                observed_at=_aware(spike.observed_at),
                volume=spike.volume,
                id=str(spike.id),
            )
            for spike in spikes
        ]

    async def record_spike_analysis(self, spike_id: str, outcome: AnalysisOutcome) -> None:
        row_id = _int_id(spike_id)
        async with self.session_factory() as db:
            spike = await db.get(VolumeSpikeModel, row_id) if row_id is not None else None
            if spike is None:
                logger.warning(f"Spike {spike_id} not found; analysis dropped")
                return
            spike.analysis_summary = outcome.summary
            spike.analysis_confidence = outcome.confidence_score
            spike.analysis_details = outcome.details
            spike.analyzed_at = datetime.utcnow()
            await db.commit()

    # Contradictions

    async def add_contradiction(
        self,
        symbol: str,
        description: str,
        validation_status: str = "pending",
        confidence_score: Optional[float] = None,
    ) -> str:
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, symbol, create=True)
            row = NarrativeContradiction(
                ticker_id=ticker_id,
                description=description,
                validation_status=validation_status,
                confidence_score=confidence_score,
            )
            db.add(row)
            await db.commit()
            return str(row.id)

    async def contradiction_statuses(self, ticker: str, limit: int) -> list[str]:
        async with self.session_factory() as db:
            query = (
                select(NarrativeContradiction.validation_status)
                .join(Ticker, Ticker.id == NarrativeContradiction.ticker_id)
                .where(Ticker.symbol == ticker.upper())
                .order_by(NarrativeContradiction.created_at.desc(), NarrativeContradiction.id.desc())
                .limit(limit)
            )
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_contradiction(self, contradiction_id: str) -> Optional[dict[str, Any]]:
        row_id = _int_id(contradiction_id)
        if row_id is None:
            return None
        async with self.session_factory() as db:
            query = (
                select(NarrativeContradiction, Ticker.symbol)
                .join(Ticker, Ticker.id == NarrativeContradiction.ticker_id)
                .where(NarrativeContradiction.id == row_id)
            )
            result = await db.execute(query)
            row = result.one_or_none()
        if row is None:
            return None
        contradiction, symbol = row
        return {
            "id": str(contradiction.id),
            "ticker": symbol,
            "description": contradiction.description,
            "confidence_score": contradiction.confidence_score,
            "validation_status": contradiction.validation_status,
            "created_at": _aware(contradiction.created_at).isoformat(),
        }

    async def update_contradiction(
        self, contradiction_id: str, confidence_score: float, validation_status: str
    ) -> None:
        row_id = _int_id(contradiction_id)
        async with self.session_factory() as db:
            row = await db.get(NarrativeContradiction, row_id) if row_id is not None else None
            if row is None:
                logger.warning(f"Contradiction {contradiction_id} not found")
                return
            row.confidence_score = confidence_score
            row.validation_status = validation_status
            await db.commit()

    # Validation results

    async def record_validation(
        self, ticker: str, spike_id: Optional[str], result: ValidationResult
    ) -> None:
        async with self.session_factory() as db:
            ticker_id = await self._ticker_id(db, ticker, create=True)
            db.add(
                AlertValidation(
                    ticker_id=ticker_id,
                    volume_spike_id=_int_id(spike_id),
                    is_valid=result.is_valid,
                    confidence_score=result.confidence_score,
                    false_positive_probability=result.false_positive_probability,
                    recommendation=result.recommendation,
                    similarity_score=result.similarity_score,
                    reasons=list(result.reasons),
                )
            )
            await db.commit()

    # News and filings

    async def save_news(self, articles: Sequence[NewsArticle]) -> int:
        if not articles:
            return 0
        saved = 0
        async with self.session_factory() as db:
            for article in articles:
                existing = await db.execute(
                    select(NewsArticleModel.id).where(
                        NewsArticleModel.external_id == article.external_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    continue
                ticker_id = await self._ticker_id(db, article.ticker, create=True)
                db.add(
                    NewsArticleModel(
                        external_id=article.external_id,
                        ticker_id=ticker_id,
                        headline=article.headline,
                        source=article.source or None,
                        url=article.url or None,
                        summary=article.summary or None,
                        sentiment=article.sentiment,
                        published_at=_naive_utc(article.published_at),
                    )
                )
                try:
                    await db.commit()
                    saved += 1
                except IntegrityError:
                    await db.rollback()
                    logger.debug(f"News article {article.external_id} stored concurrently")
        logger.info(f"Saved {saved} new of {len(articles)} news articles")
        return saved

    async def unsaved_filings(self, filings: Sequence[Filing]) -> list[Filing]:
        """The filings whose accession numbers are not stored yet, in input order."""
        if not filings:
            return []
        numbers = {filing.accession_number for filing in filings}
        async with self.session_factory() as db:
            result = await db.execute(
                select(SecFiling.accession_number).where(SecFiling.accession_number.in_(numbers))
            )
            stored = set(result.scalars().all())
        return [filing for filing in filings if filing.accession_number not in stored]

    async def save_filings(self, filings: Sequence[Filing]) -> list[Filing]:
        new: list[Filing] = []
        if not filings:
            return new
        async with self.session_factory() as db:
            for filing in filings:
                existing = await db.execute(
                    select(SecFiling.id).where(
                        SecFiling.accession_number == filing.accession_number
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    continue
                ticker_id = await self._ticker_id(db, filing.ticker, create=True)
                db.add(
                    SecFiling(
                        accession_number=filing.accession_number,
                        ticker_id=ticker_id,
                        form_type=filing.form_type,
                        filed_at=_naive_utc(filing.filed_at),
                        url=filing.url,
                        is_material=filing.is_material,
                    )
                )
                try:
                    await db.commit()
                    new.append(filing)
                except IntegrityError:
                    await db.rollback()
                    logger.debug(f"Filing {filing.accession_number} stored concurrently")
        logger.info(f"Saved {len(new)} new of {len(filings)} SEC filings")
        return new
