"""Tests for the SQLAlchemy repository."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from marketpulse.db.models import AlertValidation, VolumeSpike as VolumeSpikeModel
from marketpulse.detect.validation import CandidateAlert, score_candidate
from marketpulse.detect.volume import VolumeSpike
from marketpulse.ingest.base import AnalysisOutcome, Filing, NewsArticle


def _spike(ticker: str = "AAPL", pct: float = 300.0) -> VolumeSpike:
    return VolumeSpike(
        ticker=ticker,
        volume=4_000_000,
        average_volume=1_000_000,
        ratio=4.0,
        spike_percentage=pct,
        price_movement=2.0,
        severity="critical",
    )


@pytest.mark.asyncio
async def test_ensure_ticker_is_idempotent(repository):
    first = await repository.ensure_ticker("aapl", name="Apple Inc.")
    second = await repository.ensure_ticker("AAPL")

    assert first == second


@pytest.mark.asyncio
async def test_watchers_and_active_tickers(repository):
    await repository.add_watch("bob", "MSFT")
    await repository.add_watch("alice", "MSFT")
    await repository.add_watch("carol", "AAPL", alerts_enabled=False)
    await repository.ensure_ticker("TSLA")

    assert await repository.watchers_of("msft") == ["alice", "bob"]
    assert await repository.watchers_of("AAPL") == []
    assert await repository.active_tickers() == ["AAPL", "MSFT"]

    await repository.add_watch("carol", "AAPL", alerts_enabled=True)
    assert await repository.watchers_of("AAPL") == ["carol"]


@pytest.mark.asyncio
async def test_snapshots_average_and_recent_volumes(repository):
    today = datetime.now(timezone.utc).date()
    await repository.record_snapshot("AAPL", today - timedelta(days=1), 3_000)
    await repository.record_snapshot("AAPL", today - timedelta(days=2), 1_000)
    await repository.record_snapshot("AAPL", today - timedelta(days=40), 99_000)
    # Re-recording a day replaces it
    await repository.record_snapshot("AAPL", today - timedelta(days=2), 2_000)

    assert await repository.average_volume("AAPL", 20) == 2_500
    assert await repository.average_volume("UNKNOWN", 20) == 0.0
    assert await repository.volume_snapshots("AAPL", 2) == [3_000, 2_000]


@pytest.mark.asyncio
async def test_spike_roundtrip_and_window_bounds(repository):
    now = datetime.now(timezone.utc)
    older_id = await repository.record_spike(_spike(pct=200.0), now - timedelta(days=2))
    newer_id = await repository.record_spike(_spike(pct=300.0), now - timedelta(hours=1))

    stored = await repository.get_spike(newer_id)
    assert stored.ticker == "AAPL"
    assert stored.spike_percentage == 300.0
    assert stored.observed_at.tzinfo is not None
    assert abs((stored.observed_at - (now - timedelta(hours=1))).total_seconds()) < 1

    spikes = await repository.spikes_between("AAPL", now - timedelta(days=30), now)
    assert [s.id for s in spikes] == [newer_id, older_id]

    # Both ends are exclusive
    exact = await repository.spikes_between("AAPL", now - timedelta(days=2), now - timedelta(hours=1))
    assert exact == []

    assert await repository.spikes_between("NOPE", now - timedelta(days=30), now) == []
    assert await repository.get_spike("999") is None
    assert await repository.get_spike("not-a-number") is None


@pytest.mark.asyncio
async def test_spike_analysis_is_stored(repository, session_factory):
    spike_id = await repository.record_spike(_spike(), datetime.now(timezone.utc))
    await repository.record_spike_analysis(
        spike_id, AnalysisOutcome("Likely earnings leak", 0.7, {"drivers": ["earnings"]})
    )

    async with session_factory() as db:
        row = await db.get(VolumeSpikeModel, int(spike_id))
    assert row.analysis_summary == "Likely earnings leak"
    assert row.analysis_confidence == 0.7
    assert row.analysis_details == {"drivers": ["earnings"]}
    assert row.analyzed_at is not None


@pytest.mark.asyncio
async def test_contradictions(repository):
    ids = [
        await repository.add_contradiction("AAPL", f"contradiction {i}", validation_status=status)
        for i, status in enumerate(["valid", "false_positive", "valid"])
    ]

    assert await repository.contradiction_statuses("AAPL", 2) == ["valid", "false_positive"]

    await repository.update_contradiction(ids[1], 0.85, "valid")
    contradiction = await repository.get_contradiction(ids[1])
    assert contradiction["ticker"] == "AAPL"
    assert contradiction["validation_status"] == "valid"
    assert contradiction["confidence_score"] == 0.85
    assert await repository.get_contradiction("12345") is None


@pytest.mark.asyncio
async def test_record_validation(repository, session_factory):
    spike_id = await repository.record_spike(_spike(), datetime.now(timezone.utc))
    result = score_candidate(CandidateAlert("AAPL", 300.0, 4_000_000), [])

    await repository.record_validation("AAPL", spike_id, result)

    async with session_factory() as db:
        row = (await db.execute(select(AlertValidation))).scalar_one()
    assert row.is_valid is True
    assert row.false_positive_probability == 0.1
    assert row.reasons == list(result.reasons)


@pytest.mark.asyncio
async def test_save_news_is_idempotent(repository):
    published = datetime.now(timezone.utc)
    articles = [
        NewsArticle("finnhub-1", "AAPL", "Headline one", "Reuters", "https://example.com/1", published),
        NewsArticle("finnhub-2", "AAPL", "Headline two", "Bloomberg", "https://example.com/2", published),
    ]

    assert await repository.save_news(articles) == 2
    assert await repository.save_news(articles) == 0
    assert await repository.save_news([]) == 0


@pytest.mark.asyncio
async def test_save_filings_returns_only_new(repository):
    filed = datetime(2024, 2, 1, tzinfo=timezone.utc)
    first = Filing("MSFT", "0000789019-24-000010", "10-K", filed, "https://sec.example/a")
    second = Filing("MSFT", "0000789019-24-000011", "S-1", filed, "https://sec.example/b")

    assert await repository.save_filings([first]) == [first]
    assert await repository.save_filings([first, second]) == [second]
    assert first.is_material is True
    assert second.is_material is False


@pytest.mark.asyncio
async def test_average_volume_excludes_the_day_itself(repository):
    today = datetime.now(timezone.utc).date()
    await repository.record_snapshot("MSFT", today, 9_000_000)
    await repository.record_snapshot("MSFT", today - timedelta(days=1), 1_000)
    await repository.record_snapshot("MSFT", today - timedelta(days=3), 3_000)

    assert await repository.average_volume("MSFT", 20) == 2_000
    assert await repository.average_volume("MSFT", 20, before=today - timedelta(days=1)) == 3_000
    assert await repository.average_volume("MSFT", 20, before=today + timedelta(days=1)) == 3_001_000


@pytest.mark.asyncio
async def test_record_spike_is_idempotent_per_observation(repository, session_factory):
    observed = datetime.now(timezone.utc) - timedelta(minutes=5)
    assert await repository.find_spike("AAPL", observed) is None

    first = await repository.record_spike(_spike(), observed)
    second = await repository.record_spike(_spike(pct=310.0), observed)

    assert first == second
    assert await repository.find_spike("aapl", observed) == first
    async with session_factory() as db:
        rows = (await db.execute(select(VolumeSpikeModel))).scalars().all()
    assert len(rows) == 1
    assert rows[0].spike_percentage == 300.0


@pytest.mark.asyncio
async def test_unsaved_filings_reports_only_unknown_accessions(repository):
    filed = datetime(2024, 4, 2, tzinfo=timezone.utc)
    stored = Filing("AAPL", "0000320193-24-000001", "8-K", filed, "https://sec.example/1")
    fresh = Filing("AAPL", "0000320193-24-000002", "10-Q", filed, "https://sec.example/2")
    await repository.save_filings([stored])

    assert await repository.unsaved_filings([stored, fresh]) == [fresh]
    assert await repository.unsaved_filings([]) == []
    # Nothing is written by the lookup
    assert [f.accession_number for f in await repository.save_filings([fresh])] == [fresh.accession_number]
