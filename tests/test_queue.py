"""Tests for the Redis job queue and the named queue set."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from marketpulse.errors import JobNotFoundError, JobPayloadError, JobStateError
from marketpulse.queue.jobs import (
    AlertJob,
    IngestionJob,
    JobStatus,
    NotificationContent,
    NotificationJob,
)
from marketpulse.queue.queue import STALLED_REASON, QueueOptions, RedisJobQueue
from marketpulse.queue.queue_set import ALERTS, MARKET_DATA, NOTIFICATIONS


def _ingestion_queue(store, **overrides) -> RedisJobQueue:
    options = {
        "name": "test-ingestion",
        "job_types": frozenset({"market_data"}),
        "attempts": 3,
        "backoff_delay_ms": 1,
    }
    options.update(overrides)
    return RedisJobQueue(store, QueueOptions(**options), prefix="test:queue")


def _alert(severity: str = "high", ticker: str = "AAPL") -> AlertJob:
    return AlertJob(
        ticker_id=ticker,
        alert_type="volume_spike",
        severity=severity,
        message=f"{ticker} volume spike",
        timestamp=datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc),
    )


def _notification(user_id: str, expires_at: datetime) -> NotificationJob:
    return NotificationJob(
        user_id=user_id,
        ticker_id="AAPL",
        payload=NotificationContent(alert_type="volume_spike", message="spike", severity="high"),
        expires_at=expires_at,
    )


@pytest.mark.asyncio
async def test_reserve_orders_by_priority_then_fifo(store):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="low-1", priority=3)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="high-1", priority=1)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="low-2", priority=3)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="mid-1", priority=2)

    order = []
    while (job := await queue.reserve()) is not None:
        order.append(job.id)
        await queue.complete(job)

    assert order == ["high-1", "mid-1", "low-1", "low-2"]


@pytest.mark.asyncio
async def test_reserve_marks_job_active_with_lock(store, redis_client):
    queue = _ingestion_queue(store)
    await queue.enqueue({"kind": "market_data", "tickers": ["AAPL"]}, job_id="j1")

    job = await queue.reserve()

    assert job.status == JobStatus.ACTIVE
    assert job.attempts_made == 1
    assert job.lock_token
    assert job.processed_at is not None
    assert await redis_client.get("test:queue:test-ingestion:lock:j1") == job.lock_token
    assert await queue.reserve() is None


@pytest.mark.asyncio
async def test_duplicate_job_id_is_noop(store):
    queue = _ingestion_queue(store)
    first = await queue.enqueue(IngestionJob(kind="market_data", tickers=["AAPL"]), job_id="dup")
    second = await queue.enqueue(IngestionJob(kind="market_data", tickers=["MSFT"]), job_id="dup")

    assert second.id == first.id
    assert second.payload["tickers"] == ["AAPL"]
    counts = await queue.get_job_counts()
    assert counts["waiting"] == 1


@pytest.mark.asyncio
async def test_rejects_foreign_job_type_and_bad_priority(store):
    queue = _ingestion_queue(store)

    with pytest.raises(JobPayloadError):
        await queue.enqueue(_alert())
    with pytest.raises(JobPayloadError):
        await queue.enqueue(IngestionJob(kind="market_data"), priority=7)
    with pytest.raises(JobPayloadError):
        await queue.enqueue({"kind": "market_data", "tickers": "not-a-list"})


@pytest.mark.asyncio
async def test_complete_removes_job(store):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="done")
    job = await queue.reserve()

    assert await queue.complete(job) is True
    assert await queue.get_job("done") is None
    assert (await queue.get_job_counts())["active"] == 0


@pytest.mark.asyncio
async def test_failed_attempt_backs_off_then_exhausts(store):
    queue = _ingestion_queue(store, attempts=2)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="flaky")

    job = await queue.reserve()
    status = await queue.fail(job, "provider timeout")
    assert status == JobStatus.DELAYED
    stored = await queue.get_job("flaky")
    assert stored.status == JobStatus.DELAYED
    assert stored.failed_reason == "provider timeout"

    await asyncio.sleep(0.01)
    job = await queue.reserve()
    assert job is not None
    assert job.attempts_made == 2

    status = await queue.fail(job, "provider timeout again")
    assert status == JobStatus.FAILED
    failed = await queue.list_failed()
    assert [j.id for j in failed] == ["flaky"]
    assert failed[0].failed_reason == "provider timeout again"
    assert failed[0].finished_at is not None


@pytest.mark.asyncio
async def test_fail_without_retry_skips_remaining_attempts(store):
    queue = _ingestion_queue(store, attempts=5)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="bad")
    job = await queue.reserve()

    assert await queue.fail(job, "unknown job type", retry=False) == JobStatus.FAILED
    assert (await queue.get_job("bad")).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_exponential_backoff_grows(store):
    queue = _ingestion_queue(store, backoff_delay_ms=2000)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="slow")
    job = await queue.reserve()

    assert job.backoff_ms() == 2000
    job.attempts_made = 2
    assert job.backoff_ms() == 4000


@pytest.mark.asyncio
async def test_delayed_enqueue_not_reservable_until_due(store):
    queue = _ingestion_queue(store)
    job = await queue.enqueue(IngestionJob(kind="market_data"), job_id="later", delay_ms=60_000)

    assert job.status == JobStatus.DELAYED
    assert await queue.reserve() is None
    assert [j.id for j in await queue.get_pending()] == ["later"]


@pytest.mark.asyncio
async def test_stalled_job_is_requeued_without_consuming_attempt(store, redis_client):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="crashy")
    job = await queue.reserve()

    # Simulate a dead worker: the lease expires without renewal
    await redis_client.delete("test:queue:test-ingestion:lock:crashy")

    assert await queue.check_stalled() == (1, 0)
    stalled = await queue.get_job("crashy")
    assert stalled.status == JobStatus.STALLED
    assert stalled.stalled_count == 1
    assert stalled.is_pending

    rerun = await queue.reserve()
    assert rerun.id == "crashy"
    assert rerun.attempts_made == 1

    # The old lease holder can no longer finish the job
    assert await queue.complete(job) is False
    assert await queue.complete(rerun) is True


@pytest.mark.asyncio
async def test_job_stalling_too_often_fails(store, redis_client):
    queue = _ingestion_queue(store, max_stalled_count=1)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="stuck")

    for expected in [(1, 0), (0, 1)]:
        await queue.reserve()
        await redis_client.delete("test:queue:test-ingestion:lock:stuck")
        assert await queue.check_stalled() == expected

    job = await queue.get_job("stuck")
    assert job.status == JobStatus.FAILED
    assert job.failed_reason == STALLED_REASON


@pytest.mark.asyncio
async def test_extend_lock_requires_current_token(store):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="leased")
    job = await queue.reserve()

    assert await queue.extend_lock(job) is True
    job.lock_token = "someone-else"
    assert await queue.extend_lock(job) is False


@pytest.mark.asyncio
async def test_retry_failed_job_resets_attempts(store):
    queue = _ingestion_queue(store, attempts=1)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="r1")
    job = await queue.reserve()
    await queue.fail(job, "boom")

    retried = await queue.retry("r1")

    assert retried.status == JobStatus.WAITING
    assert retried.attempts_made == 0
    assert retried.failed_reason is None
    assert await queue.list_failed() == []
    assert (await queue.reserve()).id == "r1"


@pytest.mark.asyncio
async def test_retry_rejects_missing_and_non_failed_jobs(store):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="waiting")

    with pytest.raises(JobNotFoundError):
        await queue.retry("nope")
    with pytest.raises(JobStateError):
        await queue.retry("waiting")


@pytest.mark.asyncio
async def test_cancel_only_pending_jobs(store):
    queue = _ingestion_queue(store)
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="pending")
    await queue.enqueue(IngestionJob(kind="market_data"), job_id="delayed", delay_ms=60_000)

    await queue.cancel("pending")
    await queue.cancel("delayed")
    assert await queue.get_job("pending") is None
    assert await queue.get_job("delayed") is None

    await queue.enqueue(IngestionJob(kind="market_data"), job_id="running")
    await queue.reserve()
    with pytest.raises(JobStateError):
        await queue.cancel("running")
    with pytest.raises(JobNotFoundError):
        await queue.cancel("ghost")


@pytest.mark.asyncio
async def test_alert_priority_follows_severity(queues):
    critical = await queues.enqueue_alert(_alert("critical", "TSLA"))
    medium = await queues.enqueue_alert(_alert("medium", "MSFT"))
    high = await queues.enqueue_alert(_alert("high", "AAPL"))

    assert (critical.priority, high.priority, medium.priority) == (1, 2, 3)
    assert critical.id == "alert-TSLA-1709303400000"

    queue = queues.get(ALERTS)
    order = [(await queue.reserve()).id for _ in range(3)]
    assert order == [critical.id, high.id, medium.id]


@pytest.mark.asyncio
async def test_same_alert_enqueued_twice_is_one_job(queues):
    await queues.enqueue_alert(_alert())
    await queues.enqueue_alert(_alert())

    counts = await queues.get(ALERTS).get_job_counts()
    assert counts["waiting"] == 1


@pytest.mark.asyncio
async def test_queue_set_attempts_and_unknown_queue(queues):
    assert queues.get(NOTIFICATIONS).options.attempts == 5
    assert queues.get("websocket").options.attempts == 1
    assert queues.get(MARKET_DATA).options.attempts == 3
    with pytest.raises(JobNotFoundError):
        queues.get("no-such-queue")


@pytest.mark.asyncio
async def test_stats_cover_every_queue(queues):
    await queues.enqueue_alert(_alert())

    stats = await queues.stats()

    assert set(stats) == set(queues.names)
    assert stats[ALERTS]["waiting"] == 1
    assert stats[NOTIFICATIONS] == {
        "waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0,
    }


@pytest.mark.asyncio
async def test_cleanup_expired_notifications(queues):
    now = datetime.now(timezone.utc)
    await queues.enqueue_notification(_notification("old", now - timedelta(minutes=1)))
    await queues.enqueue_notification(_notification("fresh", now + timedelta(hours=1)))

    removed = await queues.cleanup_expired_notifications()

    assert removed == 1
    remaining = await queues.get(NOTIFICATIONS).get_pending()
    assert [job.payload["user_id"] for job in remaining] == ["fresh"]
