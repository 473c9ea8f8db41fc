"""Tests for the worker pool."""

import asyncio

import pytest

from marketpulse.errors import JobPayloadError, UnknownJobTypeError
from marketpulse.queue.jobs import AnalysisJob, IngestionJob, JobStatus
from marketpulse.queue.queue_set import MARKET_DATA, NEWS_POLLING, WORKER_JOBS
from marketpulse.worker.pool import WorkerPool


async def _wait_for(condition, timeout: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_retries_until_success(queues, test_settings):
    pool = WorkerPool(queues, concurrency=2, config=test_settings)
    attempts_seen = []

    async def flaky(job, payload):
        attempts_seen.append(job.attempts_made)
        if len(attempts_seen) < 3:
            raise RuntimeError("temporary outage")

    pool.register(MARKET_DATA, "market_data", flaky)
    await queues.get(MARKET_DATA).enqueue(IngestionJob(kind="market_data"), job_id="md-1")

    assert await pool.run_once(MARKET_DATA) == JobStatus.DELAYED
    await asyncio.sleep(0.01)
    assert await pool.run_once(MARKET_DATA) == JobStatus.DELAYED
    await asyncio.sleep(0.01)
    assert await pool.run_once(MARKET_DATA) == JobStatus.COMPLETED

    assert attempts_seen == [1, 2, 3]
    assert await queues.get(MARKET_DATA).get_job("md-1") is None


@pytest.mark.asyncio
async def test_exhausted_job_is_kept_as_failed(queues, test_settings):
    pool = WorkerPool(queues, config=test_settings)

    async def always_fails(job, payload):
        raise RuntimeError("still down")

    pool.register(NEWS_POLLING, "news_polling", always_fails)
    queue = queues.get(NEWS_POLLING)
    await queue.enqueue(IngestionJob(kind="news_polling"), job_id="news-1")

    statuses = []
    for _ in range(3):
        statuses.append(await pool.run_once(NEWS_POLLING))
        await asyncio.sleep(0.01)

    assert statuses == [JobStatus.DELAYED, JobStatus.DELAYED, JobStatus.FAILED]
    failed = await queue.list_failed()
    assert failed[0].id == "news-1"
    assert failed[0].failed_reason == "still down"
    assert failed[0].attempts_made == 3


@pytest.mark.asyncio
async def test_unroutable_job_fails_without_retry(queues, test_settings):
    pool = WorkerPool(queues, config=test_settings)
    queue = queues.get(WORKER_JOBS)
    await queue.enqueue(
        AnalysisJob(kind="spike_analysis", ticker_id="AAPL", volume_spike_id="1"),
        job_id="analysis-1",
    )

    assert await pool.run_once(WORKER_JOBS) == JobStatus.FAILED
    job = await queue.get_job("analysis-1")
    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1
    assert "No handler" in job.failed_reason


@pytest.mark.asyncio
async def test_payload_error_fails_without_retry(queues, test_settings):
    pool = WorkerPool(queues, config=test_settings)

    async def strict(job, payload):
        raise JobPayloadError("missing volume_spike_id")

    pool.register(WORKER_JOBS, "alert_validation", strict)
    await queues.get(WORKER_JOBS).enqueue(
        AnalysisJob(kind="alert_validation", ticker_id="AAPL"), job_id="v-1"
    )

    assert await pool.run_once(WORKER_JOBS) == JobStatus.FAILED


def test_register_rejects_job_type_the_queue_does_not_carry(queues, test_settings):
    pool = WorkerPool(queues, config=test_settings)

    async def handler(job, payload):
        pass

    with pytest.raises(UnknownJobTypeError):
        pool.register(MARKET_DATA, "alert", handler)


@pytest.mark.asyncio
async def test_run_once_on_empty_queue(queues, test_settings):
    pool = WorkerPool(queues, config=test_settings)
    assert await pool.run_once(MARKET_DATA) is None


@pytest.mark.asyncio
async def test_started_pool_processes_jobs_and_respects_concurrency(queues, test_settings):
    pool = WorkerPool(queues, concurrency=2, config=test_settings)
    running = 0
    peak = 0
    done = []

    async def slow(job, payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        done.append(job.id)

    pool.register(MARKET_DATA, "market_data", slow)
    queue = queues.get(MARKET_DATA)
    for i in range(5):
        await queue.enqueue(IngestionJob(kind="market_data"), job_id=f"md-{i}")

    await pool.start([MARKET_DATA])
    assert pool.running
    try:
        await _wait_for(lambda: len(done) == 5)
    finally:
        await pool.stop(timeout=1)

    assert sorted(done) == [f"md-{i}" for i in range(5)]
    assert peak <= 2
    assert not pool.running
    assert pool.inflight == 0


@pytest.mark.asyncio
async def test_stop_waits_for_inflight_jobs(queues, test_settings):
    pool = WorkerPool(queues, concurrency=1, config=test_settings)
    started = asyncio.Event()
    finished = []

    async def long_job(job, payload):
        started.set()
        await asyncio.sleep(0.1)
        finished.append(job.id)

    pool.register(MARKET_DATA, "market_data", long_job)
    await queues.get(MARKET_DATA).enqueue(IngestionJob(kind="market_data"), job_id="long")

    await pool.start([MARKET_DATA])
    await asyncio.wait_for(started.wait(), timeout=2)
    await pool.stop(timeout=2)

    assert finished == ["long"]
    assert await queues.get(MARKET_DATA).get_job("long") is None
