"""Worker pool consuming the named queues."""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Iterable, Mapping, Optional

from redis.exceptions import RedisError

from marketpulse import metrics
from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import JobPayloadError, UnknownJobTypeError
from marketpulse.logging_config import get_logger
from marketpulse.queue.jobs import Job, JobStatus
from marketpulse.queue.queue import RedisJobQueue
from marketpulse.queue.queue_set import QueueSet
from marketpulse.worker.handlers import Handler

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Runs handlers for leased jobs under a global concurrency cap.

    One consumer loop per queue leases jobs while a slot is free; each job
    runs in its own task with a lock-renewal companion. A separate loop per
    queue reclaims stalled jobs every lock duration.
    """

    def __init__(
        self,
        queues: QueueSet,
        concurrency: Optional[int] = None,
        config: Optional[Settings] = None,
    ):
        self.queues = queues
        self.config = config or default_settings
        self.concurrency = concurrency or self.config.worker_concurrency
        self.poll_interval = self.config.worker_poll_interval_seconds
        self._handlers: dict[tuple[str, str], Handler] = {}
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()

    def register(self, queue_name: str, job_type: str, handler: Handler) -> None:
        """
        Route ``job_type`` jobs on ``queue_name`` to ``handler``.

        Raises:
            UnknownJobTypeError: If the queue does not accept that job type
        """
        queue = self.queues.get(queue_name)
        if job_type not in queue.options.job_types:
            raise UnknownJobTypeError(f"Queue {queue_name} does not carry '{job_type}' jobs")
        self._handlers[(queue_name, job_type)] = handler

    def register_all(self, routes: Mapping[tuple[str, str], Handler]) -> None:
        for (queue_name, job_type), handler in routes.items():
            self.register(queue_name, job_type, handler)

    @property
    def running(self) -> bool:
        return bool(self._loops) and not self._stopping.is_set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self, queue_names: Optional[Iterable[str]] = None) -> None:
        """Start consumer and stall-check loops for the given (default: all) queues."""
        names = list(queue_names) if queue_names is not None else self.queues.names
        self._stopping.clear()
        for name in names:
            queue = self.queues.get(name)
            self._loops.append(asyncio.create_task(self._consume(queue), name=f"consume:{name}"))
            self._loops.append(asyncio.create_task(self._check_stalled(queue), name=f"stalled:{name}"))
        logger.info(f"Worker pool started on {len(names)} queues (concurrency {self.concurrency})")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop leasing new jobs and wait for in-flight jobs to finish.

        Jobs still running after ``timeout`` are cancelled; their locks lapse
        and stall recovery re-queues them.
        """
        timeout = self.config.worker_shutdown_timeout_seconds if timeout is None else timeout
        self._stopping.set()

        for task in self._loops:
            task.cancel()
        for task in self._loops:
            with suppress(asyncio.CancelledError):
                await task
        self._loops.clear()

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight jobs")
            done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} jobs still running after {timeout}s")
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Worker pool stopped")

    async def _idle(self, seconds: float) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _consume(self, queue: RedisJobQueue) -> None:
        while not self._stopping.is_set():
            await self._semaphore.acquire()
            try:
                job = await queue.reserve()
            except asyncio.CancelledError:
                self._semaphore.release()
                raise
            except RedisError as e:
                self._semaphore.release()
                logger.error(f"Failed to reserve from {queue.name}: {e}")
                await self._idle(self.poll_interval)
                continue

            if job is None:
                self._semaphore.release()
                await self._idle(self.poll_interval)
                continue

            task = asyncio.create_task(self.process(queue, job), name=f"job:{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._semaphore.release()

    async def _check_stalled(self, queue: RedisJobQueue) -> None:
        interval = queue.options.lock_duration_ms / 1000
        while not self._stopping.is_set():
            await self._idle(interval)
            if self._stopping.is_set():
                return
            try:
                await queue.check_stalled()
            except RedisError as e:
                logger.error(f"Stall check failed on {queue.name}: {e}")

    async def _renew_lock(self, queue: RedisJobQueue, job: Job) -> None:
        interval = queue.options.lock_renew_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await queue.extend_lock(job)
            except RedisError as e:
                logger.warning(f"Lock renewal error for job {job.id}: {e}")
                continue
            if not renewed:
                logger.warning(f"Job {job.id} lost its lock in {queue.name}")
                return

    async def process(self, queue: RedisJobQueue, job: Job) -> JobStatus:
        """
        Run the handler for a leased job and record the outcome.

        Returns:
            COMPLETED, DELAYED (retry scheduled) or FAILED
        """
        handler = self._handlers.get((queue.name, job.type))
        job_logger = get_logger(__name__, queue=queue.name, job_id=job.id)
        started = time.perf_counter()
        renewer = asyncio.create_task(self._renew_lock(queue, job))
        try:
            if handler is None:
                raise UnknownJobTypeError(f"No handler for '{job.type}' jobs on {queue.name}")
            payload = job.parsed_payload()
            job_logger.debug(f"Processing {job.type} job (attempt {job.attempts_made})")
            await handler(job, payload)
        except (UnknownJobTypeError, JobPayloadError) as e:
            job_logger.warning(f"Job rejected without retry: {e}")
            status = await queue.fail(job, str(e), retry=False)
        except Exception as e:
            job_logger.exception(f"Job {job.id} on {queue.name} raised: {e}")
            status = await queue.fail(job, str(e) or type(e).__name__)
        else:
            await queue.complete(job)
            status = JobStatus.COMPLETED
        finally:
            renewer.cancel()
            with suppress(asyncio.CancelledError):
                await renewer

        metrics.record_job_outcome(queue.name, job.type, status.value, time.perf_counter() - started)
        return status

    async def run_once(self, queue_name: str) -> Optional[JobStatus]:
        """Lease and process a single job inline; None when the queue has nothing ready."""
        queue = self.queues.get(queue_name)
        job = await queue.reserve()
        if job is None:
            return None
        return await self.process(queue, job)
