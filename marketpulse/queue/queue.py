"""Redis-backed priority job queue with leases, backoff and stall recovery."""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel

from marketpulse import metrics
from marketpulse.errors import JobNotFoundError, JobPayloadError, JobStateError
from marketpulse.infra.redis_store import RedisStore
from marketpulse.queue.jobs import (
    DEFAULT_PRIORITY,
    Job,
    JobStatus,
    now_ms,
    parse_payload,
)

logger = logging.getLogger(__name__)

# Wait-set scores are priority * PRIORITY_SPAN + sequence, so lower priority
# numbers pop first and equal priorities pop in insertion order.
PRIORITY_SPAN = 1_000_000_000_000

STALLED_REASON = "job stalled more than allowable limit"

# KEYS: job, wait, delayed, seq
# ARGV: job_id, priority, delay_until_ms (0 = ready now), field, value, ...
ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
for i = 4, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
local delay_until = tonumber(ARGV[3])
if delay_until > 0 then
    redis.call('ZADD', KEYS[3], delay_until, ARGV[1])
else
    local seq = redis.call('INCR', KEYS[4])
    redis.call('ZADD', KEYS[2], tonumber(ARGV[2]) * 1000000000000 + seq, ARGV[1])
end
return 1
"""

# KEYS: delayed, wait, seq
# ARGV: key prefix, now_ms
PROMOTE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2])
for _, job_id in ipairs(due) do
    redis.call('ZREM', KEYS[1], job_id)
    local job_key = ARGV[1] .. ':job:' .. job_id
    if redis.call('EXISTS', job_key) == 1 then
        local priority = tonumber(redis.call('HGET', job_key, 'priority') or '3')
        local seq = redis.call('INCR', KEYS[3])
        redis.call('HSET', job_key, 'status', 'waiting')
        redis.call('ZADD', KEYS[2], priority * 1000000000000 + seq, job_id)
    end
end
return #due
"""

# KEYS: wait, active
# ARGV: key prefix, lock token, lock_ms, now_ms
RESERVE_SCRIPT = """
while true do
    local popped = redis.call('ZPOPMIN', KEYS[1])
    if #popped == 0 then
        return false
    end
    local job_id = popped[1]
    local job_key = ARGV[1] .. ':job:' .. job_id
    if redis.call('EXISTS', job_key) == 1 then
        redis.call('ZADD', KEYS[2], ARGV[4], job_id)
        redis.call('SET', ARGV[1] .. ':lock:' .. job_id, ARGV[2], 'PX', ARGV[3])
        redis.call('HSET', job_key, 'status', 'active', 'processed_at', ARGV[4], 'lock_token', ARGV[2])
        redis.call('HINCRBY', job_key, 'attempts_made', 1)
        return job_id
    end
end
"""

# KEYS: lock
# ARGV: token, lock_ms
EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS: job, lock, active, target set
# ARGV: job_id, token, mode ('remove' | 'move'), status, failed_reason, finished_at, target score
# Returns 0 when the caller no longer owns the lock.
FINISH_SCRIPT = """
if redis.call('GET', KEYS[2]) ~= ARGV[2] then
    return 0
end
redis.call('DEL', KEYS[2])
redis.call('ZREM', KEYS[3], ARGV[1])
if ARGV[3] == 'remove' then
    redis.call('DEL', KEYS[1])
    return 1
end
redis.call('HSET', KEYS[1], 'status', ARGV[4])
redis.call('HDEL', KEYS[1], 'lock_token')
if ARGV[5] ~= '' then
    redis.call('HSET', KEYS[1], 'failed_reason', ARGV[5])
end
if ARGV[6] ~= '' then
    redis.call('HSET', KEYS[1], 'finished_at', ARGV[6])
end
redis.call('ZADD', KEYS[4], ARGV[7], ARGV[1])
return 1
"""

# KEYS: active, wait, failed, seq
# ARGV: key prefix, max_stalled_count, now_ms, failed reason
STALL_SCRIPT = """
local requeued = 0
local failed = 0
local active = redis.call('ZRANGE', KEYS[1], 0, -1)
for _, job_id in ipairs(active) do
    if redis.call('EXISTS', ARGV[1] .. ':lock:' .. job_id) == 0 then
        redis.call('ZREM', KEYS[1], job_id)
        local job_key = ARGV[1] .. ':job:' .. job_id
        if redis.call('EXISTS', job_key) == 1 then
            local count = redis.call('HINCRBY', job_key, 'stalled_count', 1)
            redis.call('HDEL', job_key, 'lock_token')
            if count > tonumber(ARGV[2]) then
                redis.call('HSET', job_key, 'status', 'failed', 'failed_reason', ARGV[4], 'finished_at', ARGV[3])
                redis.call('ZADD', KEYS[3], ARGV[3], job_id)
                failed = failed + 1
            else
                local priority = tonumber(redis.call('HGET', job_key, 'priority') or '3')
                local seq = redis.call('INCR', KEYS[4])
                redis.call('HINCRBY', job_key, 'attempts_made', -1)
                redis.call('HSET', job_key, 'status', 'stalled')
                redis.call('ZADD', KEYS[2], priority * 1000000000000 + seq, job_id)
                requeued = requeued + 1
            end
        end
    end
end
return {requeued, failed}
"""

# KEYS: job, failed, wait, seq
# ARGV: job_id
# Returns -1 missing, 0 not failed, 1 re-queued.
RETRY_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
if redis.call('ZREM', KEYS[2], ARGV[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], 'status', 'waiting', 'attempts_made', '0', 'stalled_count', '0')
redis.call('HDEL', KEYS[1], 'failed_reason', 'finished_at', 'processed_at', 'lock_token')
local priority = tonumber(redis.call('HGET', KEYS[1], 'priority') or '3')
local seq = redis.call('INCR', KEYS[4])
redis.call('ZADD', KEYS[3], priority * 1000000000000 + seq, ARGV[1])
return 1
"""

# KEYS: job, wait, delayed
# ARGV: job_id
# Returns -1 missing, 0 not pending, 1 removed.
CANCEL_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
local removed = redis.call('ZREM', KEYS[2], ARGV[1]) + redis.call('ZREM', KEYS[3], ARGV[1])
if removed == 0 then
    return 0
end
redis.call('DEL', KEYS[1])
return 1
"""


@dataclass(frozen=True)
class QueueOptions:
    """Per-queue behaviour."""

    name: str
    job_types: frozenset[str]
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 2000
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    lock_duration_ms: int = 30000
    lock_renew_ms: int = 15000
    max_stalled_count: int = 2


class RedisJobQueue:
    """
    A named queue stored under ``{prefix}:{name}``.

    Layout:
    - ``:job:{id}`` hash with the job record
    - ``:wait`` sorted set of ready jobs (priority, then FIFO)
    - ``:delayed`` sorted set of jobs waiting out a backoff, scored by ready time
    - ``:active`` sorted set of leased jobs
    - ``:failed`` / ``:completed`` sorted sets scored by finish time
    - ``:lock:{id}`` lease token with a PX expiry

    Every state transition is a single Lua script so that concurrent
    workers in different processes never observe a half-moved job.
    """

    def __init__(self, store: RedisStore, options: QueueOptions, prefix: str = "mp:queue"):
        self.store = store
        self.options = options
        self.name = options.name
        self.base = f"{prefix}:{options.name}"

    @property
    def client(self):
        return self.store.queue_client

    def _job_key(self, job_id: str) -> str:
        return f"{self.base}:job:{job_id}"

    def _lock_key(self, job_id: str) -> str:
        return f"{self.base}:lock:{job_id}"

    def _set_key(self, name: str) -> str:
        return f"{self.base}:{name}"

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        payload: BaseModel | dict[str, Any],
        *,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
        delay_ms: int = 0,
    ) -> Job:
        """
        Add a job to the queue.

        Args:
            payload: Payload model or raw mapping with a ``kind`` tag
            job_id: Deterministic id; re-enqueueing an existing id is a no-op
            priority: 1 (highest) to 3 (default)
            delay_ms: Hold the job in the delayed set for this long first

        Returns:
            The stored job (the existing one for a duplicate id)

        Raises:
            JobPayloadError: If the payload is invalid or not accepted by this queue
        """
        model = parse_payload(payload)
        job_type = model.kind
        if job_type not in self.options.job_types:
            raise JobPayloadError(
                f"Queue {self.name} does not accept '{job_type}' jobs "
                f"(accepts: {', '.join(sorted(self.options.job_types))})"
            )

        priority = DEFAULT_PRIORITY if priority is None else priority
        if priority < 1 or priority > 3:
            raise JobPayloadError(f"Priority must be between 1 and 3, got {priority}")

        job = Job(
            id=job_id or f"{job_type}-{uuid4().hex}",
            queue_name=self.name,
            type=job_type,
            payload=model.model_dump(mode="json"),
            priority=priority,
            max_attempts=self.options.attempts,
            backoff_type=self.options.backoff_type,
            backoff_delay_ms=self.options.backoff_delay_ms,
            status=JobStatus.DELAYED if delay_ms > 0 else JobStatus.WAITING,
        )
        delay_until = job.created_at + delay_ms if delay_ms > 0 else 0

        fields: list[str] = []
        for name, value in job.to_hash().items():
            fields.extend((name, value))

        created = await self.client.eval(
            ENQUEUE_SCRIPT,
            4,
            self._job_key(job.id),
            self._set_key("wait"),
            self._set_key("delayed"),
            self._set_key("seq"),
            job.id,
            str(priority),
            str(delay_until),
            *fields,
        )

        if not created:
            logger.debug(f"Job {job.id} already exists in {self.name}, skipping enqueue")
            existing = await self.get_job(job.id)
            return existing or job

        metrics.record_job_enqueued(self.name, job_type)
        logger.debug(f"Enqueued {job_type} job {job.id} on {self.name} (priority {priority})")
        return job

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed into the wait set."""
        return int(
            await self.client.eval(
                PROMOTE_SCRIPT,
                3,
                self._set_key("delayed"),
                self._set_key("wait"),
                self._set_key("seq"),
                self.base,
                str(now_ms()),
            )
        )

    async def reserve(self) -> Optional[Job]:
        """
        Lease the next ready job.

        Returns:
            The active job carrying its lock token, or None if nothing is ready
        """
        await self.promote_delayed()
        token = uuid4().hex
        job_id = await self.client.eval(
            RESERVE_SCRIPT,
            2,
            self._set_key("wait"),
            self._set_key("active"),
            self.base,
            token,
            str(self.options.lock_duration_ms),
            str(now_ms()),
        )
        if not job_id:
            return None
        job = await self.get_job(job_id)
        if job is None:
            # Removed between the lease and the read
            return None
        return job

    async def extend_lock(self, job: Job) -> bool:
        """Renew the lease; False means the job was reclaimed by stall recovery."""
        result = await self.client.eval(
            EXTEND_SCRIPT,
            1,
            self._lock_key(job.id),
            job.lock_token or "",
            str(self.options.lock_duration_ms),
        )
        return bool(result)

    async def _finish(
        self,
        job: Job,
        *,
        remove: bool,
        status: JobStatus,
        target: str,
        score: int,
        reason: str = "",
        finished_at: Optional[int] = None,
    ) -> bool:
        result = await self.client.eval(
            FINISH_SCRIPT,
            4,
            self._job_key(job.id),
            self._lock_key(job.id),
            self._set_key("active"),
            self._set_key(target),
            job.id,
            job.lock_token or "",
            "remove" if remove else "move",
            status.value,
            reason,
            "" if finished_at is None else str(finished_at),
            str(score),
        )
        if not result:
            logger.warning(f"Lost lock on job {job.id} in {self.name}; result discarded")
            return False
        return True

    async def complete(self, job: Job) -> bool:
        """Mark a leased job completed (discarded when remove_on_complete)."""
        finished = now_ms()
        return await self._finish(
            job,
            remove=self.options.remove_on_complete,
            status=JobStatus.COMPLETED,
            target="completed",
            score=finished,
            finished_at=finished,
        )

    async def fail(self, job: Job, reason: str, *, retry: bool = True) -> JobStatus:
        """
        Record a failed attempt.

        Args:
            job: The leased job
            reason: Error text stored as failed_reason
            retry: False fails the job regardless of remaining attempts

        Returns:
            JobStatus.DELAYED when a retry was scheduled, JobStatus.FAILED otherwise
        """
        now = now_ms()
        if retry and job.attempts_made < job.max_attempts:
            ready_at = now + job.backoff_ms()
            await self._finish(
                job,
                remove=False,
                status=JobStatus.DELAYED,
                target="delayed",
                score=ready_at,
                reason=reason,
            )
            logger.info(
                f"Job {job.id} attempt {job.attempts_made}/{job.max_attempts} failed, "
                f"retrying in {job.backoff_ms()}ms: {reason}"
            )
            return JobStatus.DELAYED

        await self._finish(
            job,
            remove=self.options.remove_on_fail,
            status=JobStatus.FAILED,
            target="failed",
            score=now,
            reason=reason,
            finished_at=now,
        )
        logger.error(f"Job {job.id} in {self.name} failed permanently: {reason}")
        return JobStatus.FAILED

    async def check_stalled(self) -> tuple[int, int]:
        """
        Reclaim active jobs whose lease expired.

        Returns:
            (requeued, failed) counts
        """
        requeued, failed = await self.client.eval(
            STALL_SCRIPT,
            4,
            self._set_key("active"),
            self._set_key("wait"),
            self._set_key("failed"),
            self._set_key("seq"),
            self.base,
            str(self.options.max_stalled_count),
            str(now_ms()),
            STALLED_REASON,
        )
        requeued, failed = int(requeued), int(failed)
        if requeued or failed:
            logger.warning(
                f"Stall check on {self.name}: {requeued} re-queued, {failed} failed"
            )
            metrics.record_stalled(self.name, requeued, failed)
        return requeued, failed

    # ------------------------------------------------------------------
    # Inspection / administration
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self.client.hgetall(self._job_key(job_id))
        if not data:
            return None
        return Job.from_hash(data)

    async def _load(self, job_ids: Iterable[str]) -> list[Job]:
        job_ids = list(job_ids)
        if not job_ids:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = await pipe.execute()
        return [Job.from_hash(row) for row in rows if row]

    async def list_failed(self, start: int = 0, end: int = 49) -> list[Job]:
        """Failed jobs, most recent first."""
        job_ids = await self.client.zrevrange(self._set_key("failed"), start, end)
        return await self._load(job_ids)

    async def get_pending(self) -> list[Job]:
        """Jobs not yet started (waiting, stalled or delayed)."""
        waiting = await self.client.zrange(self._set_key("wait"), 0, -1)
        delayed = await self.client.zrange(self._set_key("delayed"), 0, -1)
        return await self._load([*waiting, *delayed])

    async def retry(self, job_id: str) -> Job:
        """
        Re-queue a failed job with its attempt counter reset.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is not failed
        """
        result = await self.client.eval(
            RETRY_SCRIPT,
            4,
            self._job_key(job_id),
            self._set_key("failed"),
            self._set_key("wait"),
            self._set_key("seq"),
            job_id,
        )
        if result == -1:
            raise JobNotFoundError(self.name, job_id)
        if result == 0:
            job = await self.get_job(job_id)
            status = job.status.value if job else "unknown"
            raise JobStateError(f"Job {job_id} is {status}; only failed jobs can be retried")
        logger.info(f"Retrying failed job {job_id} in {self.name}")
        return await self.get_job(job_id)

    async def cancel(self, job_id: str) -> None:
        """
        Remove a job that has not started yet.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is active or already finished
        """
        result = await self.client.eval(
            CANCEL_SCRIPT,
            3,
            self._job_key(job_id),
            self._set_key("wait"),
            self._set_key("delayed"),
            job_id,
        )
        if result == -1:
            raise JobNotFoundError(self.name, job_id)
        if result == 0:
            job = await self.get_job(job_id)
            status = job.status.value if job else "unknown"
            raise JobStateError(f"Job {job_id} is {status}; only pending jobs can be cancelled")
        logger.info(f"Cancelled job {job_id} in {self.name}")

    async def get_job_counts(self) -> dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            for name in ("wait", "delayed", "active", "completed", "failed"):
                pipe.zcard(self._set_key(name))
            waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }
