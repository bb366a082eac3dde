"""Redis-backed persistent job queue with retries, leases, and repeats.

Key layout (prefix defaults to ``botsync:jobs``):

    {prefix}:job:{job_id}      hash    job fields (see Job.to_hash)
    {prefix}:waiting:{name}    zset    job ids scored by due time (ms)
    {prefix}:active:{name}     zset    job ids scored by lease deadline (ms)
    {prefix}:dlq               stream  dead-lettered jobs

Enqueue is idempotent per job id: HSETNX on the hash decides whether the
job is new, and the rest of the hash is written in one MULTI with the
``waiting`` entry. A hash whose id sits in neither sorted set is treated as
debris from an interrupted write and replaced. Claiming is a WATCHed MULTI
moving the id from ``waiting`` to ``active``; every later transition moves
it out of ``active`` in the same MULTI that rewrites or deletes the hash,
so a failed write never leaves a live job id outside both sets.

Active jobs renew their lease while the handler runs; the reaper puts jobs
with expired leases back in ``waiting`` and reports them as stalled.

Failed attempts are retried with exponential backoff (1s, 4s, 16s, ...)
until ``max_attempts`` is reached, then the job is dead-lettered. Terminal
jobs are deleted, so a finished job id can be enqueued again.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel
from redis.exceptions import WatchError

from src.botsync.core.monitoring import job_duration_seconds, job_events_total
from src.botsync.jobs.dlq import DeadLetterQueue
from src.botsync.jobs.schemas import (
    HandlerRegistrationError,
    Job,
    JobHandle,
    JobLifecycleEvent,
    JobName,
    JobPayloadError,
    JobState,
    parse_payload,
)

if TYPE_CHECKING:
    from src.botsync.config import Settings

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Any], Awaitable[Any]]
JobListener = Callable[[JobLifecycleEvent, Job, "str | None"], Any]


@dataclass
class _Registration:
    handler: JobHandler
    concurrency: int


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Persistent job queue shared by the API process and the workers.

    Args:
        redis: Async Redis client (``decode_responses=True``).
        prefix: Key prefix for all queue keys.
        dlq: Dead letter queue; created on the same prefix when omitted.
        default_max_attempts: Attempts per job unless enqueue overrides it.
        lease_ms: Lease length for active jobs.
        poll_interval: Seconds a worker idles when no job is due.
        stall_check_interval: Seconds between reaper passes.
        clock: Returns epoch milliseconds; injectable for tests.
    """

    RETRY_BASE_MS: int = 1000
    RETRY_FACTOR: int = 4  # 1s, 4s, 16s

    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "botsync:jobs",
        dlq: DeadLetterQueue | None = None,
        default_max_attempts: int = 3,
        lease_ms: int = 60_000,
        poll_interval: float = 1.0,
        stall_check_interval: float = 30.0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._dlq = dlq or DeadLetterQueue(redis, prefix)
        self._default_max_attempts = default_max_attempts
        self._lease_ms = lease_ms
        self._poll_interval = poll_interval
        self._stall_check_interval = stall_check_interval
        self._clock = clock or _epoch_ms
        self._handlers: dict[JobName, _Registration] = {}
        self._listeners: list[JobListener] = []
        self._running = False

    @classmethod
    def from_settings(cls, redis: aioredis.Redis, settings: Settings) -> JobQueue:
        """Build a queue configured from application settings."""
        return cls(
            redis,
            prefix=settings.JOB_KEY_PREFIX,
            default_max_attempts=settings.JOB_MAX_ATTEMPTS,
            lease_ms=settings.JOB_LEASE_SECONDS * 1000,
            poll_interval=settings.JOB_POLL_INTERVAL_SECONDS,
            stall_check_interval=settings.JOB_STALL_CHECK_INTERVAL_SECONDS,
        )

    # ── Keys ─────────────────────────────────────────────────────────────

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _waiting_key(self, name: JobName) -> str:
        return f"{self._prefix}:waiting:{name.value}"

    def _active_key(self, name: JobName) -> str:
        return f"{self._prefix}:active:{name.value}"

    @property
    def dlq(self) -> DeadLetterQueue:
        return self._dlq

    # ── Registration ─────────────────────────────────────────────────────

    def register_handler(
        self, name: JobName | str, concurrency: int, handler: JobHandler
    ) -> None:
        """Bind an async handler to a job kind.

        Args:
            name: Job kind.
            concurrency: Number of worker tasks processing this kind.
            handler: Async callable receiving the typed payload.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._handlers[JobName(name)] = _Registration(handler=handler, concurrency=concurrency)

    def add_listener(self, callback: JobListener) -> None:
        """Subscribe to lifecycle events (started, completed, failed, stalled).

        The callback receives ``(event, job, error)`` and may be sync or async.
        """
        self._listeners.append(callback)

    def ensure_handlers(self, names: Iterable[JobName] = JobName) -> None:
        """Raise unless every job kind has a handler.

        Raises:
            HandlerRegistrationError: Listing the kinds without a handler.
        """
        missing = sorted(n.value for n in names if n not in self._handlers)
        if missing:
            raise HandlerRegistrationError(f"No handler registered for: {', '.join(missing)}")

    # ── Enqueue / Inspect ────────────────────────────────────────────────

    async def enqueue(
        self,
        name: JobName | str,
        payload: BaseModel | dict[str, Any] | None = None,
        job_id: str | None = None,
        delay_ms: int = 0,
        repeat_every_ms: int | None = None,
        max_attempts: int | None = None,
    ) -> JobHandle:
        """Add a job unless a non-terminal job with the same id exists.

        Args:
            name: Job kind.
            payload: Typed payload or equivalent dict.
            job_id: Idempotency token; a random id when omitted.
            delay_ms: Delay before the job becomes due.
            repeat_every_ms: Re-queue interval for repeating jobs.
            max_attempts: Attempts before dead-lettering.

        Returns:
            JobHandle with ``created`` False when the call was a no-op.

        Raises:
            JobPayloadError: If the payload does not fit the job kind.
        """
        name = JobName(name)
        typed = parse_payload(name, payload)
        job_id = job_id or uuid.uuid4().hex
        key = self._job_key(job_id)

        created = await self._redis.hsetnx(key, "name", name.value)
        if not created and await self._is_orphaned(job_id):
            # Hash left behind by an interrupted write; nothing would ever run it
            await self._redis.delete(key)
            logger.warning("job_queue.orphan_repaired", job_id=job_id, job_name=name.value)
            created = await self._redis.hsetnx(key, "name", name.value)
        if not created:
            existing = await self.get_job(job_id)
            state = existing.state if existing else JobState.WAITING
            logger.debug(
                "job.enqueue_deduplicated",
                job_id=job_id,
                job_name=name.value,
                state=state.value,
            )
            return JobHandle(job_id=job_id, name=name, created=False, state=state)

        run_at = self._clock() + max(0, delay_ms)
        job = Job(
            id=job_id,
            name=name,
            payload=typed.model_dump(mode="json"),
            max_attempts=max_attempts or self._default_max_attempts,
            repeat_every_ms=repeat_every_ms,
            run_at_ms=run_at,
        )
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=job.to_hash())
                pipe.zadd(self._waiting_key(name), {job_id: run_at})
                await pipe.execute()
        except Exception:
            await self._redis.delete(key)
            raise

        logger.debug(
            "job.enqueued",
            job_id=job_id,
            job_name=name.value,
            delay_ms=delay_ms,
            repeat_every_ms=repeat_every_ms,
        )
        return JobHandle(job_id=job_id, name=name, created=True, state=JobState.WAITING)

    async def _is_orphaned(self, job_id: str) -> bool:
        """True when a job hash exists but the id is in no waiting or active set."""
        stored = await self._redis.hget(self._job_key(job_id), "name")
        try:
            name = JobName(stored)
        except ValueError:
            return True
        for zset_key in (self._waiting_key(name), self._active_key(name)):
            if await self._redis.zscore(zset_key, job_id) is not None:
                return False
        return True

    async def get_job(self, job_id: str) -> Job | None:
        raw = await self._redis.hgetall(self._job_key(job_id))
        if not raw or "name" not in raw or "state" not in raw:
            return None
        return Job.from_hash(job_id, raw)

    async def remove_job(self, job_id: str) -> bool:
        """Remove a waiting job. Active jobs are left alone.

        Returns:
            True if a waiting job was removed.
        """
        job = await self.get_job(job_id)
        if job is None:
            return False
        removed = await self._redis.zrem(self._waiting_key(job.name), job_id)
        if not removed:
            return False
        await self._redis.delete(self._job_key(job_id))
        logger.debug("job.removed", job_id=job_id, job_name=job.name.value)
        return True

    async def schedule_repeating(
        self,
        name: JobName | str,
        payload: BaseModel | dict[str, Any] | None,
        every_ms: int,
        job_id: str,
    ) -> JobHandle:
        """Install a repeating job, replacing any pending job with that id.

        An active run keeps going and picks up the new interval when it
        is re-queued.
        """
        name = JobName(name)
        existing = await self.get_job(job_id)
        if existing is not None and existing.state == JobState.ACTIVE:
            await self._redis.hset(
                self._job_key(job_id),
                mapping={"repeat_every_ms": str(every_ms)},
            )
            return JobHandle(job_id=job_id, name=name, created=False, state=JobState.ACTIVE)

        if existing is not None:
            await self._redis.zrem(self._waiting_key(existing.name), job_id)
            await self._redis.delete(self._job_key(job_id))

        handle = await self.enqueue(name, payload, job_id=job_id, repeat_every_ms=every_ms)
        logger.info(
            "job.repeating_scheduled",
            job_id=job_id,
            job_name=name.value,
            every_ms=every_ms,
        )
        return handle

    # ── Processing ───────────────────────────────────────────────────────

    async def _claim(self, name: JobName) -> str | None:
        now = self._clock()
        candidates = await self._redis.zrangebyscore(
            self._waiting_key(name), "-inf", now, start=0, num=10
        )
        for job_id in candidates:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(self._waiting_key(name))
                if await pipe.zscore(self._waiting_key(name), job_id) is None:
                    continue
                pipe.multi()
                pipe.zrem(self._waiting_key(name), job_id)
                pipe.zadd(self._active_key(name), {job_id: now + self._lease_ms})
                try:
                    await pipe.execute()
                except WatchError:
                    continue
            return job_id
        return None

    async def process_next(self, name: JobName | str) -> bool:
        """Claim and run one due job of the given kind.

        Returns:
            True if a job was claimed.

        Raises:
            HandlerRegistrationError: If no handler is registered for ``name``.
        """
        name = JobName(name)
        registration = self._handlers.get(name)
        if registration is None:
            raise HandlerRegistrationError(f"No handler registered for: {name.value}")

        job_id = await self._claim(name)
        if job_id is None:
            return False

        job = await self.get_job(job_id)
        if job is None:
            await self._redis.zrem(self._active_key(name), job_id)
            return True

        key = self._job_key(job_id)
        await self._redis.hset(key, mapping={"state": JobState.ACTIVE.value})
        job.attempts = await self._redis.hincrby(key, "attempts", 1)
        job.state = JobState.ACTIVE

        await self._execute(job, registration.handler)
        return True

    async def _execute(self, job: Job, handler: JobHandler) -> None:
        await self._emit(JobLifecycleEvent.STARTED, job)

        try:
            payload = parse_payload(job.name, job.payload)
        except JobPayloadError as exc:
            await self._exhaust(job, str(exc))
            return

        renewer = asyncio.create_task(self._renew_lease(job))
        start = time.perf_counter()
        try:
            await handler(payload)
        except Exception as exc:
            job_duration_seconds.labels(job_name=job.name.value, status="failed").observe(
                time.perf_counter() - start
            )
            await self._fail(job, exc)
        else:
            job_duration_seconds.labels(job_name=job.name.value, status="completed").observe(
                time.perf_counter() - start
            )
            await self._complete(job)
        finally:
            renewer.cancel()

    async def _renew_lease(self, job: Job) -> None:
        interval = max(self._lease_ms / 3000, 0.05)
        while True:
            await asyncio.sleep(interval)
            await self._redis.zadd(
                self._active_key(job.name),
                {job.id: self._clock() + self._lease_ms},
                xx=True,
            )

    async def _requeue(self, job: Job, run_at: int, state: JobState, attempts: int, error: str | None) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active_key(job.name), job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": state.value,
                    "attempts": str(attempts),
                    "run_at_ms": str(run_at),
                    "last_error": error or "",
                },
            )
            pipe.zadd(self._waiting_key(job.name), {job.id: run_at})
            await pipe.execute()

    async def _finish(self, job: Job, error: str | None = None) -> None:
        """Drop a terminal job, or re-queue it when it repeats."""
        if job.repeat_every_ms:
            await self._requeue(
                job,
                self._clock() + job.repeat_every_ms,
                JobState.WAITING,
                attempts=0,
                error=error,
            )
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active_key(job.name), job.id)
            pipe.delete(self._job_key(job.id))
            await pipe.execute()

    async def _complete(self, job: Job) -> None:
        await self._finish(job)
        job.state = JobState.COMPLETED
        await self._emit(JobLifecycleEvent.COMPLETED, job)

    async def _fail(self, job: Job, exc: Exception) -> None:
        error = f"{type(exc).__name__}: {exc}"
        if job.attempts >= job.max_attempts:
            await self._exhaust(job, error)
            return

        delay = self.RETRY_BASE_MS * self.RETRY_FACTOR ** (job.attempts - 1)
        await self._requeue(
            job,
            self._clock() + delay,
            JobState.WAITING,
            attempts=job.attempts,
            error=error,
        )
        job.state = JobState.FAILED
        job.last_error = error
        await self._emit(JobLifecycleEvent.FAILED, job, error)
        logger.info(
            "job.retry_scheduled",
            job_id=job.id,
            job_name=job.name.value,
            attempts=job.attempts,
            delay_ms=delay,
        )

    async def _exhaust(self, job: Job, error: str) -> None:
        """Dead-letter a job that cannot succeed and drop it from the queue."""
        job.last_error = error
        await self._dlq.send_to_dlq(job, error)
        await self._finish(job, error)
        job.state = JobState.FAILED
        await self._emit(JobLifecycleEvent.FAILED, job, error)

    async def reap_stalled(self) -> int:
        """Return jobs whose lease expired to the waiting set.

        Jobs that already used all attempts are dead-lettered instead.

        Returns:
            Number of stalled jobs found.
        """
        now = self._clock()
        stalled = 0
        for name in JobName:
            expired = await self._redis.zrangebyscore(self._active_key(name), "-inf", now)
            for job_id in expired:
                if await self._redis.zrem(self._active_key(name), job_id) != 1:
                    continue
                job = await self.get_job(job_id)
                if job is None:
                    continue
                stalled += 1
                job.state = JobState.STALLED
                await self._emit(JobLifecycleEvent.STALLED, job)
                if job.attempts >= job.max_attempts:
                    await self._exhaust(job, "lease expired")
                else:
                    await self._requeue(job, now, JobState.STALLED, job.attempts, job.last_error)
        return stalled

    # ── Listeners ────────────────────────────────────────────────────────

    async def _emit(self, event: JobLifecycleEvent, job: Job, error: str | None = None) -> None:
        job_events_total.labels(job_name=job.name.value, event=event.value).inc()
        log = logger.warning if event in (JobLifecycleEvent.FAILED, JobLifecycleEvent.STALLED) else logger.debug
        log(
            f"job.{event.value}",
            job_id=job.id,
            job_name=job.name.value,
            attempts=job.attempts,
            error=error,
        )
        for listener in self._listeners:
            try:
                result = listener(event, job, error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("job.listener_failed", job_id=job.id, lifecycle_event=event.value)

    # ── Worker Loop ──────────────────────────────────────────────────────

    async def _work(self, name: JobName, worker_index: int) -> None:
        while self._running:
            try:
                processed = await self.process_next(name)
            except Exception:
                logger.exception("job.worker_error", job_name=name.value, worker=worker_index)
                processed = False
            if not processed:
                await asyncio.sleep(self._poll_interval)

    async def _reap_forever(self) -> None:
        while self._running:
            try:
                await self.reap_stalled()
            except Exception:
                logger.exception("job.reaper_error")
            await asyncio.sleep(self._stall_check_interval)

    async def run(self) -> None:
        """Process jobs until ``stop()`` is called.

        Starts ``concurrency`` worker tasks per registered job kind plus a
        stalled-job reaper.
        """
        self._running = True
        tasks = [asyncio.create_task(self._reap_forever())]
        for name, registration in self._handlers.items():
            for index in range(registration.concurrency):
                tasks.append(asyncio.create_task(self._work(name, index)))

        logger.info(
            "job_queue.started",
            job_kinds=[n.value for n in self._handlers],
            worker_tasks=len(tasks) - 1,
        )
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            logger.info("job_queue.stopped")

    def stop(self) -> None:
        """Signal the worker loops to stop after their current job."""
        self._running = False
