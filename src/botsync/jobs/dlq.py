"""Dead letter queue for jobs that exhausted their attempts.

Failed jobs are copied into a Redis Stream for review and optional
replay before they are discarded from the queue.

DLQ key pattern: {prefix}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog

from src.botsync.jobs.schemas import Job

if TYPE_CHECKING:
    from src.botsync.jobs.queue import JobQueue
    from src.botsync.jobs.schemas import JobHandle

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter queue backed by a Redis Stream.

    Args:
        redis: Raw async Redis client.
        prefix: Key prefix shared with the job queue.
    """

    MAXLEN = 10000

    def __init__(self, redis: aioredis.Redis, prefix: str = "botsync:jobs") -> None:
        self._redis = redis
        self._prefix = prefix

    @property
    def key(self) -> str:
        return f"{self._prefix}:dlq"

    async def send_to_dlq(self, job: Job, error: str) -> str:
        """Copy a failed job to the dead letter stream.

        Stores the job hash along with failure metadata (error message,
        attempt count, DLQ timestamp, original job id).

        Args:
            job: The job that failed permanently.
            error: Error message from the last attempt.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_data: dict[str, str] = {
            **job.to_hash(),
            "_dlq_job_id": job.id,
            "_dlq_error": error,
            "_dlq_attempts": str(job.attempts),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }

        dlq_message_id = await self._redis.xadd(
            self.key,
            dlq_data,
            maxlen=self.MAXLEN,
            approximate=True,
        )

        logger.warning(
            "job.dead_lettered",
            job_id=job.id,
            job_name=job.name.value,
            error=error,
            attempts=job.attempts,
        )
        return dlq_message_id

    async def list_dlq_messages(self, count: int = 50) -> list[tuple[str, dict[str, Any]]]:
        """List dead-lettered jobs for review.

        Args:
            count: Maximum messages to return (default 50).

        Returns:
            List of ``(message_id, data)`` tuples from the DLQ stream.
        """
        return await self._redis.xrange(self.key, count=count)

    async def replay_message(self, queue: JobQueue, dlq_message_id: str) -> JobHandle:
        """Re-enqueue a dead-lettered job with a fresh attempt budget.

        Deletes the message from the DLQ after replay.

        Args:
            queue: Job queue to enqueue into.
            dlq_message_id: Message ID in the DLQ stream.

        Returns:
            Handle of the re-enqueued job.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        messages = await self._redis.xrange(
            self.key,
            min=dlq_message_id,
            max=dlq_message_id,
            count=1,
        )
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {self.key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        job = Job.from_hash(data["_dlq_job_id"], data)

        handle = await queue.enqueue(
            job.name,
            job.payload,
            job_id=job.id,
            repeat_every_ms=job.repeat_every_ms,
            max_attempts=job.max_attempts,
        )
        await self._redis.xdel(self.key, dlq_message_id)

        logger.info(
            "job.replayed",
            job_id=job.id,
            job_name=job.name.value,
            dlq_message_id=dlq_message_id,
            created=handle.created,
        )
        return handle
