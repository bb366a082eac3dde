"""Redis-backed job orchestration.

Provides a persistent queue with idempotent enqueue, per-kind bounded
concurrency, exponential-backoff retries, lease-based stall detection,
repeating jobs, and a dead letter queue.

Exports:
    JobQueue: Enqueue, claim and run jobs; worker loop.
    JobName: Closed set of job kinds.
    JobHandle: Result of an enqueue call.
    DeadLetterQueue: Review and replay of exhausted jobs.
"""

from __future__ import annotations

from src.botsync.jobs.schemas import JobHandle, JobName, JobState

__all__ = [
    "DeadLetterQueue",
    "JobHandle",
    "JobName",
    "JobQueue",
    "JobState",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the queue and DLQ so schema imports stay light."""
    if name == "JobQueue":
        from src.botsync.jobs.queue import JobQueue

        return JobQueue
    if name == "DeadLetterQueue":
        from src.botsync.jobs.dlq import DeadLetterQueue

        return DeadLetterQueue
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
