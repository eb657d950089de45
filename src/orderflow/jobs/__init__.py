"""Job queue on Redis Streams with per-queue worker concurrency.

Exports:
    ScanJob, InitJob, IncomingJob, FollowupJob, IngestJob: Job tagged union.
    JobQueue: Enqueue with id dedup, read, ack and settle job records.
    JobWorker: Bounded-concurrency consumer with retry and dead lettering.
    DeadLetterQueue: DLQ for exhausted jobs, with list and replay.
    JobScheduler: Interval scans and the boot scan.
"""

from __future__ import annotations

from src.orderflow.jobs.schemas import FollowupJob, IncomingJob, IngestJob, InitJob, ScanJob

__all__ = [
    "DeadLetterQueue",
    "FollowupJob",
    "IncomingJob",
    "IngestJob",
    "InitJob",
    "JobQueue",
    "JobScheduler",
    "JobWorker",
    "ScanJob",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load queue, worker, DLQ and scheduler."""
    if name == "JobQueue":
        from src.orderflow.jobs.queue import JobQueue

        return JobQueue
    if name == "JobWorker":
        from src.orderflow.jobs.worker import JobWorker

        return JobWorker
    if name == "DeadLetterQueue":
        from src.orderflow.jobs.dlq import DeadLetterQueue

        return DeadLetterQueue
    if name == "JobScheduler":
        from src.orderflow.jobs.scheduler import JobScheduler

        return JobScheduler
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
