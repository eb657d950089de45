"""Queue worker with bounded concurrency, retry and dead lettering.

Reads jobs from one queue through a consumer group and runs the handler
under an ``asyncio.Semaphore``. A failed job is re-added with its attempt
counter bumped after an exponential backoff from its kind's ``JobPolicy``,
and dead lettered once attempts are exhausted.

Retention: the handler may return ``JobOutcome.REMOVE`` or ``KEEP``; a None
result falls back to the policy's ``keep_on_complete``. Dead lettered jobs
keep a ``failed`` record unless the policy turns ``keep_on_failure`` off.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from src.orderflow.conversation.schemas import JobOutcome
from src.orderflow.core.monitoring import job_duration_seconds, jobs_processed_total
from src.orderflow.jobs.dlq import DeadLetterQueue
from src.orderflow.jobs.queue import JobQueue
from src.orderflow.jobs.schemas import JOB_POLICIES, JobPolicy, QueueName, job_from_stream_dict

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Any], Awaitable[JobOutcome | None]]

_DEFAULT_POLICY = JobPolicy(attempts=1, backoff_seconds=0.0, keep_on_complete=True)


class JobWorker:
    """Consume one queue with up to ``concurrency`` jobs in flight.

    Args:
        queue: JobQueue for reading, acking and settling jobs.
        dlq: DeadLetterQueue for exhausted jobs.
        queue_name: Queue to consume.
        handler: Async callable invoked with the parsed job.
        concurrency: Maximum concurrently running handlers.
        group: Consumer group name.
        consumer_name: Unique consumer identifier within the group.
        sleep: Awaitable used for backoff delays (injectable for tests).
    """

    def __init__(
        self,
        queue: JobQueue,
        dlq: DeadLetterQueue,
        queue_name: QueueName,
        handler: JobHandler,
        concurrency: int = 1,
        group: str = "workers",
        consumer_name: str = "worker-1",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self._dlq = dlq
        self._queue_name = queue_name
        self._handler = handler
        self._group = group
        self._consumer_name = consumer_name
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._concurrency = max(1, concurrency)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    async def process_loop(self) -> None:
        """Read and dispatch jobs until ``stop()`` is called."""
        self._running = True
        logger.info(
            "worker_started",
            queue=self._queue_name.value,
            group=self._group,
            consumer=self._consumer_name,
            concurrency=self._concurrency,
        )

        for message_id, raw_data in await self.reclaim_abandoned():
            await self._dispatch(message_id, raw_data)

        while self._running:
            messages = await self._queue.read(
                self._queue_name,
                self._group,
                self._consumer_name,
                count=self._concurrency,
            )
            for _stream_key, stream_messages in messages or []:
                for message_id, raw_data in stream_messages:
                    await self._dispatch(message_id, raw_data)

        await self.drain()

    async def _dispatch(self, message_id: str, raw_data: dict[str, str]) -> None:
        await self._semaphore.acquire()
        task = asyncio.create_task(self._run(message_id, raw_data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, message_id: str, raw_data: dict[str, str]) -> None:
        try:
            await self.process_message(message_id, raw_data)
        finally:
            self._semaphore.release()

    async def process_message(self, message_id: str, raw_data: dict[str, str]) -> None:
        """Run one job through the handler and settle it.

        On success the stream entry is acked and the job record kept or
        removed. On failure the job is re-added after a backoff, or dead
        lettered once its policy's attempts are used up.
        """
        kind = raw_data.get("kind", "unknown")
        job_id = raw_data.get("job_id", message_id)
        attempt = int(raw_data.get("attempt", "0") or 0)
        policy = JOB_POLICIES.get(kind, _DEFAULT_POLICY)

        structlog.contextvars.bind_contextvars(queue=self._queue_name.value, job_kind=kind, job_id=job_id)
        try:
            try:
                job = job_from_stream_dict(raw_data)
            except (KeyError, ValueError, ValidationError) as exc:
                # malformed jobs never succeed
                await self._dead_letter(message_id, raw_data, job_id, kind, str(exc), attempt + 1)
                return

            store_id = getattr(job, "store_id", None)
            if store_id:
                structlog.contextvars.bind_contextvars(store_id=store_id)

            started = time.perf_counter()
            try:
                outcome = await self._handler(job)
            except Exception as exc:
                jobs_processed_total.labels(queue=self._queue_name.value, kind=kind, outcome="failed").inc()
                await self._handle_failure(message_id, raw_data, job_id, kind, policy, attempt, exc)
                return
            finally:
                job_duration_seconds.labels(queue=self._queue_name.value, kind=kind).observe(
                    time.perf_counter() - started
                )

            keep = policy.keep_on_complete if outcome is None else outcome is JobOutcome.KEEP
            await self._queue.settle(job_id, kind, "completed", keep=keep)
            await self._queue.ack(self._queue_name, self._group, message_id)
            jobs_processed_total.labels(
                queue=self._queue_name.value, kind=kind, outcome="kept" if keep else "removed"
            ).inc()
            logger.debug("job_completed", message_id=message_id, keep=keep)
        finally:
            structlog.contextvars.unbind_contextvars("queue", "job_kind", "job_id", "store_id")

    async def _handle_failure(
        self,
        message_id: str,
        raw_data: dict[str, str],
        job_id: str,
        kind: str,
        policy: JobPolicy,
        attempt: int,
        exc: Exception,
    ) -> None:
        attempts_made = attempt + 1
        logger.warning(
            "job_processing_failed",
            message_id=message_id,
            attempt=attempts_made,
            max_attempts=policy.attempts,
            error=str(exc),
            exc_info=True,
        )

        if attempts_made >= policy.attempts:
            await self._dead_letter(message_id, raw_data, job_id, kind, str(exc), attempts_made)
            return

        delay = policy.delay_for(attempts_made)
        await self._sleep(delay)
        await self._queue.requeue(self._queue_name, raw_data, attempts_made)
        await self._queue.ack(self._queue_name, self._group, message_id)
        logger.info("job_retried", message_id=message_id, attempt=attempts_made, delay=delay)

    async def _dead_letter(
        self,
        message_id: str,
        raw_data: dict[str, str],
        job_id: str,
        kind: str,
        error: str,
        attempts: int,
    ) -> None:
        await self._dlq.send_to_dlq(
            queue=self._queue_name,
            message_id=message_id,
            data=raw_data,
            error=error,
            attempts=attempts,
        )
        keep = JOB_POLICIES.get(kind, _DEFAULT_POLICY).keep_on_failure
        await self._queue.settle(job_id, kind, "failed", keep=keep, error=error[:500])
        await self._queue.ack(self._queue_name, self._group, message_id)
        logger.error("job_sent_to_dlq", message_id=message_id, attempts=attempts, error=error)

    async def reclaim_abandoned(self, idle_time_ms: int = 60000) -> list[tuple[str, dict[str, str]]]:
        """Take over entries left pending by dead or stalled consumers."""
        try:
            result = await self._queue.redis.xautoclaim(
                self._queue.stream_key(self._queue_name),
                self._group,
                self._consumer_name,
                min_idle_time=idle_time_ms,
                start_id="0",
                count=10,
            )
        except aioredis.ResponseError:
            return []  # stream or group not created yet
        claimed = [(mid, data) for mid, data in result[1] if data]
        if claimed:
            logger.info("worker_reclaimed_jobs", count=len(claimed))
        return claimed

    async def drain(self) -> None:
        """Wait for in-flight handlers to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stop(self) -> None:
        """Signal the processing loop to stop after the current read."""
        self._running = False
