"""Recurring scans: conversation sweeps and per-store ingestion.

Wraps an APScheduler ``AsyncIOScheduler`` with two interval jobs:
- conversation scan every ``CONVO_SCAN_INTERVAL_SECONDS`` (one ``scan`` job)
- ingest scan every ``INGEST_SCAN_INTERVAL_SECONDS`` (one ``ingest`` job per
  active store with an enabled source)

Registration is idempotent (``replace_existing``) and each trigger's first
tick is delayed by one interval, because a boot scan is enqueued right away
under the fixed id ``scan_boot_once``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from src.orderflow.ingestion.store import IngestStore
from src.orderflow.jobs.queue import JobQueue
from src.orderflow.jobs.schemas import (
    SCAN_BOOT_JOB_ID,
    IngestJob,
    QueueName,
    ScanJob,
    ingest_job_id,
    repeat_scan_job_id,
)

logger = structlog.get_logger(__name__)


class JobScheduler:
    """Enqueue scan jobs on fixed intervals.

    Args:
        queue: JobQueue receiving the scan jobs.
        ingest_store: Lists stores eligible for scheduled ingestion. None
            disables the ingest scan.
        convo_interval: Seconds between conversation scans.
        ingest_interval: Seconds between ingest scans.
        min_interval: Floor applied to both intervals.
    """

    def __init__(
        self,
        queue: JobQueue,
        ingest_store: IngestStore | None = None,
        convo_interval: int = 60,
        ingest_interval: int = 300,
        min_interval: int = 15,
    ) -> None:
        self._queue = queue
        self._ingest_store = ingest_store
        self._convo_interval = max(min_interval, convo_interval)
        self._ingest_interval = max(min_interval, ingest_interval)
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def scheduler(self) -> AsyncIOScheduler | None:
        return self._scheduler

    def _trigger(self, seconds: int) -> IntervalTrigger:
        first = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return IntervalTrigger(seconds=seconds, start_date=first)

    def start(self) -> None:
        """Register the interval jobs and start the scheduler."""
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

        self._scheduler.add_job(
            self.enqueue_conversation_scan,
            trigger=self._trigger(self._convo_interval),
            id=repeat_scan_job_id(QueueName.CONVERSATION, self._convo_interval),
            name="Conversation scan for orders without a conversation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        jobs = ["conversation_scan"]

        if self._ingest_store is not None:
            self._scheduler.add_job(
                self.enqueue_ingest_scan,
                trigger=self._trigger(self._ingest_interval),
                id=repeat_scan_job_id(QueueName.INGEST, self._ingest_interval),
                name="Ingest scan for stores with an enabled source",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            jobs.append("ingest_scan")

        self._scheduler.start()
        logger.info(
            "job_scheduler_started",
            jobs=jobs,
            convo_interval=self._convo_interval,
            ingest_interval=self._ingest_interval,
        )

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("job_scheduler_stopped")

    # ── Enqueue ─────────────────────────────────────────────────────────────

    async def enqueue_boot_scan(self) -> str | None:
        """Enqueue the boot-time conversation scan; a pending one is reused."""
        message_id = await self._queue.enqueue(ScanJob(job_id=SCAN_BOOT_JOB_ID))
        logger.info("boot_scan_enqueued", duplicate=message_id is None)
        return message_id

    async def enqueue_conversation_scan(self) -> None:
        job_id = repeat_scan_job_id(QueueName.CONVERSATION, self._convo_interval)
        try:
            await self._queue.enqueue(ScanJob(job_id=job_id))
        except RedisError as exc:
            logger.warning("conversation_scan_enqueue_failed", error=str(exc))

    async def enqueue_ingest_scan(self) -> int:
        """Enqueue one ingest job per eligible store; returns how many."""
        if self._ingest_store is None:
            return 0
        try:
            store_ids = await self._ingest_store.list_ingestible_store_ids()
        except Exception as exc:
            logger.warning("ingest_scan_query_failed", error=str(exc))
            return 0

        enqueued = 0
        for store_id in store_ids:
            try:
                if await self._queue.enqueue(IngestJob(job_id=ingest_job_id(store_id), store_id=store_id)):
                    enqueued += 1
            except RedisError as exc:
                logger.warning("ingest_scan_enqueue_failed", store_id=store_id, error=str(exc))
        logger.info("ingest_scan_enqueued", stores=len(store_ids), enqueued=enqueued)
        return enqueued
