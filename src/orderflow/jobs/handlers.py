"""Queue handlers binding jobs to the ingestion engine and orchestrator."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from src.orderflow.conversation.orchestrator import ConversationOrchestrator
from src.orderflow.conversation.schemas import JobOutcome
from src.orderflow.errors import IngestPreconditionError
from src.orderflow.ingestion.engine import IngestionEngine
from src.orderflow.jobs.queue import JobQueue
from src.orderflow.jobs.schemas import (
    FollowupJob,
    IncomingJob,
    IngestJob,
    InitJob,
    ScanJob,
    conversation_job_id,
)

logger = structlog.get_logger(__name__)


def make_init_enqueuer(queue: JobQueue) -> Callable[[str, list[str]], Awaitable[None]]:
    """Callback for the engine: one ``init`` job per newly inserted order."""

    async def enqueue_inits(store_id: str, order_ids: list[str]) -> None:
        enqueued = 0
        for order_id in order_ids:
            job = InitJob(
                job_id=conversation_job_id(store_id, order_id),
                store_id=store_id,
                order_id=order_id,
            )
            if await queue.enqueue(job):
                enqueued += 1
        logger.info("init_jobs_enqueued", store_id=store_id, orders=len(order_ids), enqueued=enqueued)

    return enqueue_inits


def make_ingest_handler(engine: IngestionEngine) -> Callable[[IngestJob], Awaitable[None]]:
    async def handle_ingest(job: IngestJob) -> None:
        try:
            await engine.run(job.store_id, source=job.source, mapping=job.mapping)
        except IngestPreconditionError as exc:
            # a retry cannot fix a missing/inactive store
            logger.warning("ingest_job_skipped", store_id=exc.store_id, reason=exc.reason)

    return handle_ingest


def make_conversation_handler(
    orchestrator: ConversationOrchestrator,
) -> Callable[[ScanJob | InitJob | IncomingJob | FollowupJob], Awaitable[JobOutcome]]:
    async def handle_conversation(job: ScanJob | InitJob | IncomingJob | FollowupJob) -> JobOutcome:
        return await orchestrator.handle(job)

    return handle_conversation
