"""Worker process entrypoint.

Wires settings, logging, Sentry and the metrics exporter, builds the
ingestion engine and conversation orchestrator, then runs one queue worker
per job queue plus the interval scheduler until SIGINT/SIGTERM.

Run with ``python -m src.orderflow.main``.
"""

from __future__ import annotations

import asyncio
import signal
import socket

import structlog

from src.orderflow.config import Settings, get_settings
from src.orderflow.conversation.orchestrator import ConversationOrchestrator
from src.orderflow.conversation.planner import LLMPlanner
from src.orderflow.conversation.postgres import PostgresConversationStore
from src.orderflow.core.cache import MemoCache
from src.orderflow.core.database import close_db, get_session
from src.orderflow.core.logging import configure_structlog
from src.orderflow.core.monitoring import init_sentry, start_metrics_server
from src.orderflow.core.redis import RedisJSONCache, close_redis, get_redis_pool
from src.orderflow.ingestion.engine import IngestionEngine
from src.orderflow.ingestion.fetcher import SourceFetcher
from src.orderflow.ingestion.mapper import AIMappingSuggester, ColumnMapper
from src.orderflow.ingestion.postgres import PostgresIngestStore
from src.orderflow.ingestion.status import (
    AllowedStatusProvider,
    SchemaAllowedStatuses,
    StaticAllowedStatuses,
    StatusClassifier,
)
from src.orderflow.jobs.dlq import DeadLetterQueue
from src.orderflow.jobs.handlers import make_conversation_handler, make_ingest_handler, make_init_enqueuer
from src.orderflow.jobs.queue import JobQueue
from src.orderflow.jobs.scheduler import JobScheduler
from src.orderflow.jobs.schemas import QueueName
from src.orderflow.jobs.worker import JobWorker
from src.orderflow.services.llm import LLMService, get_llm_service
from src.orderflow.services.whatsapp import WhatsAppChannel

logger = structlog.get_logger(__name__)

# Process-wide memos shared by every ingestion run
STATUS_CACHE = MemoCache()
SCHEMA_CACHE = MemoCache(max_entries=16)


def build_allowed_statuses(settings: Settings) -> AllowedStatusProvider:
    configured = settings.allowed_statuses()
    if configured:
        return StaticAllowedStatuses(configured)
    return SchemaAllowedStatuses(get_session, SCHEMA_CACHE)


def build_ingestion_engine(settings: Settings, queue: JobQueue, llm: LLMService) -> IngestionEngine:
    suggester = None
    if settings.INGEST_USE_LLM_MAPPING and llm.available:
        suggester = AIMappingSuggester(
            llm,
            cache=RedisJSONCache(queue.redis, settings.llm_cache_ttl()),
            sample_rows=settings.llm_sample_rows(),
        )
    classifier = StatusClassifier(llm) if settings.INGEST_USE_LLM_STATUS and llm.available else None

    return IngestionEngine(
        store=PostgresIngestStore(get_session),
        fetcher=SourceFetcher(),
        mapper=ColumnMapper(suggester),
        allowed_statuses=build_allowed_statuses(settings),
        status_cache=STATUS_CACHE,
        status_classifier=classifier,
        chunk_size=settings.INGEST_CHUNK_SIZE,
        default_country_code=settings.INGEST_DEFAULT_COUNTRY_CODE,
        on_new_orders=make_init_enqueuer(queue),
    )


def build_orchestrator(settings: Settings, llm: LLMService) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        store=PostgresConversationStore(get_session),
        planner=LLMPlanner(llm),
        channel=WhatsAppChannel.from_settings(settings),
        history_limit=settings.CONVO_HISTORY_LIMIT,
        scan_batch=settings.CONVO_SCAN_BATCH,
    )


async def run_worker() -> None:
    """Run queue workers and the scheduler until a stop signal arrives."""
    settings = get_settings()
    configure_structlog()
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)
    start_metrics_server(settings.METRICS_PORT)

    queue = JobQueue(
        get_redis_pool(),
        prefix=settings.QUEUE_PREFIX,
        max_payload_bytes=settings.JOB_MAX_PAYLOAD_BYTES,
    )
    dlq = DeadLetterQueue(queue.redis, prefix=settings.QUEUE_PREFIX)
    llm = get_llm_service()
    consumer = f"{socket.gethostname()}-{id(queue):x}"

    workers = [
        JobWorker(
            queue,
            dlq,
            QueueName.CONVERSATION,
            make_conversation_handler(build_orchestrator(settings, llm)),
            concurrency=settings.CONVO_CONCURRENCY,
            group="conversation-workers",
            consumer_name=consumer,
        )
    ]
    ingest_store = None
    if settings.INGEST_ENABLED:
        engine = build_ingestion_engine(settings, queue, llm)
        ingest_store = PostgresIngestStore(get_session)
        workers.append(
            JobWorker(
                queue,
                dlq,
                QueueName.INGEST,
                make_ingest_handler(engine),
                concurrency=settings.INGEST_CONCURRENCY,
                group="ingest-workers",
                consumer_name=consumer,
            )
        )

    scheduler = JobScheduler(
        queue,
        ingest_store=ingest_store,
        convo_interval=settings.CONVO_SCAN_INTERVAL_SECONDS,
        ingest_interval=settings.INGEST_SCAN_INTERVAL_SECONDS,
        min_interval=settings.SCAN_MIN_INTERVAL_SECONDS,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    tasks: list[asyncio.Task] = []
    try:
        if settings.RUN_WORKERS:
            tasks = [asyncio.create_task(w.process_loop()) for w in workers]
        scheduler.start()
        await scheduler.enqueue_boot_scan()
        logger.info("worker_process_started", queues=[q.value for q in QueueName], run_workers=settings.RUN_WORKERS)
        await stop.wait()
    finally:
        logger.info("worker_process_stopping")
        scheduler.stop()
        for worker in workers:
            worker.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_redis()
        await close_db()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
