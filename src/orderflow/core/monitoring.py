"""Prometheus metrics, Sentry integration, and LLM call tracking.

Provides:
- Job, ingestion, outbound and LLM counters/histograms
- track_llm_call(): Context manager for LLM call metrics
- init_sentry(): Initialize Sentry with store-aware before_send callback
- start_metrics_server(): Expose /metrics from the worker process
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import Counter, Histogram, start_http_server

logger = structlog.get_logger(__name__)

# ── Job Metrics ──────────────────────────────────────────────────────────────

jobs_processed_total = Counter(
    "jobs_processed_total",
    "Jobs handled by queue workers",
    ["queue", "kind", "outcome"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Job handler duration in seconds",
    ["queue", "kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ── Ingestion Metrics ────────────────────────────────────────────────────────

ingest_rows_total = Counter(
    "ingest_rows_total",
    "Source rows handled by the ingestion engine",
    ["entity", "result"],
)

ingest_chunks_total = Counter(
    "ingest_chunks_total",
    "Ingestion chunks by result (ok, locked, failed)",
    ["result"],
)

# ── Outbound Metrics ─────────────────────────────────────────────────────────

outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound channel sends by kind and result",
    ["kind", "result"],
)

# ── LLM Metrics ──────────────────────────────────────────────────────────────

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM API requests",
    ["model", "purpose", "status"],
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "LLM API request duration in seconds",
    ["model", "purpose"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


# ── LLM Metrics Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_llm_call(
    model: str,
    purpose: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks LLM call metrics.

    Usage:
        async with track_llm_call("fast", "plan") as tracker:
            result = await call_llm(...)

    Records duration and a success/error count for the model group and
    purpose (``plan``, ``mapping``, ``status``).
    """
    tracker: dict[str, Any] = {}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        llm_requests_total.labels(model=model, purpose=purpose, status=status).inc()
        llm_request_duration_seconds.labels(model=model, purpose=purpose).observe(duration)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with store-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Copy bound job context (store_id, job kind) into Sentry tags."""
        bound = structlog.contextvars.get_contextvars()
        tags = event.setdefault("tags", {})
        for key in ("store_id", "job_kind", "queue"):
            if key in bound:
                tags[key] = str(bound[key])
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        before_send=before_send,
    )
    logger.info("sentry_initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def start_metrics_server(port: int) -> bool:
    """Start the Prometheus exposition HTTP server. Returns False if disabled."""
    if port <= 0:
        return False
    start_http_server(port)
    logger.info("metrics_server_started", port=port)
    return True
