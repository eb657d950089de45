"""Job schemas for the ingest and conversation queues.

Jobs form a tagged union on ``kind``: ``scan``, ``init``, ``incoming`` and
``followup`` run on the conversation queue, ``ingest`` on the ingest queue.
Each serializes to a flat string dict for Redis Streams and deserializes
back through a discriminated ``TypeAdapter``.

Stream key pattern: {prefix}:queue:{queue}
"""

from __future__ import annotations

import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from src.orderflow.ingestion.schemas import IngestSource, MappingOverride


class QueueName(str, Enum):
    INGEST = "ingest"
    CONVERSATION = "conversation"


class _JobBase(BaseModel):
    """Fields shared by every job.

    Attributes:
        job_id: Stable identifier; enqueueing the same id twice is a no-op.
        enqueued_at: UTC time the job was created.
    """

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_dict(self, attempt: int = 0) -> dict[str, str]:
        """Flat string dict for XADD; the job body travels as JSON."""
        return {
            "job_id": self.job_id,
            "kind": self.kind,  # type: ignore[attr-defined]
            "attempt": str(attempt),
            "body": self.model_dump_json(by_alias=True),
        }


class ScanJob(_JobBase):
    """Sweep active stores for orders that have no conversation yet."""

    kind: Literal["scan"] = "scan"


class InitJob(_JobBase):
    """Open the conversation for one order and send the first prompt."""

    kind: Literal["init"] = "init"
    store_id: str
    order_id: str


class IncomingJob(_JobBase):
    """Inbound customer message for an existing conversation."""

    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["incoming"] = "incoming"
    store_id: str
    conversation_id: str
    sender: str = Field(alias="from")
    text: str | None = None
    payload: dict[str, Any] | None = None


class FollowupJob(_JobBase):
    kind: Literal["followup"] = "followup"
    conversation_id: str


class IngestJob(_JobBase):
    """Ingestion run for one store; ``source`` set means a one-off run."""

    kind: Literal["ingest"] = "ingest"
    store_id: str
    source: IngestSource | None = None
    mapping: MappingOverride | None = None


Job = Annotated[
    Union[ScanJob, InitJob, IncomingJob, FollowupJob, IngestJob],
    Field(discriminator="kind"),
]

_JOB_ADAPTER: TypeAdapter = TypeAdapter(Job)


def job_from_stream_dict(raw: dict[str, str]) -> ScanJob | InitJob | IncomingJob | FollowupJob | IngestJob:
    """Rebuild a job from the flat dict produced by ``to_stream_dict``.

    Raises:
        pydantic.ValidationError: If the body is not a known job shape.
    """
    return _JOB_ADAPTER.validate_python(json.loads(raw["body"]))


def queue_for(kind: str) -> QueueName:
    return QueueName.INGEST if kind == "ingest" else QueueName.CONVERSATION


# ── Retry Policy ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class JobPolicy:
    """Retry and retention policy for one job kind.

    Attributes:
        attempts: Total attempts including the first.
        backoff_seconds: Base delay; attempt ``n`` waits ``base * 2**(n-1)``.
        keep_on_complete: Keep the job record after success unless the
            handler explicitly asks for removal.
        keep_on_failure: Keep a ``failed`` record after dead lettering; off
            for jobs whose fixed id must stay enqueueable.
    """

    attempts: int
    backoff_seconds: float
    keep_on_complete: bool
    keep_on_failure: bool = True

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** max(0, attempt - 1))


JOB_POLICIES: dict[str, JobPolicy] = {
    "ingest": JobPolicy(attempts=3, backoff_seconds=2.0, keep_on_complete=False),
    "scan": JobPolicy(attempts=1, backoff_seconds=0.0, keep_on_complete=False, keep_on_failure=False),
    "init": JobPolicy(attempts=3, backoff_seconds=2.0, keep_on_complete=True),
    "incoming": JobPolicy(attempts=2, backoff_seconds=1.5, keep_on_complete=True),
    "followup": JobPolicy(attempts=2, backoff_seconds=3.0, keep_on_complete=True),
}


# ── Job IDs ─────────────────────────────────────────────────────────────────

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]+")

SCAN_BOOT_JOB_ID = "scan_boot_once"


def safe_id(*parts: Any) -> str:
    """Join parts with ``_`` keeping only characters valid in a job id."""
    return _UNSAFE_ID_CHARS.sub("_", "_".join(str(p) for p in parts if p is not None and p != ""))


def conversation_job_id(store_id: str, order_id: str) -> str:
    return safe_id("convo", store_id, order_id)


def ingest_job_id(store_id: str) -> str:
    return safe_id("ingest", store_id, int(time.time() * 1000), secrets.token_hex(4))


def repeat_scan_job_id(queue: QueueName, interval_seconds: int) -> str:
    return safe_id("scan", queue.value, "repeat_every", interval_seconds)
