"""Job queue on Redis Streams.

One stream per queue, consumed through a consumer group. Every enqueued job
also owns a record key used for deduplication (``SET NX``) and, after the
handler returns, for retention: jobs whose policy or handler says KEEP leave
a ``completed`` record behind, removed jobs delete it.

Stream key pattern: {prefix}:queue:{queue}
Record key pattern: {prefix}:job:{job_id}
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.orderflow.errors import PayloadTooLargeError
from src.orderflow.jobs.schemas import QueueName, _JobBase, queue_for

logger = structlog.get_logger(__name__)


class JobQueue:
    """Enqueue, read and settle jobs.

    Args:
        redis: Raw async Redis client (``decode_responses=True``).
        prefix: Key prefix shared by streams and job records.
        max_payload_bytes: Largest serialized job body accepted.
        maxlen: Approximate stream length kept by XADD trimming.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "orderflow",
        max_payload_bytes: int = 256 * 1024,
        maxlen: int = 10_000,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._max_payload_bytes = max_payload_bytes
        self._maxlen = maxlen

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    def stream_key(self, queue: QueueName) -> str:
        return f"{self._prefix}:queue:{queue.value}"

    def record_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    async def enqueue(self, job: _JobBase) -> str | None:
        """Add a job unless one with the same ``job_id`` is already recorded.

        Returns:
            Stream message ID, or None when the job id was a duplicate.

        Raises:
            PayloadTooLargeError: If the serialized body exceeds the limit.
        """
        data = job.to_stream_dict()
        size = len(data["body"].encode("utf-8"))
        if size > self._max_payload_bytes:
            raise PayloadTooLargeError(size, self._max_payload_bytes)

        record = json.dumps({"state": "queued", "kind": data["kind"], "at": _now()})
        created = await self._redis.set(self.record_key(job.job_id), record, nx=True)
        if not created:
            logger.debug("job_duplicate_skipped", job_id=job.job_id, kind=data["kind"])
            return None

        queue = queue_for(data["kind"])
        message_id = await self._redis.xadd(
            self.stream_key(queue),
            data,
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "job_enqueued",
            queue=queue.value,
            job_id=job.job_id,
            kind=data["kind"],
            message_id=message_id,
        )
        return message_id

    async def requeue(self, queue: QueueName, raw_data: dict[str, str], attempt: int) -> str:
        """Re-add a failed job's raw data with its attempt counter bumped."""
        retry_data = dict(raw_data)
        retry_data["attempt"] = str(attempt)
        return await self._redis.xadd(
            self.stream_key(queue),
            retry_data,
            maxlen=self._maxlen,
            approximate=True,
        )

    async def read(
        self,
        queue: QueueName,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new jobs as ``consumer`` in ``group``, creating the group."""
        stream_key = self.stream_key(queue)

        try:
            await self._redis.xgroup_create(stream_key, group, id="0", mkstream=True)
        except aioredis.ResponseError:
            pass  # group exists

        return await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream_key: ">"},
            count=count,
            block=block,
        )

    async def ack(self, queue: QueueName, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key(queue), group, message_id)

    # ── Job Records ─────────────────────────────────────────────────────────

    async def settle(self, job_id: str, kind: str, state: str, keep: bool, **extra: Any) -> None:
        """Keep a final record for the job, or drop it so the id can recur."""
        key = self.record_key(job_id)
        if not keep:
            await self._redis.delete(key)
            return
        record = {"state": state, "kind": kind, "at": _now(), **extra}
        await self._redis.set(key, json.dumps(record))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
