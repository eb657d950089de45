"""Dead letter queue for jobs that exhausted their attempts.

DLQ key pattern: {prefix}:queue:{queue}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.orderflow.jobs.schemas import QueueName

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter streams, one per job queue.

    Failed jobs are stored with failure metadata for review and can be
    replayed back to their queue with a fresh attempt counter.

    Args:
        redis: Raw async Redis client.
        prefix: Key prefix shared with the job queue.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "orderflow") -> None:
        self._redis = redis
        self._prefix = prefix

    def _queue_key(self, queue: QueueName) -> str:
        return f"{self._prefix}:queue:{queue.value}"

    def _dlq_key(self, queue: QueueName) -> str:
        return f"{self._queue_key(queue)}:dlq"

    async def send_to_dlq(
        self,
        queue: QueueName,
        message_id: str,
        data: dict[str, str],
        error: str,
        attempts: int,
    ) -> str:
        """Store a failed job with its error and attempt count.

        Args:
            queue: Queue the job was consumed from.
            message_id: Original stream message ID.
            data: Raw job data from the stream.
            error: Error from the last attempt.
            attempts: Attempts made.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_key = self._dlq_key(queue)
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_queue": queue.value,
            "_dlq_original_id": message_id,
            "_dlq_error": error[:1000],
            "_dlq_attempts": str(attempts),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        dlq_message_id = await self._redis.xadd(dlq_key, dlq_data)

        logger.warning(
            "job_dead_lettered",
            dlq_key=dlq_key,
            job_id=data.get("job_id"),
            kind=data.get("kind"),
            original_id=message_id,
            error=error,
            attempts=attempts,
        )
        return dlq_message_id

    async def list_dlq_messages(
        self,
        queue: QueueName,
        count: int = 50,
    ) -> list[tuple[str, dict[str, Any]]]:
        return await self._redis.xrange(self._dlq_key(queue), count=count)

    async def replay_message(self, queue: QueueName, dlq_message_id: str) -> str:
        """Move one DLQ entry back onto its queue.

        DLQ metadata is stripped and the attempt counter reset before the
        job is re-added; the DLQ entry is then deleted.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        dlq_key = self._dlq_key(queue)
        messages = await self._redis.xrange(dlq_key, min=dlq_message_id, max=dlq_message_id, count=1)
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {dlq_key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        replay_data = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        replay_data["attempt"] = "0"

        new_id = await self._redis.xadd(self._queue_key(queue), replay_data)
        await self._redis.xdel(dlq_key, dlq_message_id)

        logger.info(
            "job_replayed",
            queue=queue.value,
            dlq_message_id=dlq_message_id,
            new_message_id=new_id,
        )
        return new_id
