"""Domain exceptions shared across ingestion, conversation and jobs."""

from __future__ import annotations


class SourceFetchError(Exception):
    """A source candidate could not be fetched or parsed.

    Codes: ``http_error``, ``sheet_or_gid_not_found``, ``unsupported_source``.
    """

    def __init__(self, code: str, message: str | None = None, status_code: int | None = None) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message or code)

    @property
    def retryable(self) -> bool:
        """Only rate limits and server errors are worth another attempt."""
        return self.status_code is not None and (
            self.status_code == 429 or 500 <= self.status_code < 600
        )


class IngestPreconditionError(Exception):
    """The store cannot be ingested (missing, inactive, or without a source)."""

    def __init__(self, store_id: str, reason: str) -> None:
        self.store_id = store_id
        self.reason = reason
        super().__init__(f"Store '{store_id}' not ingestible: {reason}")


class MissingDestinationError(Exception):
    """No phone/contact to deliver to; the only loud conversation failure."""

    def __init__(self, code: str, **context: str) -> None:
        self.code = code
        self.context = context
        super().__init__(code)


class PayloadTooLargeError(ValueError):
    """A job payload exceeded the queue's byte limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Job payload of {size} bytes exceeds limit of {limit} bytes")


class LLMUnavailableError(RuntimeError):
    """No LLM provider is configured."""
