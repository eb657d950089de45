"""Ingestion store abstract base class.

The engine only talks to persistence through this interface. The Postgres
implementation lives in ``ingestion/postgres.py``; tests use an in-memory
fake. A chunk transaction yields a ``ChunkWriter`` when the per-store
advisory lock was acquired and ``None`` when another worker holds it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from src.orderflow.ingestion.schemas import (
    OrderUpsert,
    ProductUpsert,
    StoreContext,
    UpsertResult,
)


class ChunkWriter(ABC):
    """Writes performed inside one chunk transaction.

    Methods:
        upsert_order: Insert or merge an order keyed by (store_id, external_id).
        upsert_product: Insert or merge a product keyed by (store_id, sku).
        advance_cursor: Raise the source cursor to ``processed_through``; never
            moves it backwards.
    """

    @abstractmethod
    async def upsert_order(self, order: OrderUpsert) -> UpsertResult:
        """Upsert one order; UNCHANGED when the merge would not alter the row."""
        ...

    @abstractmethod
    async def upsert_product(self, product: ProductUpsert) -> UpsertResult:
        ...

    @abstractmethod
    async def advance_cursor(self, source_id: str, processed_through: int) -> None:
        ...



class IngestStore(ABC):
    """Persistence boundary of the ingestion engine."""

    @abstractmethod
    async def get_store_context(self, store_id: str) -> StoreContext | None:
        """Resolve store status, seller and the enabled source, or None."""
        ...

    @abstractmethod
    async def reset_cursor(self, source_id: str) -> None:
        ...

    @abstractmethod
    async def list_ingestible_store_ids(self) -> list[str]:
        """Active stores that have an enabled source."""
        ...

    @abstractmethod
    def chunk_transaction(self, store_id: str) -> AbstractAsyncContextManager[ChunkWriter | None]:
        """Open a transaction and try the store's advisory lock.

        Commits on normal exit, rolls back when the body raises. The lock is
        transaction scoped, so it is released either way.
        """
        ...
