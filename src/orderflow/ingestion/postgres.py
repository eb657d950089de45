"""PostgreSQL ingestion store.

Chunk writes run in one transaction guarded by
``pg_try_advisory_xact_lock(namespace, hashtext(store_id))``: non-blocking,
and released by Postgres when the transaction ends.

Upserts use ``INSERT .. ON CONFLICT DO UPDATE`` with:
- ``COALESCE(excluded.col, table.col)`` so null incoming values keep the
  stored value
- a ``WHERE .. IS DISTINCT FROM ..`` guard so identical input writes nothing
- ``RETURNING id, (xmax = 0)`` to tell inserts from updates; no returned row
  means the guard suppressed the update (unchanged)

The cursor is written as ``GREATEST(stored, target)`` with an absolute
target, so it only moves forward.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import func, literal_column, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.orderflow.core.database import as_uuid
from src.orderflow.ingestion.schemas import (
    OrderUpsert,
    ProductUpsert,
    SourceConfig,
    StoreContext,
    UpsertOutcome,
    UpsertResult,
)
from src.orderflow.ingestion.store import ChunkWriter, IngestStore
from src.orderflow.models.commerce import OrderModel, ProductModel
from src.orderflow.models.store import StoreModel, StoreSourceModel

logger = structlog.get_logger(__name__)

ADVISORY_LOCK_NAMESPACE = 424242

_ORDER_MERGE_COLUMNS = (
    "status",
    "total_amount",
    "currency",
    "customer_name",
    "customer_phone",
    "customer_email",
    "city",
)
_PRODUCT_MERGE_COLUMNS = ("title", "price", "quantity", "description")


def _merge_clause(model: Any, stmt: Any, columns: tuple[str, ...]) -> tuple[dict, Any]:
    """Build the ON CONFLICT SET mapping and its no-churn WHERE guard."""
    excluded = stmt.excluded
    set_: dict[str, Any] = {}
    changed = []
    for name in columns:
        current = getattr(model, name)
        merged = func.coalesce(getattr(excluded, name), current)
        set_[name] = merged
        changed.append(merged.is_distinct_from(current))
    set_["raw_payload"] = excluded.raw_payload
    changed.append(model.raw_payload.is_distinct_from(excluded.raw_payload))
    set_["updated_at"] = func.now()
    return set_, or_(*changed)


def _result_from_row(row: Any) -> UpsertResult:
    if row is None:
        return UpsertResult(outcome=UpsertOutcome.UNCHANGED)
    outcome = UpsertOutcome.INSERTED if row.inserted else UpsertOutcome.UPDATED
    return UpsertResult(outcome=outcome, id=str(row.id))


class _PostgresChunkWriter(ChunkWriter):
    """Writes bound to the session of an open chunk transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert_order(self, order: OrderUpsert) -> UpsertResult:
        values = {
            "store_id": as_uuid(order.store_id),
            "seller_id": as_uuid(order.seller_id),
            "external_id": order.external_id,
            "status": order.status,
            "total_amount": order.total_amount,
            "currency": order.currency,
            "customer_name": order.customer_name,
            "customer_phone": order.customer_phone,
            "customer_email": order.customer_email,
            "city": order.city,
            "raw_payload": order.raw_payload,
        }
        if order.created_at is not None:
            values["created_at"] = order.created_at

        stmt = pg_insert(OrderModel).values(**values)
        set_, where = _merge_clause(OrderModel, stmt, _ORDER_MERGE_COLUMNS)
        stmt = stmt.on_conflict_do_update(
            index_elements=[OrderModel.store_id, OrderModel.external_id],
            set_=set_,
            where=where,
        ).returning(OrderModel.id, literal_column("(xmax = 0)").label("inserted"))

        result = await self._session.execute(stmt)
        return _result_from_row(result.first())

    async def upsert_product(self, product: ProductUpsert) -> UpsertResult:
        stmt = pg_insert(ProductModel).values(
            store_id=as_uuid(product.store_id),
            sku=product.sku,
            title=product.title,
            price=product.price,
            quantity=product.quantity,
            description=product.description,
            raw_payload=product.raw_payload,
        )
        set_, where = _merge_clause(ProductModel, stmt, _PRODUCT_MERGE_COLUMNS)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProductModel.store_id, ProductModel.sku],
            set_=set_,
            where=where,
        ).returning(ProductModel.id, literal_column("(xmax = 0)").label("inserted"))

        result = await self._session.execute(stmt)
        return _result_from_row(result.first())

    async def advance_cursor(self, source_id: str, processed_through: int) -> None:
        # Overlapping runs may commit the same chunk twice
        await self._session.execute(
            update(StoreSourceModel)
            .where(StoreSourceModel.id == as_uuid(source_id))
            .values(
                last_processed_row=func.greatest(StoreSourceModel.last_processed_row, processed_through),
                updated_at=func.now(),
            )
        )


class PostgresIngestStore(IngestStore):
    """Ingestion store backed by the async SQLAlchemy engine.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_store_context(self, store_id: str) -> StoreContext | None:
        sid = as_uuid(store_id)
        if sid is None:
            return None
        async for session in self._session_factory():
            store = await session.get(StoreModel, sid)
            if store is None:
                return None
            source_row = (
                await session.execute(
                    select(StoreSourceModel)
                    .where(StoreSourceModel.store_id == sid, StoreSourceModel.enabled.is_(True))
                    .limit(1)
                )
            ).scalar_one_or_none()

            source = None
            if source_row is not None:
                source = SourceConfig(
                    id=str(source_row.id),
                    url=source_row.gsheet_url,
                    sheet_tab=source_row.sheet_tab,
                    enabled=source_row.enabled,
                    last_processed_row=source_row.last_processed_row or 0,
                    column_mapping=source_row.column_mapping,
                )
            return StoreContext(
                store_id=str(store.id),
                seller_id=str(store.seller_id) if store.seller_id else None,
                name=store.name,
                status=store.status,
                source=source,
            )
        return None

    async def reset_cursor(self, source_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(StoreSourceModel)
                .where(StoreSourceModel.id == as_uuid(source_id))
                .values(last_processed_row=0, updated_at=func.now())
            )
            await session.commit()

    async def list_ingestible_store_ids(self) -> list[str]:
        async for session in self._session_factory():
            rows = await session.execute(
                select(StoreModel.id)
                .where(
                    StoreModel.status == "active",
                    StoreModel.id.in_(
                        select(StoreSourceModel.store_id).where(StoreSourceModel.enabled.is_(True))
                    ),
                )
                .order_by(StoreModel.created_at)
            )
            return [str(r) for r in rows.scalars().all()]
        return []

    @asynccontextmanager
    async def chunk_transaction(self, store_id: str) -> AsyncGenerator[ChunkWriter | None, None]:
        async for session in self._session_factory():
            async with session.begin():
                acquired = (
                    await session.execute(
                        text("SELECT pg_try_advisory_xact_lock(:ns, hashtext(:key))"),
                        {"ns": ADVISORY_LOCK_NAMESPACE, "key": str(store_id)},
                    )
                ).scalar()
                if not acquired:
                    logger.info("ingest_lock_busy", store_id=store_id)
                    yield None
                    return
                yield _PostgresChunkWriter(session)
            return
