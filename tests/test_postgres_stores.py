"""SQL shape tests for the Postgres stores.

No database is needed: statements are captured from a mocked session and
compiled with the PostgreSQL dialect.

Covers:
- Order/product upserts: ON CONFLICT target, COALESCE merge, no-churn guard,
  insert/update/unchanged detection from RETURNING
- Cursor advance never moves backwards (GREATEST)
- Advisory lock busy yields None
- Metadata merge uses jsonb concatenation
- Order status normalization is guarded to blank statuses
- Decisions write decision_reason
- Non-UUID ids short-circuit lookups
"""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from src.orderflow.conversation.postgres import PostgresConversationStore
from src.orderflow.ingestion.postgres import PostgresIngestStore, _PostgresChunkWriter
from src.orderflow.ingestion.schemas import OrderUpsert, ProductUpsert, UpsertOutcome

STORE_ID = "6f1c3a52-8e0b-4f7e-9a55-3b8a0c1d2e4f"
ORDER_ID = "0b7e2d11-5c4a-4a8f-8d3e-7f6a5b4c3d2e"


def _sql(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect())).lower()


def _session(first=None, scalar=None) -> MagicMock:
    result = MagicMock()
    result.first.return_value = first
    result.scalar.return_value = scalar
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    return session


def _order(**overrides) -> OrderUpsert:
    values = {
        "store_id": STORE_ID,
        "external_id": "1001",
        "status": "new",
        "total_amount": Decimal("250.00"),
        "customer_phone": "+212612345678",
        "raw_payload": {"external_id": "1001"},
    }
    values.update(overrides)
    return OrderUpsert(**values)


# ── Chunk writer ─────────────────────────────────────────────────────────────


class TestChunkWriter:
    @pytest.mark.asyncio
    async def test_order_upsert_sql(self):
        session = _session(first=SimpleNamespace(id=ORDER_ID, inserted=True))

        result = await _PostgresChunkWriter(session).upsert_order(_order())

        assert result.outcome is UpsertOutcome.INSERTED
        assert result.id == ORDER_ID
        sql = _sql(session.execute.await_args.args[0])
        assert "on conflict (store_id, external_id) do update" in sql
        assert "coalesce(excluded.status, orders.status)" in sql
        assert "is distinct from" in sql
        assert "xmax = 0" in sql

    @pytest.mark.asyncio
    async def test_order_update_and_unchanged(self):
        updated = await _PostgresChunkWriter(
            _session(first=SimpleNamespace(id=ORDER_ID, inserted=False))
        ).upsert_order(_order())
        unchanged = await _PostgresChunkWriter(_session(first=None)).upsert_order(_order())

        assert updated.outcome is UpsertOutcome.UPDATED
        assert unchanged.outcome is UpsertOutcome.UNCHANGED
        assert unchanged.id is None

    @pytest.mark.asyncio
    async def test_product_upsert_conflict_target(self):
        session = _session(first=SimpleNamespace(id="p1", inserted=True))
        await _PostgresChunkWriter(session).upsert_product(
            ProductUpsert(store_id=STORE_ID, sku="TSHIRT-M", title="T-shirt", raw_payload={})
        )
        sql = _sql(session.execute.await_args.args[0])
        assert "on conflict (store_id, sku) do update" in sql
        assert "coalesce(excluded.price, products.price)" in sql

    @pytest.mark.asyncio
    async def test_cursor_advance_is_monotonic(self):
        session = _session()
        await _PostgresChunkWriter(session).advance_cursor(STORE_ID, 300)
        sql = _sql(session.execute.await_args.args[0])
        assert "greatest(store_sheets.last_processed_row" in sql


# ── Ingest store ─────────────────────────────────────────────────────────────


class TestIngestStore:
    @pytest.mark.asyncio
    async def test_lock_busy_yields_none(self):
        session = _session(scalar=False)
        session.begin = MagicMock(return_value=AsyncMock())

        async def factory():
            yield session

        async with PostgresIngestStore(factory).chunk_transaction(STORE_ID) as writer:
            assert writer is None
        assert "pg_try_advisory_xact_lock" in str(session.execute.await_args.args[0])

    @pytest.mark.asyncio
    async def test_lock_acquired_yields_writer(self):
        session = _session(scalar=True)
        session.begin = MagicMock(return_value=AsyncMock())

        async def factory():
            yield session

        async with PostgresIngestStore(factory).chunk_transaction(STORE_ID) as writer:
            assert isinstance(writer, _PostgresChunkWriter)

    @pytest.mark.asyncio
    async def test_invalid_store_id(self):
        factory = MagicMock()
        assert await PostgresIngestStore(factory).get_store_context("not-a-uuid") is None
        factory.assert_not_called()


# ── Conversation store ───────────────────────────────────────────────────────


class TestConversationStore:
    @pytest.mark.asyncio
    async def test_merge_metadata_concatenates_jsonb(self):
        session = _session()
        store = PostgresConversationStore(MagicMock(), session=session)

        await store.merge_metadata(ORDER_ID, {"state": "closed"}, status="closed")

        sql = _sql(session.execute.await_args.args[0])
        assert "coalesce(conversations.metadata" in sql
        assert "||" in sql
        assert "status=" in sql

    @pytest.mark.asyncio
    async def test_mark_order_new_only_touches_blank_status(self):
        session = _session()
        store = PostgresConversationStore(MagicMock(), session=session)

        await store.mark_order_new(ORDER_ID)

        sql = _sql(session.execute.await_args.args[0])
        assert "orders.status is null" in sql
        assert "trim(orders.status)" in sql

    @pytest.mark.asyncio
    async def test_apply_decision_writes_reason(self):
        session = _session()
        store = PostgresConversationStore(MagicMock(), session=session)

        await store.apply_decision(ORDER_ID, "processing", "ai", {"decision": "confirm"}, reason="CONFIRM")

        sql = _sql(session.execute.await_args.args[0])
        assert "decision_reason=" in sql
        assert "decision_by=" in sql

    @pytest.mark.asyncio
    async def test_bound_store_does_not_commit(self):
        session = _session()
        session.commit = AsyncMock()
        store = PostgresConversationStore(MagicMock(), session=session)

        await store.mark_order_new(ORDER_ID)

        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unbound_call_commits(self):
        session = _session()
        session.commit = AsyncMock()

        async def factory():
            yield session

        await PostgresConversationStore(factory).mark_order_new(ORDER_ID)
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_ids_short_circuit(self):
        store = PostgresConversationStore(MagicMock())
        assert await store.get_order("x", STORE_ID) is None
        assert await store.get_conversation(ORDER_ID, "y") is None
