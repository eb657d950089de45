"""Tests for the ingestion engine.

Covers:
- French sheet ingest: amount, status projection, phone normalization
- Cursor resume, advance and reset when the sheet shrank
- Overlapping runs never push the cursor past the sheet
- Idempotent re-runs (unchanged) and in-place updates
- Locked and failing chunks: run continues, cursor stops advancing
- Rows missing the unique key skipped and counted
- Dry run / validate-only, max_rows, preflight
- Preconditions (missing/inactive store, no source, one-off source)
- New-order callback and saved column mapping
- Products entity
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.orderflow.errors import IngestPreconditionError
from src.orderflow.ingestion.engine import IngestionEngine
from src.orderflow.ingestion.mapper import ColumnMapper
from src.orderflow.ingestion.schemas import Entity, MappingOverride, UrlSource
from src.orderflow.ingestion.status import StaticAllowedStatuses
from tests.fakes import InMemoryIngestStore, StubFetcher, make_table

HEADERS = ["Order ID", "Statut", "Montant", "Téléphone"]
ONE_OFF = UrlSource(url="https://example.com/orders.csv")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _rows(n: int, status: str = "confirmé") -> list[list[str]]:
    return [[str(i), status, f"{i}0,50", f"06000000{i:02d}"] for i in range(1, n + 1)]


def _engine(store: InMemoryIngestStore, rows, headers=HEADERS, **kwargs) -> IngestionEngine:
    return IngestionEngine(
        store=store,
        fetcher=StubFetcher(make_table(headers, rows)),
        mapper=ColumnMapper(),
        allowed_statuses=StaticAllowedStatuses(),
        **kwargs,
    )


def _order(store: InMemoryIngestStore, external_id: str, store_id: str = "store-1") -> dict:
    return store.orders[(store_id, external_id)]


# ── Row Normalization ────────────────────────────────────────────────────────


class TestOrderRows:
    @pytest.mark.asyncio
    async def test_french_sheet_row(self, ingest_store):
        ingest_store.add_store()
        engine = _engine(ingest_store, [["1001", "confirmé", "199,90", "0612345678"]])

        report = await engine.run("store-1")

        assert report.inserted == 1
        assert report.processed == 1
        assert report.mapping.unique_key == "order_id"
        order = _order(ingest_store, "1001")
        assert order["total_amount"] == Decimal("199.90")
        assert order["status"] == "processing"
        assert order["customer_phone"] == "+212612345678"
        assert order["raw_payload"]["customer_phone"] == "+212612345678"
        assert order["raw_payload"]["status"] == "processing"
        assert order["seller_id"] == "seller-1"

    @pytest.mark.asyncio
    async def test_currency_and_optional_fields(self, ingest_store):
        ingest_store.add_store()
        headers = ["Order ID", "Total", "Nom complet", "Ville", "Date de commande"]
        engine = _engine(ingest_store, [["A1", "1.234,50 DH", " Amina  B ", "Fès", "05/03/2024"]], headers=headers)

        await engine.run("store-1")

        order = _order(ingest_store, "A1")
        assert order["total_amount"] == Decimal("1234.50")
        assert order["currency"] == "MAD"
        assert order["customer_name"] == "Amina B"
        assert order["city"] == "Fès"
        assert order["created_at"].day == 5 and order["created_at"].month == 3
        assert order["status"] == "new"

    @pytest.mark.asyncio
    async def test_missing_key_rows_skipped(self, ingest_store):
        ingest_store.add_store()
        rows = [["1", "ok", "1", ""], ["", "ok", "2", ""], ["  ", "ok", "3", ""]]
        report = await _engine(ingest_store, rows).run("store-1")

        assert report.processed == 1
        assert report.skipped_missing_key == 2
        assert ingest_store.cursor() == 3


# ── Cursor ───────────────────────────────────────────────────────────────────


class TestCursor:
    @pytest.mark.asyncio
    async def test_resumes_from_cursor(self, ingest_store):
        ingest_store.add_store(cursor=2)
        report = await _engine(ingest_store, _rows(5)).run("store-1")

        assert report.resume_from == 2
        assert report.processed == 3
        assert sorted(k for _, k in ingest_store.orders) == ["3", "4", "5"]
        assert ingest_store.cursor() == 5

    @pytest.mark.asyncio
    async def test_cursor_equal_to_rows_is_a_noop(self, ingest_store):
        ingest_store.add_store(cursor=3)
        report = await _engine(ingest_store, _rows(3)).run("store-1")

        assert report.processed == 0
        assert not report.cursor_reset
        assert ingest_store.transactions == 0

    @pytest.mark.asyncio
    async def test_cursor_past_end_resets(self, ingest_store):
        ingest_store.add_store(cursor=10)
        report = await _engine(ingest_store, _rows(3)).run("store-1")

        assert report.cursor_reset
        assert report.resume_from == 0
        assert report.processed == 3
        assert ingest_store.resets == ["src-store-1"]
        assert ingest_store.cursor() == 3

    @pytest.mark.asyncio
    async def test_one_off_source_leaves_cursor(self, ingest_store):
        ingest_store.add_store(cursor=1)
        report = await _engine(ingest_store, _rows(3)).run("store-1", source=ONE_OFF)

        assert report.resume_from == 0
        assert report.processed == 3
        assert ingest_store.cursor() == 1

    @pytest.mark.asyncio
    async def test_overlapping_runs_do_not_overshoot(self, ingest_store):
        ingest_store.add_store()
        stale = await ingest_store.get_store_context("store-1")

        await _engine(ingest_store, _rows(5)).run("store-1")
        # Second run read the cursor before the first one committed
        ingest_store.get_store_context = AsyncMock(return_value=stale)
        report = await _engine(ingest_store, _rows(5)).run("store-1")

        assert report.resume_from == 0
        assert report.unchanged == 5
        assert ingest_store.cursor() == 5


# ── Idempotence ──────────────────────────────────────────────────────────────


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_rerun_is_unchanged(self, ingest_store):
        ingest_store.add_store()
        engine = _engine(ingest_store, _rows(3))

        first = await engine.run("store-1", source=ONE_OFF)
        second = await engine.run("store-1", source=ONE_OFF)

        assert first.inserted == 3
        assert (second.inserted, second.updated, second.unchanged) == (0, 0, 3)
        assert len(ingest_store.orders) == 3

    @pytest.mark.asyncio
    async def test_changed_row_updates_in_place(self, ingest_store):
        ingest_store.add_store()
        await _engine(ingest_store, _rows(2)).run("store-1", source=ONE_OFF)

        changed = _rows(2)
        changed[1][2] = "999"
        report = await _engine(ingest_store, changed).run("store-1", source=ONE_OFF)

        assert (report.inserted, report.updated, report.unchanged) == (0, 1, 1)
        assert _order(ingest_store, "2")["total_amount"] == Decimal("999.00")

    @pytest.mark.asyncio
    async def test_empty_cell_does_not_erase_value(self, ingest_store):
        ingest_store.add_store()
        await _engine(ingest_store, [["1", "ok", "50", "0611111111"]]).run("store-1", source=ONE_OFF)
        await _engine(ingest_store, [["1", "ok", "50", ""]]).run("store-1", source=ONE_OFF)

        assert _order(ingest_store, "1")["customer_phone"] == "+212611111111"


# ── Chunks ───────────────────────────────────────────────────────────────────


class TestChunks:
    @pytest.mark.asyncio
    async def test_locked_chunk_skipped_and_cursor_held(self, ingest_store):
        ingest_store.add_store()
        ingest_store.locked_transactions = {2}
        report = await _engine(ingest_store, _rows(5), chunk_size=2).run("store-1")

        assert (report.chunks_ok, report.chunks_locked, report.chunks_failed) == (2, 1, 0)
        assert report.processed == 3
        assert sorted(k for _, k in ingest_store.orders) == ["1", "2", "5"]
        assert ingest_store.cursor() == 2

    @pytest.mark.asyncio
    async def test_failing_chunk_rolls_back_and_run_continues(self, ingest_store):
        ingest_store.add_store()
        ingest_store.failing_keys = {"4"}
        report = await _engine(ingest_store, _rows(5), chunk_size=2).run("store-1")

        assert (report.chunks_ok, report.chunks_failed) == (2, 1)
        assert report.processed == 3
        assert sorted(k for _, k in ingest_store.orders) == ["1", "2", "5"]
        assert ingest_store.cursor() == 2

    @pytest.mark.asyncio
    async def test_skipped_rows_picked_up_next_run(self, ingest_store):
        ingest_store.add_store()
        ingest_store.locked_transactions = {1}
        engine = _engine(ingest_store, _rows(3), chunk_size=2)

        await engine.run("store-1")
        assert ingest_store.cursor() == 0

        report = await engine.run("store-1")
        assert report.inserted == 2
        assert report.unchanged == 1
        assert ingest_store.cursor() == 3


# ── Run Options ──────────────────────────────────────────────────────────────


class TestRunOptions:
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, ingest_store):
        ingest_store.add_store(cursor=10)
        rows = _rows(3) + [["", "ok", "1", ""]]
        report = await _engine(ingest_store, rows).run("store-1", mapping=MappingOverride(dry_run=True))

        assert report.dry_run
        assert report.cursor_reset
        assert report.processed == 3
        assert report.skipped_missing_key == 1
        assert ingest_store.orders == {}
        assert ingest_store.resets == []
        assert ingest_store.transactions == 0

    @pytest.mark.asyncio
    async def test_validate_only_is_dry_run(self, ingest_store):
        ingest_store.add_store()
        report = await _engine(ingest_store, _rows(2)).run(
            "store-1", mapping=MappingOverride(validate_only=True)
        )
        assert report.dry_run
        assert ingest_store.orders == {}

    @pytest.mark.asyncio
    async def test_max_rows(self, ingest_store):
        ingest_store.add_store()
        report = await _engine(ingest_store, _rows(5)).run("store-1", mapping=MappingOverride(max_rows=2))

        assert report.processed == 2
        assert ingest_store.cursor() == 2

    @pytest.mark.asyncio
    async def test_saved_column_mapping_used(self, ingest_store):
        headers = HEADERS + ["Tel 2"]
        ingest_store.add_store(column_mapping={"fields": {"customer_phone": "Tel 2"}})
        rows = [["1", "ok", "10", "0611111111", "0622222222"]]
        report = await _engine(ingest_store, rows, headers=headers).run("store-1")

        assert report.mapping.fields["customer_phone"] == "Tel 2"
        assert _order(ingest_store, "1")["customer_phone"] == "+212622222222"

    @pytest.mark.asyncio
    async def test_products_entity(self, ingest_store):
        ingest_store.add_store()
        headers = ["SKU", "Désignation", "Prix", "Qté"]
        rows = [["ab 1", "Caftan", "350,00", "3 pcs"]]
        report = await _engine(ingest_store, rows, headers=headers).run(
            "store-1", mapping=MappingOverride(entity=Entity.PRODUCTS)
        )

        assert report.entity is Entity.PRODUCTS
        product = ingest_store.products[("store-1", "AB-1")]
        assert product["price"] == Decimal("350.00")
        assert product["quantity"] == 3
        assert ingest_store.orders == {}


# ── New Orders Callback ──────────────────────────────────────────────────────


class TestNewOrders:
    @pytest.mark.asyncio
    async def test_callback_gets_new_status_inserts_only(self, ingest_store):
        ingest_store.add_store()
        callback = AsyncMock()
        rows = [["1", "", "10", ""], ["2", "confirmé", "10", ""], ["3", "nouveau", "10", ""]]
        report = await _engine(ingest_store, rows, on_new_orders=callback).run("store-1")

        expected = [_order(ingest_store, "1")["id"], _order(ingest_store, "3")["id"]]
        assert report.new_order_ids == expected
        callback.assert_awaited_once_with("store-1", expected)

    @pytest.mark.asyncio
    async def test_callback_not_called_on_rerun(self, ingest_store):
        ingest_store.add_store()
        callback = AsyncMock()
        engine = _engine(ingest_store, [["1", "", "10", ""]], on_new_orders=callback)

        await engine.run("store-1", source=ONE_OFF)
        await engine.run("store-1", source=ONE_OFF)

        assert callback.await_count == 1


# ── Preconditions & Preflight ────────────────────────────────────────────────


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_missing_store(self, ingest_store):
        with pytest.raises(IngestPreconditionError) as exc_info:
            await _engine(ingest_store, _rows(1)).run("nope")
        assert exc_info.value.reason == "store_not_found"

    @pytest.mark.asyncio
    async def test_inactive_store(self, ingest_store):
        ingest_store.add_store(status="paused")
        with pytest.raises(IngestPreconditionError) as exc_info:
            await _engine(ingest_store, _rows(1)).run("store-1")
        assert exc_info.value.reason == "store_paused"

    @pytest.mark.asyncio
    async def test_no_source(self, ingest_store):
        ingest_store.add_store(with_source=False)
        with pytest.raises(IngestPreconditionError) as exc_info:
            await _engine(ingest_store, _rows(1)).run("store-1")
        assert exc_info.value.reason == "no_enabled_source"

    @pytest.mark.asyncio
    async def test_one_off_source_without_configured_source(self, ingest_store):
        ingest_store.add_store(with_source=False)
        report = await _engine(ingest_store, _rows(2)).run("store-1", source=ONE_OFF)
        assert report.inserted == 2

    @pytest.mark.asyncio
    async def test_preflight(self, ingest_store):
        ingest_store.add_store()
        report = await _engine(ingest_store, _rows(7)).preflight("store-1")

        assert report.headers == HEADERS
        assert report.total_rows == 7
        assert report.mapping.fields["status"] == "Statut"
        assert len(report.preview) == 5
        assert report.preview[0]["order_id"] == "1"
        assert ingest_store.orders == {}
