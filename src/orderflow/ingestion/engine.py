"""Ingestion engine: fetch -> map -> normalize -> chunked idempotent upsert.

One run:

1. Resolve store context (must be active with an enabled source, unless an
   explicit one-off source is supplied)
2. Fetch all rows once
3. Compute the resume offset from the source cursor; a cursor past the row
   count means the sheet shrank or changed, so it resets to 0
4. Build the column mapping against the full row set
5. Process rows from the offset in fixed-size chunks, each in its own
   transaction under the store's advisory lock

A locked chunk is skipped and a failing chunk is logged; either way the run
continues, and later chunks stop advancing the cursor so the skipped rows
are picked up again by the next run. Upserts are keyed, so replaying rows
is safe.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog

from src.orderflow.core.cache import MemoCache
from src.orderflow.core.monitoring import ingest_chunks_total, ingest_rows_total
from src.orderflow.errors import IngestPreconditionError
from src.orderflow.ingestion.fetcher import SourceFetcher
from src.orderflow.ingestion.mapper import ColumnMapper
from src.orderflow.ingestion.normalize import (
    clean_text,
    coerce_number,
    detect_currency,
    extract_quantity,
    normalize_phone,
    normalize_sku,
    parse_date_loose,
    strip_empty_keys,
)
from src.orderflow.ingestion.schemas import (
    ColumnMapping,
    Entity,
    IngestReport,
    MappingOverride,
    OrderUpsert,
    PreflightReport,
    ProductUpsert,
    StoreContext,
    TabularData,
    UploadSource,
    UpsertOutcome,
    UrlSource,
)
from src.orderflow.ingestion.status import AllowedStatusProvider, StatusClassifier, StatusNormalizer
from src.orderflow.ingestion.store import ChunkWriter, IngestStore

logger = structlog.get_logger(__name__)

NewOrdersCallback = Callable[[str, list[str]], Awaitable[None]]

_CENTS = Decimal("0.01")
_ORDER_KEY_FALLBACKS = ("order_id", "id", "external_id", "external_key")
_PRODUCT_KEY_FALLBACKS = ("sku", "id", "product_id")
PREVIEW_ROWS = 5


def _chunks(rows: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]


def _stored_override(column_mapping: dict[str, Any] | None, entity: Entity) -> MappingOverride | None:
    """Saved ``store_sheets.column_mapping`` as an override, when it has fields."""
    if not column_mapping or not isinstance(column_mapping.get("fields"), dict):
        return None
    return MappingOverride(
        entity=entity,
        fields=column_mapping["fields"],
        unique_key=column_mapping.get("unique_key") or column_mapping.get("uniqueKey"),
    )


class _ChunkTally:
    """Row counters for one chunk, folded into the report only on commit."""

    def __init__(self) -> None:
        self.processed = 0
        self.inserted = 0
        self.updated = 0
        self.unchanged = 0
        self.skipped = 0
        self.new_order_ids: list[str] = []

    def fold_into(self, report: IngestReport) -> None:
        report.processed += self.processed
        report.inserted += self.inserted
        report.updated += self.updated
        report.unchanged += self.unchanged
        report.skipped_missing_key += self.skipped
        report.new_order_ids.extend(self.new_order_ids)


class IngestionEngine:
    """Run ingestion for one store.

    Args:
        store: Persistence boundary (Postgres in production).
        fetcher: Source fetcher for URLs and uploads.
        mapper: Column mapper (heuristic, optionally AI assisted).
        allowed_statuses: Provider of the allowed order status vocabulary.
        status_cache: Process-wide memo shared by every run's normalizer.
        status_classifier: Optional AI status classifier.
        chunk_size: Rows per chunk transaction.
        default_country_code: Prefix for local phone numbers.
        on_new_orders: Awaited with (store_id, order_ids) for orders inserted
            with status ``new`` after a run that wrote.
    """

    def __init__(
        self,
        store: IngestStore,
        fetcher: SourceFetcher,
        mapper: ColumnMapper,
        allowed_statuses: AllowedStatusProvider,
        status_cache: MemoCache | None = None,
        status_classifier: StatusClassifier | None = None,
        chunk_size: int = 300,
        default_country_code: str = "212",
        on_new_orders: NewOrdersCallback | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._mapper = mapper
        self._allowed_statuses = allowed_statuses
        self._status_cache = status_cache if status_cache is not None else MemoCache()
        self._status_classifier = status_classifier
        self._chunk_size = max(1, chunk_size)
        self._country_code = default_country_code
        self._on_new_orders = on_new_orders

    # ── Preconditions & Fetch ───────────────────────────────────────────────

    async def _resolve_context(self, store_id: str, one_off: bool) -> StoreContext:
        ctx = await self._store.get_store_context(store_id)
        if ctx is None:
            raise IngestPreconditionError(store_id, "store_not_found")
        if not ctx.active:
            raise IngestPreconditionError(store_id, f"store_{ctx.status}")
        if not one_off and (ctx.source is None or not ctx.source.enabled):
            raise IngestPreconditionError(store_id, "no_enabled_source")
        return ctx

    async def _fetch(
        self, ctx: StoreContext, source: UploadSource | UrlSource | None
    ) -> TabularData:
        if source is not None:
            return await self._fetcher.load(source)
        return await self._fetcher.fetch_url(ctx.source.url, sheet=ctx.source.sheet_tab)

    async def _build_mapping(
        self, ctx: StoreContext, table: TabularData, override: MappingOverride
    ) -> ColumnMapping:
        if not override.fields and ctx.source is not None:
            saved = _stored_override(ctx.source.column_mapping, override.entity)
            if saved is not None:
                override = saved.model_copy(update={"unique_key": override.unique_key or saved.unique_key})
        return await self._mapper.build(table.headers, table.rows, override.entity, override)

    # ── Public API ──────────────────────────────────────────────────────────

    async def preflight(
        self,
        store_id: str,
        source: UploadSource | UrlSource | None = None,
        mapping: MappingOverride | None = None,
    ) -> PreflightReport:
        """Fetch and map without writing; return headers, count and a preview."""
        override = mapping or MappingOverride()
        ctx = await self._resolve_context(store_id, one_off=source is not None)
        table = await self._fetch(ctx, source)
        column_mapping = await self._build_mapping(ctx, table, override)
        return PreflightReport(
            store_id=store_id,
            entity=override.entity,
            headers=table.headers,
            total_rows=len(table.rows),
            mapping=column_mapping,
            preview=[column_mapping.apply(r) for r in table.rows[:PREVIEW_ROWS]],
        )

    async def run(
        self,
        store_id: str,
        source: UploadSource | UrlSource | None = None,
        mapping: MappingOverride | None = None,
    ) -> IngestReport:
        """Ingest a store's source (or a one-off explicit source).

        Raises:
            IngestPreconditionError: Store missing, inactive or without source.
            SourceFetchError: No candidate URL produced tabular data.
        """
        started = time.perf_counter()
        override = mapping or MappingOverride()
        entity = override.entity
        one_off = source is not None

        ctx = await self._resolve_context(store_id, one_off)
        table = await self._fetch(ctx, source)
        total = len(table.rows)

        report = IngestReport(
            store_id=store_id,
            entity=entity,
            total_rows=total,
            dry_run=override.writes_disabled,
        )

        cursor = 0 if one_off else ctx.source.last_processed_row
        if cursor > total:
            logger.info(
                "ingest_cursor_reset",
                store_id=store_id,
                cursor=cursor,
                total_rows=total,
            )
            if not override.writes_disabled:
                await self._store.reset_cursor(ctx.source.id)
            report.cursor_reset = True
            cursor = 0
        report.resume_from = cursor

        column_mapping = await self._build_mapping(ctx, table, override)
        report.mapping = column_mapping
        logger.info(
            "ingest_mapping_resolved",
            store_id=store_id,
            entity=entity.value,
            unique_key=column_mapping.unique_key,
            fields=column_mapping.fields,
        )

        pending = table.rows[cursor:]
        if override.max_rows:
            pending = pending[: override.max_rows]
        if not pending:
            logger.info("ingest_no_rows", store_id=store_id, cursor=cursor, total_rows=total)
            return report

        if override.writes_disabled:
            self._validate_only(report, pending, column_mapping)
            return report

        allowed = await self._allowed_statuses.get_allowed()
        normalizer = StatusNormalizer(allowed, self._status_cache, self._status_classifier)

        advance_cursor = not one_off
        for index, chunk in enumerate(_chunks(pending, self._chunk_size)):
            offset = cursor + index * self._chunk_size
            committed = await self._run_chunk(
                ctx, chunk, offset, column_mapping, normalizer, report,
                advance_cursor=advance_cursor,
            )
            # Rows after a skipped chunk are written but stay behind the cursor.
            if not committed:
                advance_cursor = False

        logger.info(
            "ingest_run_completed",
            store_id=store_id,
            entity=entity.value,
            total_rows=total,
            resume_from=cursor,
            processed=report.processed,
            inserted=report.inserted,
            updated=report.updated,
            unchanged=report.unchanged,
            skipped_missing_key=report.skipped_missing_key,
            chunks_ok=report.chunks_ok,
            chunks_locked=report.chunks_locked,
            chunks_failed=report.chunks_failed,
            dur_ms=int((time.perf_counter() - started) * 1000),
        )

        if self._on_new_orders is not None and report.new_order_ids:
            await self._on_new_orders(store_id, list(report.new_order_ids))
        return report

    # ── Chunk Processing ────────────────────────────────────────────────────

    async def _run_chunk(
        self,
        ctx: StoreContext,
        chunk: list[dict[str, Any]],
        offset: int,
        column_mapping: ColumnMapping,
        normalizer: StatusNormalizer,
        report: IngestReport,
        advance_cursor: bool,
    ) -> bool:
        """Process one chunk; return True when it committed."""
        tally = _ChunkTally()
        try:
            async with self._store.chunk_transaction(ctx.store_id) as writer:
                if writer is None:
                    report.chunks_locked += 1
                    ingest_chunks_total.labels(result="locked").inc()
                    logger.info(
                        "ingest_chunk_locked",
                        store_id=ctx.store_id,
                        offset=offset,
                        rows=len(chunk),
                    )
                    return False

                for i, row in enumerate(chunk):
                    await self._write_row(
                        ctx, writer, row, offset + i, report.entity, column_mapping, normalizer, tally
                    )

                if advance_cursor:
                    await writer.advance_cursor(ctx.source.id, offset + len(chunk))
        except Exception as exc:
            report.chunks_failed += 1
            ingest_chunks_total.labels(result="failed").inc()
            logger.error(
                "ingest_chunk_failed",
                store_id=ctx.store_id,
                offset=offset,
                rows=len(chunk),
                error=str(exc),
                exc_info=True,
            )
            return False

        tally.fold_into(report)
        report.chunks_ok += 1
        ingest_chunks_total.labels(result="ok").inc()
        ingest_rows_total.labels(entity=report.entity.value, result="upserted").inc(tally.processed)
        if tally.skipped:
            ingest_rows_total.labels(entity=report.entity.value, result="skipped").inc(tally.skipped)
        logger.info(
            "ingest_chunk_ok",
            store_id=ctx.store_id,
            offset=offset,
            rows=len(chunk),
            inserted=tally.inserted,
            updated=tally.updated,
            unchanged=tally.unchanged,
        )
        return True

    async def _write_row(
        self,
        ctx: StoreContext,
        writer: ChunkWriter,
        row: dict[str, Any],
        row_index: int,
        entity: Entity,
        column_mapping: ColumnMapping,
        normalizer: StatusNormalizer,
        tally: _ChunkTally,
    ) -> None:
        orders = entity is Entity.ORDERS
        rec = column_mapping.apply(row)
        key = self._unique_value(rec, column_mapping.unique_key, orders)
        if not key:
            tally.skipped += 1
            logger.warning(
                f"{entity.value}_missing_unique_key_row_skipped",
                store_id=ctx.store_id,
                row_index=row_index,
                unique_key=column_mapping.unique_key,
            )
            return

        payload = strip_empty_keys({**row, **rec})
        if orders:
            order = await self._order_upsert(ctx, key, rec, payload, normalizer)
            result = await writer.upsert_order(order)
            if result.outcome is UpsertOutcome.INSERTED and result.id and order.status == "new":
                tally.new_order_ids.append(result.id)
        else:
            result = await writer.upsert_product(self._product_upsert(ctx, key, rec, payload))

        tally.processed += 1
        if result.outcome is UpsertOutcome.INSERTED:
            tally.inserted += 1
        elif result.outcome is UpsertOutcome.UPDATED:
            tally.updated += 1
        else:
            tally.unchanged += 1

    # ── Row Builders ────────────────────────────────────────────────────────

    @staticmethod
    def _unique_value(rec: dict[str, Any], unique_key: str, orders: bool) -> str | None:
        fallbacks = _ORDER_KEY_FALLBACKS if orders else _PRODUCT_KEY_FALLBACKS
        for field in (unique_key, *fallbacks):
            value = clean_text(rec.get(field))
            if value:
                return value if orders else normalize_sku(value)
        return None

    async def _order_upsert(
        self,
        ctx: StoreContext,
        key: str,
        rec: dict[str, Any],
        payload: dict[str, Any],
        normalizer: StatusNormalizer,
    ) -> OrderUpsert:
        status = await normalizer.normalize(rec.get("status"))
        amount_raw = rec.get("total_amount")
        total = coerce_number(amount_raw)
        phone = normalize_phone(rec.get("customer_phone"), self._country_code)

        payload["status"] = status
        if phone:
            payload["customer_phone"] = phone

        return OrderUpsert(
            store_id=ctx.store_id,
            seller_id=ctx.seller_id,
            external_id=key,
            status=status,
            total_amount=total.quantize(_CENTS) if total is not None else None,
            currency=detect_currency(amount_raw),
            customer_name=clean_text(rec.get("customer_name")),
            customer_phone=phone,
            customer_email=clean_text(rec.get("customer_email")),
            city=clean_text(rec.get("city")),
            created_at=parse_date_loose(rec.get("created_at")) or datetime.now(timezone.utc),
            raw_payload=payload,
        )

    @staticmethod
    def _product_upsert(
        ctx: StoreContext, sku: str, rec: dict[str, Any], payload: dict[str, Any]
    ) -> ProductUpsert:
        price = coerce_number(rec.get("price"))
        return ProductUpsert(
            store_id=ctx.store_id,
            sku=sku,
            title=clean_text(rec.get("title")),
            price=price.quantize(_CENTS) if price is not None else None,
            quantity=extract_quantity(rec.get("quantity")),
            description=clean_text(rec.get("description")),
            raw_payload=payload,
        )

    # ── Dry Run ─────────────────────────────────────────────────────────────

    def _validate_only(
        self,
        report: IngestReport,
        rows: list[dict[str, Any]],
        column_mapping: ColumnMapping,
    ) -> None:
        orders = report.entity is Entity.ORDERS
        for row in rows:
            if self._unique_value(column_mapping.apply(row), column_mapping.unique_key, orders):
                report.processed += 1
            else:
                report.skipped_missing_key += 1
        logger.info(
            "ingest_dry_run_completed",
            store_id=report.store_id,
            entity=report.entity.value,
            valid=report.processed,
            skipped_missing_key=report.skipped_missing_key,
        )
