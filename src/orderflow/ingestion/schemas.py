"""Pydantic schemas for the ingestion pipeline.

Covers the source descriptor tagged union (``upload`` | ``url``), the
caller-supplied mapping override, the resolved column mapping, the tabular
payload produced by the fetcher, the store/source context consumed as an
ingestion precondition, the per-row upsert records and the run report.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Entity(str, Enum):
    """Target entity of an ingestion run."""

    ORDERS = "orders"
    PRODUCTS = "products"


# ── Source Descriptors ──────────────────────────────────────────────────────


class UploadSource(BaseModel):
    """A file previously uploaded to local storage."""

    type: Literal["upload"] = "upload"
    path: str
    original_name: str | None = None
    content_type: str | None = None


class UrlSource(BaseModel):
    """A remote spreadsheet export or a direct CSV/XLSX URL."""

    type: Literal["url"] = "url"
    url: str
    filename_hint: str | None = None
    content_type: str | None = None


IngestSource = Annotated[Union[UploadSource, UrlSource], Field(discriminator="type")]


# ── Mapping ─────────────────────────────────────────────────────────────────


class MappingOverride(BaseModel):
    """Caller-supplied mapping hints and run options.

    Attributes:
        entity: Target entity (orders or products).
        unique_key: Canonical field holding the upsert key.
        fields: canonical field -> source header, or a list of candidate
            headers where the first present one wins.
        max_rows: Cap on rows processed after the resume offset.
        dry_run: Resolve mapping and validate rows without writing.
        validate_only: Alias of dry_run kept for the manual trigger surface.
    """

    entity: Entity = Entity.ORDERS
    unique_key: str | None = None
    fields: dict[str, Union[str, list[str]]] = Field(default_factory=dict)
    max_rows: int | None = None
    dry_run: bool = False
    validate_only: bool = False

    @property
    def writes_disabled(self) -> bool:
        return self.dry_run or self.validate_only


class ColumnMapping(BaseModel):
    """Resolved mapping: canonical field -> source header, plus the key field."""

    model_config = ConfigDict(frozen=True)

    unique_key: str
    fields: dict[str, str]

    def apply(self, row: dict[str, Any]) -> dict[str, Any]:
        """Project a source row onto canonical field names."""
        return {dst: row.get(src) for dst, src in self.fields.items() if src}


class AISuggestion(BaseModel):
    """Mapping proposed by the language model, restricted to real headers."""

    fields: dict[str, str] = Field(default_factory=dict)
    unique_key: str | None = None
    confidence: float | None = None


# ── Tabular Data ────────────────────────────────────────────────────────────


class TabularData(BaseModel):
    """Parsed sheet: ordered headers and rows keyed by header."""

    headers: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)


# ── Store Context ───────────────────────────────────────────────────────────


class SourceConfig(BaseModel):
    """A store's enabled spreadsheet source and its cursor."""

    id: str
    url: str
    sheet_tab: str | None = None
    enabled: bool = True
    last_processed_row: int = 0
    column_mapping: dict[str, Any] | None = None


class StoreContext(BaseModel):
    """Resolved container context used as ingestion precondition."""

    store_id: str
    seller_id: str | None = None
    name: str = ""
    status: str = "active"
    source: SourceConfig | None = None

    @property
    def active(self) -> bool:
        return self.status == "active"


# ── Upsert Records ──────────────────────────────────────────────────────────


class OrderUpsert(BaseModel):
    """One normalized order row ready for upsert on (store_id, external_id)."""

    store_id: str
    seller_id: str | None = None
    external_id: str
    status: str
    total_amount: Decimal | None = None
    currency: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    city: str | None = None
    created_at: datetime | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class ProductUpsert(BaseModel):
    """One normalized product row ready for upsert on (store_id, sku)."""

    store_id: str
    sku: str
    title: str | None = None
    price: Decimal | None = None
    quantity: int | None = None
    description: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class UpsertResult(BaseModel):
    outcome: UpsertOutcome
    id: str | None = None


# ── Run Report ──────────────────────────────────────────────────────────────


class IngestReport(BaseModel):
    """Summary of one ingestion run, logged and returned to the job worker."""

    store_id: str
    entity: Entity
    total_rows: int = 0
    resume_from: int = 0
    cursor_reset: bool = False
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_missing_key: int = 0
    chunks_ok: int = 0
    chunks_locked: int = 0
    chunks_failed: int = 0
    dry_run: bool = False
    mapping: ColumnMapping | None = None
    new_order_ids: list[str] = Field(default_factory=list)


class PreflightReport(BaseModel):
    """Headers, row count, resolved mapping and a short preview."""

    store_id: str
    entity: Entity
    headers: list[str]
    total_rows: int
    mapping: ColumnMapping
    preview: list[dict[str, Any]]
