"""Spreadsheet ingestion: source fetch, column mapping, value normalization
and chunked idempotent upserts with a resumable per-source cursor.

Exports:
    IngestionEngine: Runs fetch -> map -> normalize -> upsert for one store.
    ColumnMapper: Heuristic (optionally AI assisted) header mapping.
    SourceFetcher: Google Sheets / CSV / XLSX loader.
    StatusNormalizer: Free-text status -> allowed status vocabulary.
"""

from src.orderflow.ingestion.engine import IngestionEngine
from src.orderflow.ingestion.fetcher import SourceFetcher
from src.orderflow.ingestion.mapper import ColumnMapper
from src.orderflow.ingestion.status import StatusNormalizer

__all__ = [
    "ColumnMapper",
    "IngestionEngine",
    "SourceFetcher",
    "StatusNormalizer",
]
