"""Source fetcher: spreadsheet URL or uploaded file -> headers + rows.

Google Sheets links are expanded into several CSV export endpoints that are
tried in order (explicit gid first, then the first sheet), because sharing
settings decide which of them answers with data rather than a login page.
Any other URL is fetched as-is. Uploaded files are read from local storage
and dispatched on extension / content type (xlsx via openpyxl, everything
else as delimited text).

Parsing is forgiving: BOM stripped, delimiter sniffed among ``,`` ``;`` and
tab, first non-empty row taken as header, empty and duplicate headers
dropped, blank rows skipped, every cell trimmed.
"""

from __future__ import annotations

import asyncio
import csv
import io
import re
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import chardet
import httpx
import structlog
from openpyxl import load_workbook
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.orderflow.errors import SourceFetchError
from src.orderflow.ingestion.schemas import TabularData, UploadSource, UrlSource

logger = structlog.get_logger(__name__)

_SHEET_ID = re.compile(r"/spreadsheets/(?:u/\d+/)?d/([a-zA-Z0-9\-_]+)")
_GID = re.compile(r"gid=(\d+)")

REQUEST_HEADERS = {
    "accept": "text/csv, text/plain;q=0.9, */*;q=0.8",
    "user-agent": "Orderflow-Ingest/1.0",
}

_XLSX_CONTENT_TYPES = (
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
)
_CANDIDATE_DELIMITERS = [",", ";", "\t"]


# ── URL Handling ────────────────────────────────────────────────────────────


def extract_sheet_id_and_gid(url: str) -> tuple[str | None, str | None]:
    """Return ``(sheet_id, gid)`` from a Google Sheets link.

    The gid is read from the fragment first (``#gid=123``), then from the
    query string. Non-sheet URLs give ``(None, None)``.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return None, None
    match = _SHEET_ID.search(parsed.path or "")
    if not match:
        return None, None
    gid_match = _GID.search(parsed.fragment or "")
    gid = gid_match.group(1) if gid_match else None
    if gid is None:
        gid = (parse_qs(parsed.query).get("gid") or [None])[0]
    return match.group(1), gid


def build_candidate_urls(url: str) -> list[str]:
    """Ordered, de-duplicated export URLs to try for one source link."""
    sheet_id, gid = extract_sheet_id_and_gid(url)
    if not sheet_id:
        return [url]

    base = f"https://docs.google.com/spreadsheets/d/{sheet_id}"
    candidates: list[str] = []
    for endpoint in (
        f"{base}/export?format=csv",
        f"{base}/pub?output=csv",
        f"{base}/gviz/tq?tqx=out:csv",
    ):
        if gid:
            candidates.append(f"{endpoint}&gid={gid}")
        candidates.append(endpoint)
    return list(dict.fromkeys(candidates))


def looks_like_html(text: str) -> bool:
    """True for login / interstitial pages served instead of CSV."""
    head = text.lstrip()[:240].lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def _is_xlsx(name: str | None, content_type: str | None) -> bool:
    if name and Path(name.split("?", 1)[0]).suffix.lower() in (".xlsx", ".xlsm"):
        return True
    return bool(content_type) and any(ct in content_type for ct in _XLSX_CONTENT_TYPES)


# ── Decoding & Parsing ──────────────────────────────────────────────────────


def decode_bytes(raw: bytes) -> str:
    """Decode as UTF-8 (BOM aware), falling back to chardet detection."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        detected = chardet.detect(raw)
        encoding = detected.get("encoding") or "utf-8"
        logger.info(
            "ingest_encoding_detected",
            encoding=encoding,
            confidence=detected.get("confidence"),
        )
        return raw.decode(encoding, errors="replace")


def _first_non_empty(rows: list[list[str]]) -> list[str]:
    return next((r for r in rows if any(str(c).strip() for c in r)), [])


def _sniff_delimiter(text: str) -> str | None:
    try:
        return csv.Sniffer().sniff(text[:4096], delimiters=",;\t").delimiter
    except csv.Error:
        return None


def _split_rows(text: str) -> list[list[str]]:
    """Split delimited text, preferring the delimiter that yields columns."""
    sniffed = _sniff_delimiter(text)
    attempts = [d for d in [sniffed, *_CANDIDATE_DELIMITERS] if d]
    first_result: list[list[str]] | None = None
    for delimiter in dict.fromkeys(attempts):
        rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))
        if first_result is None:
            first_result = rows
        if len(_first_non_empty(rows)) > 1:
            return rows
    return first_result or []


def rows_to_tabular(rows: list[list[Any]]) -> TabularData:
    """Build headers and keyed rows from a raw grid.

    The first non-empty row is the header; empty headers and
    case-insensitive duplicates are dropped (first occurrence wins).
    """
    start = next(
        (i for i, r in enumerate(rows) if any(_cell(c) for c in r)),
        None,
    )
    if start is None:
        return TabularData()

    seen: set[str] = set()
    columns: list[tuple[int, str]] = []
    for idx, cell in enumerate(rows[start]):
        name = _cell(cell)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        columns.append((idx, name))

    records: list[dict[str, Any]] = []
    for raw in rows[start + 1 :]:
        if not any(_cell(c) for c in raw):
            continue
        records.append({
            name: _value(raw[idx]) if idx < len(raw) else ""
            for idx, name in columns
        })
    return TabularData(headers=[name for _, name in columns], rows=records)


def _cell(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _value(value: Any) -> Any:
    # xlsx cells keep their native type (numbers, datetimes) for the normalizers
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


def parse_csv_text(text: str) -> TabularData:
    if text.startswith("\ufeff"):
        text = text[1:]
    return rows_to_tabular(_split_rows(text))


def parse_xlsx_bytes(data: bytes, sheet: str | None = None) -> TabularData:
    """Read one worksheet (named, else the active one) from xlsx bytes."""
    wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        ws = wb[sheet] if sheet and sheet in wb.sheetnames else wb.active
        grid = [list(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()
    return rows_to_tabular(grid)


# ── Fetcher ─────────────────────────────────────────────────────────────────


def _should_retry(exc: BaseException) -> bool:
    return isinstance(exc, SourceFetchError) and exc.retryable


class SourceFetcher:
    """Load tabular data from an upload or a URL.

    Args:
        transport: Optional httpx transport (tests inject MockTransport).
        timeout: Per-request timeout in seconds.
        attempts: Attempts per candidate URL; only 429/5xx are retried.
        retry_wait: Base of the exponential backoff between attempts.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
        attempts: int = 3,
        retry_wait: float = 0.3,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._attempts = attempts
        self._retry_wait = retry_wait

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=REQUEST_HEADERS,
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def load(self, source: UploadSource | UrlSource, sheet: str | None = None) -> TabularData:
        """Dispatch on the source descriptor kind."""
        match source:
            case UploadSource():
                return await self.load_upload(source, sheet=sheet)
            case UrlSource():
                return await self.fetch_url(
                    source.url,
                    sheet=sheet,
                    name_hint=source.filename_hint,
                    content_type=source.content_type,
                )
            case _:
                raise SourceFetchError("unsupported_source", f"Unknown source: {source!r}")

    async def load_upload(self, source: UploadSource, sheet: str | None = None) -> TabularData:
        path = Path(source.path)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise SourceFetchError("upload_not_found", str(exc)) from exc

        name = source.original_name or path.name
        if _is_xlsx(name, source.content_type):
            table = parse_xlsx_bytes(data, sheet=sheet)
        else:
            table = parse_csv_text(decode_bytes(data))
        logger.info(
            "ingest_upload_loaded",
            file=name,
            rows=len(table.rows),
            headers=len(table.headers),
        )
        return table

    async def fetch_url(
        self,
        url: str,
        sheet: str | None = None,
        name_hint: str | None = None,
        content_type: str | None = None,
    ) -> TabularData:
        """Try each candidate export URL until one yields tabular data.

        Raises:
            SourceFetchError: ``sheet_or_gid_not_found`` when every candidate
                answered with HTML, otherwise the last ``http_error``.
        """
        last_error: SourceFetchError | None = None
        async with self._client() as client:
            for candidate in build_candidate_urls(url):
                try:
                    data, response_type = await self._get_with_retry(client, candidate)
                    if _is_xlsx(name_hint or candidate, content_type or response_type):
                        table = parse_xlsx_bytes(data, sheet=sheet)
                    else:
                        text = decode_bytes(data)
                        if looks_like_html(text):
                            raise SourceFetchError(
                                "sheet_or_gid_not_found",
                                "HTML response (likely permission or unpublished sheet)",
                            )
                        table = parse_csv_text(text)
                except SourceFetchError as exc:
                    logger.info(
                        "ingest_candidate_failed",
                        url=candidate,
                        code=exc.code,
                        status_code=exc.status_code,
                    )
                    last_error = exc
                    continue

                logger.info(
                    "ingest_source_fetched",
                    url=candidate,
                    rows=len(table.rows),
                    headers=len(table.headers),
                )
                return table

        raise last_error or SourceFetchError("sheet_or_gid_not_found")

    async def _get_with_retry(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._retry_wait, min=self._retry_wait, max=10),
            retry=retry_if_exception(_should_retry),
            reraise=True,
        ):
            with attempt:
                return await self._get_once(client, url)
        raise SourceFetchError("http_error", "failed_to_fetch")

    async def _get_once(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise SourceFetchError("http_error", str(exc) or type(exc).__name__) from exc
        if response.status_code >= 400:
            raise SourceFetchError(
                "http_error",
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content, response.headers.get("content-type", "")
