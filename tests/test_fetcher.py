"""Tests for the source fetcher and tabular parsing.

Covers:
- Google Sheets link expansion (gid from fragment/query, candidate order)
- HTML interstitials treated as a miss and the next candidate tried
- Retry on 5xx, no retry on 404
- Delimiter sniffing (comma, semicolon, tab), BOM, non-UTF-8 bytes
- Header hygiene (empty/duplicate headers), blank rows, trimming
- xlsx parsing via openpyxl for URLs and uploads
"""

from __future__ import annotations

import io
from collections import Counter

import httpx
import pytest
from openpyxl import Workbook

from src.orderflow.errors import SourceFetchError
from src.orderflow.ingestion.fetcher import (
    SourceFetcher,
    build_candidate_urls,
    decode_bytes,
    extract_sheet_id_and_gid,
    looks_like_html,
    parse_csv_text,
    parse_xlsx_bytes,
)
from src.orderflow.ingestion.schemas import UploadSource, UrlSource

SHEET_URL = "https://docs.google.com/spreadsheets/d/abc123/edit#gid=42"
EXPORT_GID = "https://docs.google.com/spreadsheets/d/abc123/export?format=csv&gid=42"
EXPORT_FIRST = "https://docs.google.com/spreadsheets/d/abc123/export?format=csv"
CSV_BODY = "Order ID,Statut,Montant\n1001,confirmé,\"199,90\"\n"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _fetcher(handler) -> SourceFetcher:
    return SourceFetcher(transport=httpx.MockTransport(handler), attempts=3, retry_wait=0)


def _xlsx_bytes(rows: list[list]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ── URL Expansion ────────────────────────────────────────────────────────────


class TestCandidateUrls:
    def test_sheet_id_and_gid_from_fragment(self):
        assert extract_sheet_id_and_gid(SHEET_URL) == ("abc123", "42")

    def test_gid_from_query(self):
        url = "https://docs.google.com/spreadsheets/d/abc123/edit?gid=7"
        assert extract_sheet_id_and_gid(url) == ("abc123", "7")

    def test_non_sheet_url(self):
        assert extract_sheet_id_and_gid("https://example.com/orders.csv") == (None, None)
        assert build_candidate_urls("https://example.com/orders.csv") == ["https://example.com/orders.csv"]

    def test_candidates_try_explicit_gid_first(self):
        candidates = build_candidate_urls(SHEET_URL)
        assert candidates[0] == EXPORT_GID
        assert candidates[1] == EXPORT_FIRST
        assert len(candidates) == len(set(candidates)) == 6

    def test_candidates_without_gid(self):
        candidates = build_candidate_urls("https://docs.google.com/spreadsheets/d/abc123/edit")
        assert candidates[0] == EXPORT_FIRST
        assert len(candidates) == 3


def test_looks_like_html():
    assert looks_like_html("  <!DOCTYPE html><html>")
    assert looks_like_html("<HTML><body>login</body>")
    assert not looks_like_html("a,b\n1,2")


# ── Parsing ──────────────────────────────────────────────────────────────────


class TestParseCsv:
    def test_comma(self):
        table = parse_csv_text(CSV_BODY)
        assert table.headers == ["Order ID", "Statut", "Montant"]
        assert table.rows == [{"Order ID": "1001", "Statut": "confirmé", "Montant": "199,90"}]

    def test_semicolon_and_bom(self):
        table = parse_csv_text("\ufeffOrder ID;Statut\n1;ok\n2;annulé\n")
        assert table.headers == ["Order ID", "Statut"]
        assert [r["Statut"] for r in table.rows] == ["ok", "annulé"]

    def test_tab(self):
        table = parse_csv_text("a\tb\n1\t2\n")
        assert table.rows == [{"a": "1", "b": "2"}]

    def test_header_hygiene_and_blank_rows(self):
        text = "\n,,\n Order ID ,,order id,Ville\n\n 1 ,x,y, Rabat \n,,,\n2\n"
        table = parse_csv_text(text)
        assert table.headers == ["Order ID", "Ville"]
        assert table.rows == [
            {"Order ID": "1", "Ville": "Rabat"},
            {"Order ID": "2", "Ville": ""},
        ]

    def test_empty_text(self):
        table = parse_csv_text("")
        assert table.headers == []
        assert table.rows == []

    def test_decode_falls_back_for_latin1(self):
        raw = "Ville\nFès\n".encode("latin-1")
        assert "Ville" in decode_bytes(raw)

    def test_xlsx_keeps_native_types(self):
        data = _xlsx_bytes([["Order ID", "Montant", None], [1001, 199.9, None], [None, None, None]])
        table = parse_xlsx_bytes(data)
        assert table.headers == ["Order ID", "Montant"]
        assert table.rows == [{"Order ID": 1001, "Montant": 199.9}]


# ── Fetching ─────────────────────────────────────────────────────────────────


class TestFetchUrl:
    @pytest.mark.asyncio
    async def test_first_candidate_success(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, text=CSV_BODY, headers={"content-type": "text/csv"})

        table = await _fetcher(handler).fetch_url(SHEET_URL)
        assert seen == [EXPORT_GID]
        assert table.rows[0]["Order ID"] == "1001"

    @pytest.mark.asyncio
    async def test_html_falls_through_to_next_candidate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "gid=" in str(request.url):
                return httpx.Response(200, text="<!DOCTYPE html><html>sign in</html>")
            return httpx.Response(200, text=CSV_BODY)

        table = await _fetcher(handler).fetch_url(SHEET_URL)
        assert table.headers == ["Order ID", "Statut", "Montant"]

    @pytest.mark.asyncio
    async def test_all_html_raises_sheet_not_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>nope</html>")

        with pytest.raises(SourceFetchError) as exc_info:
            await _fetcher(handler).fetch_url(SHEET_URL)
        assert exc_info.value.code == "sheet_or_gid_not_found"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = Counter()

        def handler(request: httpx.Request) -> httpx.Response:
            calls[str(request.url)] += 1
            if calls[str(request.url)] < 3:
                return httpx.Response(503)
            return httpx.Response(200, text=CSV_BODY)

        table = await _fetcher(handler).fetch_url("https://example.com/orders.csv")
        assert calls["https://example.com/orders.csv"] == 3
        assert len(table.rows) == 1

    @pytest.mark.asyncio
    async def test_does_not_retry_not_found(self):
        calls = Counter()

        def handler(request: httpx.Request) -> httpx.Response:
            calls[str(request.url)] += 1
            return httpx.Response(404)

        with pytest.raises(SourceFetchError) as exc_info:
            await _fetcher(handler).fetch_url("https://example.com/orders.csv")
        assert exc_info.value.code == "http_error"
        assert exc_info.value.status_code == 404
        assert calls["https://example.com/orders.csv"] == 1

    @pytest.mark.asyncio
    async def test_xlsx_response(self):
        data = _xlsx_bytes([["SKU", "Prix"], ["A-1", 10]])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=data, headers={"content-type": "application/octet-stream"})

        table = await _fetcher(handler).load(UrlSource(url="https://example.com/export", filename_hint="stock.xlsx"))
        assert table.rows == [{"SKU": "A-1", "Prix": 10}]


class TestLoadUpload:
    @pytest.mark.asyncio
    async def test_csv_upload(self, tmp_path):
        path = tmp_path / "orders.csv"
        path.write_text("Order ID;Téléphone\n1;0612345678\n", encoding="utf-8")
        table = await SourceFetcher().load(UploadSource(path=str(path)))
        assert table.rows == [{"Order ID": "1", "Téléphone": "0612345678"}]

    @pytest.mark.asyncio
    async def test_xlsx_upload_by_original_name(self, tmp_path):
        path = tmp_path / "upload-blob"
        path.write_bytes(_xlsx_bytes([["Order ID"], ["A7"]]))
        table = await SourceFetcher().load(UploadSource(path=str(path), original_name="orders.xlsx"))
        assert table.rows == [{"Order ID": "A7"}]

    @pytest.mark.asyncio
    async def test_missing_upload(self, tmp_path):
        with pytest.raises(SourceFetchError) as exc_info:
            await SourceFetcher().load(UploadSource(path=str(tmp_path / "gone.csv")))
        assert exc_info.value.code == "upload_not_found"
