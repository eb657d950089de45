"""Unit tests for settings, logging helpers and monitoring.

Tests cover:
- Settings helpers (allowed statuses, clamped sample rows / cache TTL,
  WhatsApp configuration)
- mask_phone output for short, empty and normal numbers
- track_llm_call success/error counters
- Sentry before_send tags from bound structlog context
- Metrics exporter disabled on port 0
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
import structlog

from src.orderflow.config import Settings
from src.orderflow.core.logging import mask_phone
from src.orderflow.core.monitoring import (
    llm_requests_total,
    init_sentry,
    start_metrics_server,
    track_llm_call,
)


# ── Settings ─────────────────────────────────────────────────────────────────


class TestSettings:
    def test_allowed_statuses_empty_means_introspect(self):
        assert Settings(INGEST_ALLOWED_STATUSES="").allowed_statuses() is None

    def test_allowed_statuses_parsed(self):
        settings = Settings(INGEST_ALLOWED_STATUSES=" New, shipped ,,cancelled")
        assert settings.allowed_statuses() == ("new", "shipped", "cancelled")

    @pytest.mark.parametrize("value,expected", [(0, 1), (6, 6), (50, 8)])
    def test_sample_rows_clamped(self, value, expected):
        assert Settings(INGEST_LLM_SAMPLE_ROWS=value).llm_sample_rows() == expected

    def test_cache_ttl_floor(self):
        assert Settings(INGEST_LLM_CACHE_TTL=5).llm_cache_ttl() == 60

    def test_whatsapp_configured(self):
        assert not Settings(WHATSAPP_TOKEN="t", WHATSAPP_PHONE_ID="").whatsapp_configured()
        assert Settings(WHATSAPP_TOKEN="t", WHATSAPP_PHONE_ID="1").whatsapp_configured()
        assert not Settings(
            WHATSAPP_ENABLED=False, WHATSAPP_TOKEN="t", WHATSAPP_PHONE_ID="1"
        ).whatsapp_configured()


# ── Logging ──────────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "phone,expected",
    [
        ("+212612345678", "+2******5678"),
        ("12345", "***"),
        ("", ""),
        (None, ""),
    ],
)
def test_mask_phone(phone, expected):
    assert mask_phone(phone) == expected


# ── LLM Metrics ──────────────────────────────────────────────────────────────


class TestTrackLLMCall:
    @pytest.mark.asyncio
    async def test_success_counted(self):
        counter = llm_requests_total.labels(model="obs_fast", purpose="plan", status="success")
        before = counter._value.get()

        async with track_llm_call("obs_fast", "plan"):
            pass

        assert counter._value.get() == before + 1

    @pytest.mark.asyncio
    async def test_error_counted_and_reraised(self):
        counter = llm_requests_total.labels(model="obs_fast", purpose="mapping", status="error")
        before = counter._value.get()

        with pytest.raises(TimeoutError):
            async with track_llm_call("obs_fast", "mapping"):
                raise TimeoutError("slow")

        assert counter._value.get() == before + 1


# ── Sentry ───────────────────────────────────────────────────────────────────


class TestInitSentry:
    def test_before_send_tags_bound_context(self):
        with patch("sentry_sdk.init") as mock_init:
            init_sentry("https://key@sentry.example/1", "production")

        kwargs = mock_init.call_args.kwargs
        assert kwargs["traces_sample_rate"] == 0.1
        before_send = kwargs["before_send"]

        structlog.contextvars.bind_contextvars(store_id="store-9", job_kind="init")
        try:
            event = before_send({}, {})
        finally:
            structlog.contextvars.unbind_contextvars("store_id", "job_kind")

        assert event["tags"] == {"store_id": "store-9", "job_kind": "init"}

    def test_development_samples_everything(self):
        with patch("sentry_sdk.init") as mock_init:
            init_sentry("https://key@sentry.example/1", "development")
        assert mock_init.call_args.kwargs["traces_sample_rate"] == 1.0


def test_metrics_server_disabled():
    with patch("src.orderflow.core.monitoring.start_http_server") as mock_start:
        assert start_metrics_server(0) is False
    mock_start.assert_not_called()
