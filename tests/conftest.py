"""Shared fixtures backed by the in-memory fakes in ``tests/fakes.py``."""

from __future__ import annotations

import pytest

from tests.fakes import InMemoryConversationStore, InMemoryIngestStore, RecordingChannel


@pytest.fixture
def ingest_store() -> InMemoryIngestStore:
    return InMemoryIngestStore()


@pytest.fixture
def convo_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()
