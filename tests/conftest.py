"""Shared fixtures (no external API keys required)."""

from __future__ import annotations

import pytest

from src.ingestion.memory_store import InMemoryChunkStore


@pytest.fixture
def store() -> InMemoryChunkStore:
    return InMemoryChunkStore()
