"""Data models for transcripts, chunks and index health."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.pipeline_config import EmbeddingStatus, ExtractionStatus


@dataclass(frozen=True)
class Transcript:
    """Raw call transcript plus the metadata the core needs.

    Owned by the calling system; treated as immutable input.
    """

    id: str
    text: str
    rep_id: str
    call_date: date
    call_type: str | None = None
    account_name: str | None = None


@dataclass
class Chunk:
    """A bounded, overlap-linked segment of a transcript.

    Embedding and entity extraction are two independent facets, each with
    its own status.
    """

    transcript_id: str
    chunk_index: int
    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    embedding: list[float] | None = None
    embedding_status: EmbeddingStatus = EmbeddingStatus.MISSING
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    entities: dict[str, Any] | None = None
    topics: list[str] = field(default_factory=list)
    meddpicc_elements: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def char_length(self) -> int:
        return len(self.text)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass(frozen=True)
class IndexHealth:
    """Aggregate indexing status over a transcript set."""

    total_chunks: int = 0
    with_embeddings: int = 0
    extraction_completed: int = 0
    extraction_pending: int = 0
    extraction_failed: int = 0

    @property
    def embedding_coverage(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return self.with_embeddings / self.total_chunks

    @property
    def extraction_coverage(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return self.extraction_completed / self.total_chunks
