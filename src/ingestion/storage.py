"""Chunk store interface, status transition rules, and the Supabase backend."""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from typing import Any, cast

from postgrest import CountMethod
from supabase import Client, create_client

from src.errors import InvalidTransitionError
from src.extraction.models import ChunkEntities
from src.ingestion.models import Chunk, IndexHealth
from src.pipeline_config import EmbeddingStatus, ExtractionStatus, JobKind

_EMBEDDING_TRANSITIONS: dict[EmbeddingStatus, frozenset[EmbeddingStatus]] = {
    EmbeddingStatus.MISSING: frozenset({EmbeddingStatus.PROCESSING}),
    EmbeddingStatus.PROCESSING: frozenset(
        {
            EmbeddingStatus.PROCESSING,
            EmbeddingStatus.COMPLETED,
            EmbeddingStatus.FAILED,
            EmbeddingStatus.MISSING,
        }
    ),
    EmbeddingStatus.FAILED: frozenset({EmbeddingStatus.PROCESSING, EmbeddingStatus.MISSING}),
    EmbeddingStatus.COMPLETED: frozenset(),
}

_EXTRACTION_TRANSITIONS: dict[ExtractionStatus, frozenset[ExtractionStatus]] = {
    ExtractionStatus.PENDING: frozenset({ExtractionStatus.PROCESSING}),
    ExtractionStatus.PROCESSING: frozenset(
        {
            ExtractionStatus.PROCESSING,
            ExtractionStatus.COMPLETED,
            ExtractionStatus.FAILED,
            ExtractionStatus.PENDING,
        }
    ),
    ExtractionStatus.FAILED: frozenset({ExtractionStatus.PROCESSING, ExtractionStatus.PENDING}),
    ExtractionStatus.COMPLETED: frozenset(),
}

# Statuses a backfill picks up. PROCESSING is included so a crashed job's
# in-flight chunks are retried on restart.
EMBEDDING_RETRYABLE = (EmbeddingStatus.MISSING, EmbeddingStatus.PROCESSING, EmbeddingStatus.FAILED)
EXTRACTION_RETRYABLE = (
    ExtractionStatus.PENDING,
    ExtractionStatus.PROCESSING,
    ExtractionStatus.FAILED,
)


def allowed_sources(kind: JobKind, target: str) -> list[str]:
    """Return the status values from which *target* may be reached."""
    table: dict[Any, frozenset[Any]]
    table = _EMBEDDING_TRANSITIONS if kind is JobKind.EMBEDDING else _EXTRACTION_TRANSITIONS
    return [source.value for source, targets in table.items() if target in {t.value for t in targets}]


def check_transition(kind: JobKind, current: str, target: str) -> None:
    """Raise :class:`InvalidTransitionError` if *current* -> *target* is illegal."""
    if current not in allowed_sources(kind, target):
        raise InvalidTransitionError(f"{kind.value}: cannot move chunk from {current} to {target}")


def retryable_statuses(kind: JobKind, include_failed: bool = True) -> list[str]:
    statuses = EMBEDDING_RETRYABLE if kind is JobKind.EMBEDDING else EXTRACTION_RETRYABLE
    return [s.value for s in statuses if include_failed or s.value != "failed"]


class ChunkStore(ABC):
    """Holds chunks and their two independent indexing facets.

    Implementations must replace a transcript's chunk set wholesale and must
    enforce the status transition rules above.
    """

    @abstractmethod
    def replace_chunks(self, transcript_id: str, chunks: list[Chunk]) -> int:
        """Delete any existing chunks for the transcript and store *chunks*."""

    @abstractmethod
    def chunked_transcript_ids(self, transcript_ids: Iterable[str]) -> set[str]:
        """Return the subset of *transcript_ids* that already have chunks."""

    @abstractmethod
    def get_chunks(self, transcript_ids: Iterable[str]) -> list[Chunk]:
        """Chunks ordered by transcript, then ``chunk_index``."""

    @abstractmethod
    def chunks_needing(
        self,
        kind: JobKind,
        transcript_ids: Iterable[str] | None = None,
        include_failed: bool = True,
    ) -> list[Chunk]:
        """Chunks whose *kind* facet is not yet completed."""

    @abstractmethod
    def mark_processing(self, kind: JobKind, chunk_ids: list[str]) -> None: ...

    @abstractmethod
    def revert_processing(self, kind: JobKind, chunk_ids: list[str]) -> None:
        """Return in-flight chunks to their initial retryable status."""

    @abstractmethod
    def mark_failed(self, kind: JobKind, chunk_ids: list[str]) -> None: ...

    @abstractmethod
    def save_embedding(self, chunk_id: str, embedding: list[float]) -> None: ...

    @abstractmethod
    def save_entities(self, chunk_id: str, result: ChunkEntities) -> None: ...

    @abstractmethod
    def reset_failed(self, kind: JobKind, transcript_ids: Iterable[str] | None = None) -> int:
        """Explicit retry: move ``failed`` chunks back to their initial status."""

    @abstractmethod
    def health(self, transcript_ids: Iterable[str]) -> IndexHealth:
        """Aggregate indexing status. Must not mutate anything."""

    @abstractmethod
    def delete_all_chunks(self) -> int:
        """Admin reset: delete every chunk, returning how many were removed."""


def initial_status(kind: JobKind) -> str:
    if kind is JobKind.EMBEDDING:
        return EmbeddingStatus.MISSING.value
    return ExtractionStatus.PENDING.value


def status_column(kind: JobKind) -> str:
    return "embedding_status" if kind is JobKind.EMBEDDING else "extraction_status"


# ---------------------------------------------------------------------------
# Supabase backend
# ---------------------------------------------------------------------------

CHUNKS_TABLE = "transcript_chunks"
INSERT_BATCH_SIZE = 100
FILTER_BATCH_SIZE = 100


def get_supabase_client() -> Client:
    """Create and return a Supabase client from environment variables."""
    return create_client(
        os.getenv("SUPABASE_URL", ""),
        os.getenv("SUPABASE_KEY", ""),
    )


def batched(items: list[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _parse_embedding(raw: Any) -> list[float] | None:
    # pgvector columns come back from PostgREST as a "[0.1,0.2,...]" string
    if raw is None:
        return None
    if isinstance(raw, str):
        return [float(v) for v in json.loads(raw)]
    return [float(v) for v in raw]


def chunk_to_row(chunk: Chunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "transcript_id": chunk.transcript_id,
        "chunk_index": chunk.chunk_index,
        "chunk_text": chunk.text,
        "embedding": chunk.embedding,
        "embedding_status": chunk.embedding_status.value,
        "extraction_status": chunk.extraction_status.value,
        "entities": chunk.entities,
        "topics": chunk.topics,
        "meddpicc_elements": chunk.meddpicc_elements,
        "metadata": chunk.metadata,
    }


def row_to_chunk(row: dict[str, Any]) -> Chunk:
    return Chunk(
        id=str(row["id"]),
        transcript_id=str(row["transcript_id"]),
        chunk_index=int(row["chunk_index"]),
        text=row.get("chunk_text") or "",
        embedding=_parse_embedding(row.get("embedding")),
        embedding_status=EmbeddingStatus(row.get("embedding_status") or "missing"),
        extraction_status=ExtractionStatus(row.get("extraction_status") or "pending"),
        entities=row.get("entities"),
        topics=list(row.get("topics") or []),
        meddpicc_elements=list(row.get("meddpicc_elements") or []),
        metadata=dict(row.get("metadata") or {}),
    )


class SupabaseChunkStore(ChunkStore):
    """Chunk store backed by the ``transcript_chunks`` table.

    Status transitions are enforced with conditional updates: a row only
    changes if its current status is a legal source for the target.
    """

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    def _table(self) -> Any:
        return self.client.table(CHUNKS_TABLE)

    def replace_chunks(self, transcript_id: str, chunks: list[Chunk]) -> int:
        self._table().delete().eq("transcript_id", transcript_id).execute()
        rows = [chunk_to_row(c) for c in chunks]
        for i in range(0, len(rows), INSERT_BATCH_SIZE):
            self._table().insert(rows[i : i + INSERT_BATCH_SIZE]).execute()
        return len(rows)

    def chunked_transcript_ids(self, transcript_ids: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for batch in batched(list(transcript_ids), FILTER_BATCH_SIZE):
            result = self._table().select("transcript_id").in_("transcript_id", batch).execute()
            found.update(str(r["transcript_id"]) for r in cast(list[dict[str, Any]], result.data))
        return found

    def get_chunks(self, transcript_ids: Iterable[str]) -> list[Chunk]:
        chunks: list[Chunk] = []
        for batch in batched(list(transcript_ids), FILTER_BATCH_SIZE):
            result = (
                self._table()
                .select("*")
                .in_("transcript_id", batch)
                .order("transcript_id")
                .order("chunk_index")
                .execute()
            )
            chunks.extend(row_to_chunk(r) for r in cast(list[dict[str, Any]], result.data))
        chunks.sort(key=lambda c: (c.transcript_id, c.chunk_index))
        return chunks

    def chunks_needing(
        self,
        kind: JobKind,
        transcript_ids: Iterable[str] | None = None,
        include_failed: bool = True,
    ) -> list[Chunk]:
        statuses = retryable_statuses(kind, include_failed)
        query = self._table().select("*").in_(status_column(kind), statuses)
        if transcript_ids is not None:
            query = query.in_("transcript_id", list(transcript_ids))
        query = query.order("transcript_id").order("chunk_index")
        result = query.execute()
        return [row_to_chunk(r) for r in cast(list[dict[str, Any]], result.data)]

    def _transition(
        self,
        kind: JobKind,
        chunk_ids: list[str],
        target: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        column = status_column(kind)
        payload = {column: target, **(extra or {})}
        for batch in batched(chunk_ids, FILTER_BATCH_SIZE):
            (
                self._table()
                .update(payload)
                .in_("id", batch)
                .in_(column, allowed_sources(kind, target))
                .execute()
            )

    def mark_processing(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._transition(kind, chunk_ids, "processing")

    def revert_processing(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._transition(kind, chunk_ids, initial_status(kind))

    def mark_failed(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._transition(kind, chunk_ids, "failed")

    def save_embedding(self, chunk_id: str, embedding: list[float]) -> None:
        self._transition(JobKind.EMBEDDING, [chunk_id], "completed", {"embedding": embedding})

    def save_entities(self, chunk_id: str, result: ChunkEntities) -> None:
        self._transition(
            JobKind.ENTITY_EXTRACTION,
            [chunk_id],
            "completed",
            {
                "entities": result.entities,
                "topics": result.topics,
                "meddpicc_elements": result.meddpicc_elements,
            },
        )

    def reset_failed(self, kind: JobKind, transcript_ids: Iterable[str] | None = None) -> int:
        column = status_column(kind)
        query = self._table().update({column: initial_status(kind)}).eq(column, "failed")
        if transcript_ids is not None:
            query = query.in_("transcript_id", list(transcript_ids))
        result = query.execute()
        return len(cast(list[dict[str, Any]], result.data or []))

    def _count(self, transcript_ids: list[str], apply: Any = None) -> int:
        total = 0
        for batch in batched(transcript_ids, FILTER_BATCH_SIZE):
            query = self._table().select("id", count=CountMethod.exact).in_("transcript_id", batch)
            if apply is not None:
                query = apply(query)
            total += query.execute().count or 0
        return total

    def health(self, transcript_ids: Iterable[str]) -> IndexHealth:
        ids = list(transcript_ids)
        if not ids:
            return IndexHealth()
        return IndexHealth(
            total_chunks=self._count(ids),
            with_embeddings=self._count(ids, lambda q: q.not_.is_("embedding", "null")),
            extraction_completed=self._count(ids, lambda q: q.eq("extraction_status", "completed")),
            extraction_pending=self._count(
                ids, lambda q: q.in_("extraction_status", ["pending", "processing"])
            ),
            extraction_failed=self._count(ids, lambda q: q.eq("extraction_status", "failed")),
        )

    def delete_all_chunks(self) -> int:
        before = self._table().select("id", count=CountMethod.exact).execute().count or 0
        # PostgREST refuses an unfiltered delete; match every row instead
        self._table().delete().neq("id", "00000000-0000-0000-0000-000000000000").execute()
        return before
