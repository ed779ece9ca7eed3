"""Thread-safe in-process chunk store."""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable

from src.extraction.models import ChunkEntities
from src.ingestion.models import Chunk, IndexHealth
from src.ingestion.storage import (
    ChunkStore,
    check_transition,
    initial_status,
    retryable_statuses,
)
from src.pipeline_config import EmbeddingStatus, ExtractionStatus, JobKind


def _status(chunk: Chunk, kind: JobKind) -> str:
    if kind is JobKind.EMBEDDING:
        return chunk.embedding_status.value
    return chunk.extraction_status.value


def _set_status(chunk: Chunk, kind: JobKind, target: str) -> None:
    check_transition(kind, _status(chunk, kind), target)
    if kind is JobKind.EMBEDDING:
        chunk.embedding_status = EmbeddingStatus(target)
    else:
        chunk.extraction_status = ExtractionStatus(target)


class InMemoryChunkStore(ChunkStore):
    """Chunk store held in a dict, guarded by a single lock.

    Readers get deep copies so that callers never observe a chunk mid-update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_transcript: dict[str, list[Chunk]] = {}
        self._by_id: dict[str, Chunk] = {}

    def replace_chunks(self, transcript_id: str, chunks: list[Chunk]) -> int:
        with self._lock:
            for old in self._by_transcript.pop(transcript_id, []):
                self._by_id.pop(old.id, None)
            stored = [copy.deepcopy(c) for c in sorted(chunks, key=lambda c: c.chunk_index)]
            self._by_transcript[transcript_id] = stored
            for chunk in stored:
                self._by_id[chunk.id] = chunk
            return len(stored)

    def chunked_transcript_ids(self, transcript_ids: Iterable[str]) -> set[str]:
        with self._lock:
            return {tid for tid in transcript_ids if self._by_transcript.get(tid)}

    def _select(self, transcript_ids: Iterable[str] | None) -> list[Chunk]:
        ids = sorted(self._by_transcript) if transcript_ids is None else sorted(set(transcript_ids))
        return [chunk for tid in ids for chunk in self._by_transcript.get(tid, [])]

    def get_chunks(self, transcript_ids: Iterable[str]) -> list[Chunk]:
        with self._lock:
            return copy.deepcopy(self._select(transcript_ids))

    def chunks_needing(
        self,
        kind: JobKind,
        transcript_ids: Iterable[str] | None = None,
        include_failed: bool = True,
    ) -> list[Chunk]:
        wanted = set(retryable_statuses(kind, include_failed))
        with self._lock:
            matches = [c for c in self._select(transcript_ids) if _status(c, kind) in wanted]
            return copy.deepcopy(matches)

    def _apply(self, kind: JobKind, chunk_ids: list[str], target: str) -> None:
        with self._lock:
            for chunk_id in chunk_ids:
                chunk = self._by_id.get(chunk_id)
                # Chunk vanished because its transcript was re-chunked mid-job
                if chunk is None:
                    continue
                _set_status(chunk, kind, target)

    def mark_processing(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._apply(kind, chunk_ids, "processing")

    def revert_processing(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._apply(kind, chunk_ids, initial_status(kind))

    def mark_failed(self, kind: JobKind, chunk_ids: list[str]) -> None:
        self._apply(kind, chunk_ids, "failed")

    def save_embedding(self, chunk_id: str, embedding: list[float]) -> None:
        with self._lock:
            chunk = self._by_id.get(chunk_id)
            if chunk is None:
                return
            _set_status(chunk, JobKind.EMBEDDING, "completed")
            chunk.embedding = list(embedding)

    def save_entities(self, chunk_id: str, result: ChunkEntities) -> None:
        with self._lock:
            chunk = self._by_id.get(chunk_id)
            if chunk is None:
                return
            _set_status(chunk, JobKind.ENTITY_EXTRACTION, "completed")
            chunk.entities = dict(result.entities)
            chunk.topics = list(result.topics)
            chunk.meddpicc_elements = list(result.meddpicc_elements)

    def reset_failed(self, kind: JobKind, transcript_ids: Iterable[str] | None = None) -> int:
        reset = 0
        with self._lock:
            for chunk in self._select(transcript_ids):
                if _status(chunk, kind) == "failed":
                    _set_status(chunk, kind, initial_status(kind))
                    reset += 1
        return reset

    def health(self, transcript_ids: Iterable[str]) -> IndexHealth:
        with self._lock:
            chunks = self._select(transcript_ids)
            return IndexHealth(
                total_chunks=len(chunks),
                with_embeddings=sum(1 for c in chunks if c.has_embedding),
                extraction_completed=sum(
                    1 for c in chunks if c.extraction_status is ExtractionStatus.COMPLETED
                ),
                extraction_pending=sum(
                    1
                    for c in chunks
                    if c.extraction_status in (ExtractionStatus.PENDING, ExtractionStatus.PROCESSING)
                ),
                extraction_failed=sum(
                    1 for c in chunks if c.extraction_status is ExtractionStatus.FAILED
                ),
            )

    def delete_all_chunks(self) -> int:
        with self._lock:
            count = len(self._by_id)
            self._by_transcript.clear()
            self._by_id.clear()
            return count
