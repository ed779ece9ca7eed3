"""Tests for the chunk status state machines and chunk stores."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from helpers import make_transcript

from src.errors import InvalidTransitionError
from src.extraction.models import ChunkEntities
from src.ingestion.chunking import build_chunks
from src.ingestion.memory_store import InMemoryChunkStore
from src.ingestion.models import Chunk, IndexHealth
from src.ingestion.storage import (
    SupabaseChunkStore,
    allowed_sources,
    check_transition,
    chunk_to_row,
    row_to_chunk,
)
from src.pipeline_config import EmbeddingStatus, ExtractionStatus, JobKind


def _chunks(tid: str, n: int) -> list[Chunk]:
    return [Chunk(transcript_id=tid, chunk_index=i, text=f"{tid} chunk {i}") for i in range(n)]


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("processing", "completed"),
            ("processing", "failed"),
            ("processing", "pending"),
            ("failed", "pending"),
            ("failed", "processing"),
        ],
    )
    def test_legal_extraction_moves(self, current: str, target: str) -> None:
        check_transition(JobKind.ENTITY_EXTRACTION, current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "completed"),
            ("pending", "failed"),
            ("completed", "processing"),
            ("completed", "pending"),
            ("completed", "failed"),
        ],
    )
    def test_illegal_extraction_moves(self, current: str, target: str) -> None:
        with pytest.raises(InvalidTransitionError):
            check_transition(JobKind.ENTITY_EXTRACTION, current, target)

    def test_embedding_uses_missing_as_initial(self) -> None:
        check_transition(JobKind.EMBEDDING, "missing", "processing")
        with pytest.raises(InvalidTransitionError):
            check_transition(JobKind.EMBEDDING, "pending", "processing")

    def test_allowed_sources_for_completed(self) -> None:
        assert allowed_sources(JobKind.EMBEDDING, "completed") == ["processing"]


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class TestInMemoryChunkStore:
    def test_replace_is_wholesale(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 3))
        store.replace_chunks("t1", _chunks("t1", 2))

        chunks = store.get_chunks(["t1"])
        assert [c.chunk_index for c in chunks] == [0, 1]

    def test_get_chunks_ordered(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t2", list(reversed(_chunks("t2", 2))))
        store.replace_chunks("t1", _chunks("t1", 2))

        got = [(c.transcript_id, c.chunk_index) for c in store.get_chunks(["t2", "t1"])]
        assert got == [("t1", 0), ("t1", 1), ("t2", 0), ("t2", 1)]

    def test_returns_copies(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        chunk = store.get_chunks(["t1"])[0]
        chunk.text = "mutated"
        assert store.get_chunks(["t1"])[0].text == "t1 chunk 0"

    def test_facets_are_independent(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        cid = store.get_chunks(["t1"])[0].id

        store.mark_processing(JobKind.EMBEDDING, [cid])
        store.save_embedding(cid, [0.1, 0.2])

        chunk = store.get_chunks(["t1"])[0]
        assert chunk.embedding_status is EmbeddingStatus.COMPLETED
        assert chunk.extraction_status is ExtractionStatus.PENDING
        assert store.chunks_needing(JobKind.EMBEDDING) == []
        assert [c.id for c in store.chunks_needing(JobKind.ENTITY_EXTRACTION)] == [cid]

    def test_save_requires_processing(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        cid = store.get_chunks(["t1"])[0].id
        with pytest.raises(InvalidTransitionError):
            store.save_entities(cid, ChunkEntities())

    def test_completed_is_final_until_rechunk(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        cid = store.get_chunks(["t1"])[0].id
        store.mark_processing(JobKind.ENTITY_EXTRACTION, [cid])
        store.save_entities(cid, ChunkEntities(topics=["pricing"]))

        with pytest.raises(InvalidTransitionError):
            store.mark_processing(JobKind.ENTITY_EXTRACTION, [cid])

        store.replace_chunks("t1", _chunks("t1", 1))
        assert store.get_chunks(["t1"])[0].extraction_status is ExtractionStatus.PENDING

    def test_failed_excluded_without_retry(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 2))
        first, second = store.get_chunks(["t1"])
        store.mark_processing(JobKind.ENTITY_EXTRACTION, [first.id])
        store.mark_failed(JobKind.ENTITY_EXTRACTION, [first.id])

        needing = store.chunks_needing(JobKind.ENTITY_EXTRACTION, include_failed=False)
        assert [c.id for c in needing] == [second.id]
        assert len(store.chunks_needing(JobKind.ENTITY_EXTRACTION)) == 2

    def test_reset_failed(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 2))
        ids = [c.id for c in store.get_chunks(["t1"])]
        store.mark_processing(JobKind.EMBEDDING, ids)
        store.mark_failed(JobKind.EMBEDDING, ids)

        assert store.reset_failed(JobKind.EMBEDDING, ["t1"]) == 2
        assert all(c.embedding_status is EmbeddingStatus.MISSING for c in store.get_chunks(["t1"]))

    def test_revert_processing(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        cid = store.get_chunks(["t1"])[0].id
        store.mark_processing(JobKind.ENTITY_EXTRACTION, [cid])
        store.revert_processing(JobKind.ENTITY_EXTRACTION, [cid])
        assert store.get_chunks(["t1"])[0].extraction_status is ExtractionStatus.PENDING

    def test_vanished_chunk_ignored(self, store: InMemoryChunkStore) -> None:
        store.mark_processing(JobKind.EMBEDDING, ["no-such-chunk"])
        store.save_embedding("no-such-chunk", [1.0])

    def test_health(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 4))
        ids = [c.id for c in store.get_chunks(["t1"])]
        store.mark_processing(JobKind.EMBEDDING, ids[:2])
        store.save_embedding(ids[0], [1.0])
        store.mark_processing(JobKind.ENTITY_EXTRACTION, ids[:3])
        store.save_entities(ids[0], ChunkEntities())
        store.mark_failed(JobKind.ENTITY_EXTRACTION, [ids[1]])

        before = store.get_chunks(["t1"])
        health = store.health(["t1", "unknown"])

        assert health == IndexHealth(
            total_chunks=4,
            with_embeddings=1,
            extraction_completed=1,
            extraction_pending=2,
            extraction_failed=1,
        )
        assert health.embedding_coverage == 0.25
        assert store.get_chunks(["t1"]) == before

    def test_health_empty(self, store: InMemoryChunkStore) -> None:
        health = store.health([])
        assert health.total_chunks == 0
        assert health.embedding_coverage == 0.0

    def test_chunked_transcript_ids(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 1))
        store.replace_chunks("t2", [])
        assert store.chunked_transcript_ids(["t1", "t2", "t3"]) == {"t1"}

    def test_delete_all(self, store: InMemoryChunkStore) -> None:
        store.replace_chunks("t1", _chunks("t1", 2))
        store.replace_chunks("t2", _chunks("t2", 1))
        assert store.delete_all_chunks() == 3
        assert store.get_chunks(["t1", "t2"]) == []


# ---------------------------------------------------------------------------
# Supabase store (mocked client)
# ---------------------------------------------------------------------------


class TestRowMapping:
    def test_round_trip_parses_pgvector_string(self) -> None:
        (chunk,) = build_chunks(make_transcript("t1"))
        row = chunk_to_row(chunk)
        row["embedding"] = "[0.5,0.25]"
        restored = row_to_chunk(row)

        assert restored.embedding == [0.5, 0.25]
        assert restored.text == chunk.text
        assert restored.metadata["account_name"] == "Acme"

    def test_null_statuses_default(self) -> None:
        chunk = row_to_chunk({"id": "c1", "transcript_id": "t1", "chunk_index": 0})
        assert chunk.embedding_status is EmbeddingStatus.MISSING
        assert chunk.extraction_status is ExtractionStatus.PENDING


class TestSupabaseChunkStore:
    def test_replace_deletes_then_inserts(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        store = SupabaseChunkStore(client=client)

        count = store.replace_chunks("t1", _chunks("t1", 2))

        assert count == 2
        client.table.assert_called_with("transcript_chunks")
        table.delete.return_value.eq.assert_called_once_with("transcript_id", "t1")
        inserted = table.insert.call_args.args[0]
        assert [r["chunk_index"] for r in inserted] == [0, 1]

    def test_transition_is_conditional(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        store = SupabaseChunkStore(client=client)

        store.save_embedding("c1", [1.0, 2.0])

        payload = table.update.call_args.args[0]
        assert payload == {"embedding_status": "completed", "embedding": [1.0, 2.0]}
        update = table.update.return_value
        update.in_.assert_called_once_with("id", ["c1"])
        update.in_.return_value.in_.assert_called_once_with("embedding_status", ["processing"])

    def test_chunks_needing_filters_statuses(self) -> None:
        client = MagicMock()
        select = client.table.return_value.select.return_value
        query = select.in_.return_value.in_.return_value.order.return_value.order.return_value
        query.execute.return_value.data = [
            {"id": "c1", "transcript_id": "t1", "chunk_index": 0, "chunk_text": "hi"}
        ]
        store = SupabaseChunkStore(client=client)

        chunks = store.chunks_needing(JobKind.ENTITY_EXTRACTION, ["t1"], include_failed=False)

        select.in_.assert_called_once_with("extraction_status", ["pending", "processing"])
        assert [c.id for c in chunks] == ["c1"]
