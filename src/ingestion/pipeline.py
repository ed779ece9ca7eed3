"""Chunking entry points: transcript -> chunks -> store.

Embedding and entity extraction are not done here; they are driven
afterwards by backfill jobs so each facet can be retried on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from src.analysis.scope import TranscriptSource
from src.errors import PermanentInputError
from src.ingestion.chunking import build_chunks
from src.ingestion.models import Transcript
from src.ingestion.storage import ChunkStore
from src.pipeline_config import ChunkingConfig

logger = logging.getLogger(__name__)


@dataclass
class ChunkingSummary:
    chunk_counts: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def total_chunks(self) -> int:
        return sum(self.chunk_counts.values())


def chunk_transcript(
    store: ChunkStore, transcript: Transcript, config: ChunkingConfig = ChunkingConfig()
) -> int:
    """Chunk one transcript and replace its stored chunk set.

    Raises:
        PermanentInputError: The transcript has no text.
    """
    if not transcript.text.strip():
        raise PermanentInputError(f"transcript {transcript.id} has empty text")
    chunks = build_chunks(transcript, config)
    count = store.replace_chunks(transcript.id, chunks)
    logger.info("Stored %d chunks for transcript %s", count, transcript.id)
    return count


def chunk_transcripts(
    store: ChunkStore,
    transcripts: Iterable[Transcript],
    config: ChunkingConfig = ChunkingConfig(),
) -> ChunkingSummary:
    """Chunk many transcripts; bad inputs are recorded and skipped."""
    summary = ChunkingSummary()
    for transcript in transcripts:
        try:
            summary.chunk_counts[transcript.id] = chunk_transcript(store, transcript, config)
        except PermanentInputError as exc:
            logger.warning("Skipping transcript %s: %s", transcript.id, exc)
            summary.skipped[transcript.id] = str(exc)
    return summary


def chunk_unindexed(
    store: ChunkStore,
    source: TranscriptSource,
    transcript_ids: Iterable[str],
    config: ChunkingConfig = ChunkingConfig(),
) -> ChunkingSummary:
    """Chunk only the transcripts that have no chunks yet."""
    ids = list(transcript_ids)
    already = store.chunked_transcript_ids(ids)
    missing = [tid for tid in ids if tid not in already]
    logger.info("%d of %d transcripts need chunking", len(missing), len(ids))
    if not missing:
        return ChunkingSummary()
    return chunk_transcripts(store, source.get_transcripts(missing), config)
