"""Speaker-aware recursive chunking with bounded overlap."""

from __future__ import annotations

import re

from src.ingestion.models import Chunk, Transcript
from src.pipeline_config import ChunkingConfig

_PARAGRAPH_PATTERN = re.compile(r"\n\n+")
_SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+")
_SEPARATOR = "\n\n"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: word count * 4/3 (≈ 1 token per 0.75 words)."""
    return max(1, round(len(text.split()) * 4 / 3))


def _speaker_pattern(labels: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(label) for label in labels)
    return re.compile(rf"(?=\n\n(?:{alternatives}):)", re.IGNORECASE)


def _split_oversized(sections: list[str], pattern: re.Pattern[str], max_size: float) -> list[str]:
    """Split only the sections longer than *max_size*; keep unsplittable ones whole."""
    result: list[str] = []
    for section in sections:
        if len(section) <= max_size:
            result.append(section)
            continue
        parts = [p for p in pattern.split(section) if p.strip()]
        if len(parts) <= 1:
            result.append(section)
        else:
            result.extend(parts)
    return result


def _merge_with_overlap(sections: list[str], chunk_size: int, overlap: int) -> list[str]:
    chunks: list[str] = []
    buffer = ""

    for section in sections:
        trimmed = section.strip()
        if not trimmed:
            continue

        combined = len(buffer) + (len(_SEPARATOR) if buffer else 0) + len(trimmed)
        if combined <= chunk_size:
            buffer = f"{buffer}{_SEPARATOR}{trimmed}" if buffer else trimmed
            continue

        if buffer:
            chunks.append(buffer.strip())

        # Seed the next buffer with the tail of the flushed one, unless the
        # flushed chunk is shorter than the overlap itself.
        if overlap and len(buffer) > overlap:
            buffer = buffer[-overlap:].strip() + _SEPARATOR + trimmed
        else:
            buffer = trimmed

        # Oversized atomic section: force-slice, advancing by size - overlap
        while len(buffer) > chunk_size:
            chunks.append(buffer[:chunk_size].strip())
            buffer = buffer[chunk_size - overlap : chunk_size] + buffer[chunk_size:]

    if buffer.strip():
        chunks.append(buffer.strip())

    return chunks


def chunk_text(text: str, config: ChunkingConfig = ChunkingConfig()) -> list[str]:
    """Split a transcript into ordered, overlapping chunks.

    Boundaries are tried in priority order: speaker turns, then paragraph
    breaks, then sentence ends. Paragraph and sentence splits only apply to
    sections still larger than ``1.5 * chunk_size``. A section that no
    pattern can split is force-sliced during the merge.

    Args:
        text: Raw transcript text.
        config: Chunk size, overlap and speaker labels.

    Returns:
        Chunk texts in original order. Empty for blank input.
    """
    if not text or not text.strip():
        return []

    sections = [s for s in _speaker_pattern(config.speaker_labels).split(text) if s.strip()]
    sections = _split_oversized(sections, _PARAGRAPH_PATTERN, config.working_max)
    sections = _split_oversized(sections, _SENTENCE_PATTERN, config.working_max)

    return _merge_with_overlap(sections, config.chunk_size, config.chunk_overlap)


def build_chunks(transcript: Transcript, config: ChunkingConfig = ChunkingConfig()) -> list[Chunk]:
    """Chunk a transcript into :class:`Chunk` records with fresh indexing state.

    Transcript metadata is copied onto every chunk so that downstream
    extraction prompts and retrieval filters do not need a join.
    """
    metadata = {
        "rep_id": transcript.rep_id,
        "call_date": transcript.call_date.isoformat(),
        "call_type": transcript.call_type or "Call",
        "account_name": transcript.account_name or "Unknown",
    }
    return [
        Chunk(
            transcript_id=transcript.id,
            chunk_index=idx,
            text=piece,
            metadata=dict(metadata),
        )
        for idx, piece in enumerate(chunk_text(transcript.text, config))
    ]
