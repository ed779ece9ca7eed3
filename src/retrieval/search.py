"""Token-budgeted chunk retrieval over an indexed transcript set."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np

from src.ingestion.chunking import estimate_tokens
from src.ingestion.models import Chunk
from src.ingestion.storage import ChunkStore
from src.pipeline_config import RetrievalConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievedChunk:
    """A chunk accepted into the context window, with its rank score."""

    chunk: Chunk
    similarity: float
    tokens: int


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked context window plus a degraded-result signal.

    ``low_confidence`` is set instead of raising when too few candidate
    chunks carry embeddings for the ranking to be meaningful.
    """

    chunks: list[RetrievedChunk] = field(default_factory=list)
    coverage: float = 0.0
    low_confidence: bool = False
    reason: str | None = None

    @property
    def tokens_used(self) -> int:
        return sum(c.tokens for c in self.chunks)


def cosine_similarities(query: list[float], vectors: list[list[float]]) -> np.ndarray:
    """Cosine similarity of *query* against each row of *vectors*.

    Zero-norm vectors score 0.0.
    """
    if not vectors:
        return np.zeros(0)
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


def retrieve(
    store: ChunkStore,
    query_embedding: list[float],
    candidate_transcript_ids: Iterable[str],
    token_budget: int,
    config: RetrievalConfig = RetrievalConfig(),
) -> RetrievalResult:
    """Rank candidate chunks by similarity and fill *token_budget* greedily.

    Acceptance stops at the first chunk that would overflow the budget;
    nothing is truncated. When the candidates span more than one transcript,
    a transcript stops contributing once it holds ``per_transcript_share``
    of the budget. Coverage only counts embeddings whose dimension matches
    the query.
    """
    candidates = store.get_chunks(candidate_transcript_ids)
    if not candidates:
        return RetrievalResult(low_confidence=True, reason="no chunks for candidate transcripts")

    dim = len(query_embedding)
    embedded = [c for c in candidates if c.embedding is not None]
    usable = [c for c in embedded if len(c.embedding or []) == dim]
    if len(usable) < len(embedded):
        logger.warning(
            "Ignoring %d chunks whose embedding dimension differs from the query (%d)",
            len(embedded) - len(usable),
            dim,
        )

    coverage = len(usable) / len(candidates)
    if not usable or coverage < config.min_embedding_coverage:
        logger.warning(
            "Embedding coverage %.0f%% below %.0f%%; returning low-confidence result",
            coverage * 100,
            config.min_embedding_coverage * 100,
        )
        return RetrievalResult(
            coverage=coverage,
            low_confidence=True,
            reason=f"only {len(usable)} of {len(candidates)} chunks have usable embeddings",
        )

    sims = cosine_similarities(query_embedding, [c.embedding or [] for c in usable])
    # Stable sort keeps chunk order among equal scores
    order = np.argsort(-sims, kind="stable")

    multi_transcript = len({c.transcript_id for c in usable}) > 1
    per_transcript_cap = config.per_transcript_share * token_budget

    accepted: list[RetrievedChunk] = []
    used = 0
    by_transcript: dict[str, int] = {}
    for idx in order:
        chunk = usable[int(idx)]
        held = by_transcript.get(chunk.transcript_id, 0)
        if multi_transcript and held >= per_transcript_cap:
            continue
        tokens = estimate_tokens(chunk.text)
        if used + tokens > token_budget:
            break
        accepted.append(RetrievedChunk(chunk=chunk, similarity=float(sims[idx]), tokens=tokens))
        used += tokens
        by_transcript[chunk.transcript_id] = held + tokens

    return RetrievalResult(chunks=accepted, coverage=coverage)
