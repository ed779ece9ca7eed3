"""Pipeline configuration: status enums and immutable per-run parameter sets."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.config import Settings


class ExtractionStatus(str, Enum):
    """Entity-extraction state of a single chunk."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EmbeddingStatus(str, Enum):
    """Embedding state of a single chunk, tracked independently of extraction."""

    MISSING = "missing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    """Which indexing facet a backfill job drives."""

    EMBEDDING = "embedding"
    ENTITY_EXTRACTION = "entity_extraction"


class JobState(str, Enum):
    """Lifecycle of an indexing job."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class AnalysisTier(str, Enum):
    """Analysis strategy chosen from the number of in-scope calls."""

    DIRECT = "direct"
    SAMPLED = "sampled"
    HIERARCHICAL = "hierarchical"


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk size, overlap and the speaker labels that mark a new turn."""

    chunk_size: int = 2000
    chunk_overlap: int = 200
    speaker_labels: tuple[str, ...] = ("REP", "PROSPECT")

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")

    @property
    def working_max(self) -> float:
        return self.chunk_size * 1.5

    @classmethod
    def from_settings(cls, settings: Settings) -> ChunkingConfig:
        return cls(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            speaker_labels=tuple(settings.speaker_labels),
        )


@dataclass(frozen=True)
class TierThresholds:
    """``direct_max`` and ``sampling_max`` bounds for tier selection."""

    direct_max: int = 20
    sampling_max: int = 100

    def __post_init__(self) -> None:
        if not 0 < self.direct_max < self.sampling_max:
            raise ValueError("thresholds must satisfy 0 < direct_max < sampling_max")

    @classmethod
    def from_settings(cls, settings: Settings) -> TierThresholds:
        return cls(direct_max=settings.direct_max, sampling_max=settings.sampling_max)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for transient service failures."""

    attempts: int = 3
    min_wait: float = 0.2
    max_wait: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            attempts=settings.retry_attempts,
            min_wait=settings.retry_min_wait_seconds,
            max_wait=settings.retry_max_wait_seconds,
        )


@dataclass(frozen=True)
class BackfillConfig:
    """Batch sizes, worker pool bounds and stall timeout for indexing backfills.

    ``batch_timeout`` bounds each external call a batch issues; it should stay
    below ``stall_timeout`` so a hung call cannot make a healthy job look stalled.
    """

    embedding_batch_size: int = 10
    entity_batch_size: int = 15
    entity_chunks_per_call: int = 5
    stall_timeout: float = 120.0
    max_concurrency: int = 4
    batch_timeout: float = 60.0
    retry: RetryConfig = RetryConfig()

    def batch_size(self, kind: JobKind) -> int:
        if kind is JobKind.EMBEDDING:
            return self.embedding_batch_size
        return self.entity_batch_size

    @classmethod
    def from_settings(cls, settings: Settings) -> BackfillConfig:
        return cls(
            embedding_batch_size=settings.embedding_batch_size,
            entity_batch_size=settings.entity_batch_size,
            entity_chunks_per_call=settings.entity_chunks_per_call,
            stall_timeout=settings.stall_timeout_seconds,
            max_concurrency=settings.backfill_concurrency,
            batch_timeout=settings.backfill_timeout_seconds,
            retry=RetryConfig.from_settings(settings),
        )


@dataclass(frozen=True)
class AnalysisConfig:
    """Sampling seed and hierarchical map-reduce parameters."""

    sample_seed: int = 42
    min_batch_size: int = 5
    max_batch_size: int = 25
    max_concurrency: int = 4
    batch_timeout: float = 90.0
    retry: RetryConfig = RetryConfig()

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalysisConfig:
        return cls(
            sample_seed=settings.sample_seed,
            min_batch_size=settings.hierarchical_min_batch,
            max_batch_size=settings.hierarchical_max_batch,
            max_concurrency=settings.map_concurrency,
            batch_timeout=settings.batch_timeout_seconds,
            retry=RetryConfig.from_settings(settings),
        )


@dataclass(frozen=True)
class RetrievalConfig:
    """Coverage gate and per-transcript diversity cap for chunk retrieval."""

    min_embedding_coverage: float = 0.5
    per_transcript_share: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> RetrievalConfig:
        return cls(
            min_embedding_coverage=settings.min_embedding_coverage,
            per_transcript_share=settings.per_transcript_share,
        )
