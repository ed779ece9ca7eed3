"""FastAPI dependency providers.

Each provider builds its service once per process. Tests replace them via
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from src.analysis.orchestrator import AnalysisOrchestrator
from src.analysis.scope import SupabaseTranscriptSource, TranscriptSource
from src.analysis.summarizer import ClaudeSummarizer
from src.config import settings
from src.extraction.extractor import EntityExtractor
from src.indexing.backfill import Backfiller
from src.ingestion.embeddings import Embedder, OpenAIEmbedder
from src.ingestion.storage import ChunkStore, SupabaseChunkStore
from src.pipeline_config import (
    AnalysisConfig,
    BackfillConfig,
    ChunkingConfig,
    RetrievalConfig,
    TierThresholds,
)


@lru_cache(maxsize=1)
def get_chunk_store() -> ChunkStore:
    return SupabaseChunkStore()


@lru_cache(maxsize=1)
def get_transcript_source() -> TranscriptSource:
    return SupabaseTranscriptSource()


@lru_cache(maxsize=1)
def get_embedder() -> Embedder:
    return OpenAIEmbedder()


@lru_cache(maxsize=1)
def get_backfiller() -> Backfiller:
    # One instance per process so job ids stay resolvable across requests
    return Backfiller(
        store=get_chunk_store(),
        embedder=get_embedder(),
        extractor=EntityExtractor(),
        config=BackfillConfig.from_settings(settings),
    )


@lru_cache(maxsize=1)
def get_orchestrator() -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        source=get_transcript_source(),
        summarizer=ClaudeSummarizer(),
        thresholds=get_thresholds(),
        config=AnalysisConfig.from_settings(settings),
    )


def get_chunking_config() -> ChunkingConfig:
    return ChunkingConfig.from_settings(settings)


def get_thresholds() -> TierThresholds:
    return TierThresholds.from_settings(settings)


def get_retrieval_config() -> RetrievalConfig:
    return RetrievalConfig.from_settings(settings)
