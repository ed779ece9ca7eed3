"""Transcript submission: chunk transcripts and replace their stored chunks."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from src.api.dependencies import get_chunk_store, get_chunking_config
from src.api.models import ChunkRequest, ChunkResponse
from src.ingestion.pipeline import chunk_transcripts
from src.ingestion.storage import ChunkStore
from src.pipeline_config import ChunkingConfig

router = APIRouter()


@router.post("/api/transcripts/chunk", response_model=ChunkResponse)
def chunk(
    request: ChunkRequest,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
    config: Annotated[ChunkingConfig, Depends(get_chunking_config)],
) -> ChunkResponse:
    """Chunk submitted transcripts. Re-submitting a transcript replaces its chunks.

    Transcripts with empty text are reported under ``skipped``.
    """
    summary = chunk_transcripts(store, [t.to_transcript() for t in request.transcripts], config)
    return ChunkResponse(
        chunk_counts=summary.chunk_counts,
        skipped=summary.skipped,
        total_chunks=summary.total_chunks,
    )
