"""Indexing endpoints: start/poll/cancel backfills and read index health."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from src.api.dependencies import get_backfiller, get_chunk_store
from src.api.models import BackfillRequest, HealthRequest, IndexHealthResponse, JobResponse
from src.indexing.backfill import Backfiller, JobStatus
from src.ingestion.storage import ChunkStore

router = APIRouter(prefix="/api/indexing")


def _status_or_404(backfiller: Backfiller, job_id: str) -> JobStatus:
    status = backfiller.get_job(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.post("/backfill", response_model=JobResponse, status_code=202)
def start_backfill(
    request: BackfillRequest,
    backfiller: Annotated[Backfiller, Depends(get_backfiller)],
) -> JobResponse:
    """Start a background backfill; poll ``/jobs/{id}`` for progress."""
    try:
        job = backfiller.start_backfill(
            request.kind,
            transcript_ids=request.transcript_ids,
            retry_failed=request.retry_failed,
        )
    except ValueError as exc:
        # No embedder or extractor configured for this kind
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return JobResponse.from_status(_status_or_404(backfiller, job.id))


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    backfiller: Annotated[Backfiller, Depends(get_backfiller)],
) -> JobResponse:
    return JobResponse.from_status(_status_or_404(backfiller, job_id))


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: str,
    backfiller: Annotated[Backfiller, Depends(get_backfiller)],
) -> JobResponse:
    """Request cancellation; the worker stops before its next batch."""
    if not backfiller.cancel(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_status(_status_or_404(backfiller, job_id))


@router.post("/health", response_model=IndexHealthResponse)
def index_health(
    request: HealthRequest,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
) -> IndexHealthResponse:
    return IndexHealthResponse.from_health(store.health(request.transcript_ids))
