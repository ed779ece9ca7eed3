"""Pydantic request/response schemas for the Coaching Core API."""

from __future__ import annotations

import dataclasses
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from src.analysis.models import AnalysisResult, ScopeRequest, TierPreview
from src.indexing.backfill import JobStatus
from src.ingestion.models import IndexHealth, Transcript
from src.pipeline_config import AnalysisTier, JobKind, JobState


class TranscriptIn(BaseModel):
    """A transcript submitted for chunking."""

    id: str
    text: str
    rep_id: str
    call_date: date
    call_type: str | None = None
    account_name: str | None = None

    def to_transcript(self) -> Transcript:
        return Transcript(**self.model_dump())


class ChunkRequest(BaseModel):
    transcripts: list[TranscriptIn] = Field(min_length=1)


class ChunkResponse(BaseModel):
    chunk_counts: dict[str, int]
    skipped: dict[str, str] = {}
    total_chunks: int


class BackfillRequest(BaseModel):
    """Request body for /api/indexing/backfill.

    Omitting ``transcript_ids`` backfills every chunk that still needs it.
    """

    kind: JobKind
    transcript_ids: list[str] | None = None
    retry_failed: bool = True


class JobResponse(BaseModel):
    id: str
    kind: JobKind
    state: JobState
    total: int
    completed: int
    failed: int
    skipped: int
    started_at: datetime
    last_heartbeat_at: datetime
    cancel_requested: bool
    error: str | None = None
    stalled: bool = False
    seconds_since_heartbeat: float | None = None

    @classmethod
    def from_status(cls, status: JobStatus) -> JobResponse:
        job = status.job
        return cls(
            id=job.id,
            kind=job.kind,
            state=job.state,
            total=job.total,
            completed=job.completed,
            failed=job.failed,
            skipped=job.skipped,
            started_at=job.started_at,
            last_heartbeat_at=job.last_heartbeat_at,
            cancel_requested=job.cancel_requested,
            error=job.error,
            stalled=status.stalled,
            seconds_since_heartbeat=status.stall.seconds_since_heartbeat if status.stall else None,
        )


class HealthRequest(BaseModel):
    transcript_ids: list[str]


class IndexHealthResponse(BaseModel):
    total_chunks: int
    with_embeddings: int
    extraction_completed: int
    extraction_pending: int
    extraction_failed: int
    embedding_coverage: float
    extraction_coverage: float

    @classmethod
    def from_health(cls, health: IndexHealth) -> IndexHealthResponse:
        return cls(
            **dataclasses.asdict(health),
            embedding_coverage=health.embedding_coverage,
            extraction_coverage=health.extraction_coverage,
        )


class ScopeBody(BaseModel):
    """Either explicit ``transcript_ids`` or a ``rep_id`` with optional dates."""

    transcript_ids: list[str] | None = None
    rep_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    def to_scope(self) -> ScopeRequest:
        return ScopeRequest(
            transcript_ids=tuple(self.transcript_ids) if self.transcript_ids is not None else None,
            rep_id=self.rep_id,
            date_from=self.date_from,
            date_to=self.date_to,
        )


class PreviewResponse(BaseModel):
    call_count: int
    tier: AnalysisTier
    direct_max: int
    sampling_max: int

    @classmethod
    def from_preview(cls, preview: TierPreview) -> PreviewResponse:
        return cls(
            call_count=preview.call_count,
            tier=preview.tier,
            direct_max=preview.thresholds.direct_max,
            sampling_max=preview.thresholds.sampling_max,
        )


class ReportRequest(ScopeBody):
    """Scope plus the preview the user saw, so a stale tier can be reported."""

    preview_call_count: int | None = None
    preview_tier: AnalysisTier | None = None


class ReportResponse(BaseModel):
    summary: str
    trends: dict[str, Any] = {}
    top_priorities: list[dict[str, Any]] = []
    excluded_calls: int = 0
    notes: list[str] = []
    metadata: dict[str, Any]

    @classmethod
    def from_result(cls, result: AnalysisResult) -> ReportResponse:
        meta = result.metadata
        return cls(
            summary=result.report.summary,
            trends=result.report.trends,
            top_priorities=result.report.top_priorities,
            excluded_calls=result.report.excluded_calls,
            notes=result.report.notes,
            metadata={
                **dataclasses.asdict(meta),
                "tier_changed": meta.tier_changed,
            },
        )


class QueryRequest(BaseModel):
    """Request body for the /api/query endpoint."""

    question: str
    transcript_ids: list[str] = Field(min_length=1)
    token_budget: int = Field(default=4000, gt=0)


class SourceChunk(BaseModel):
    """A single retrieved transcript chunk with metadata."""

    content: str
    transcript_id: str
    chunk_index: int
    similarity: float | None = None
    account_name: str | None = None
    call_date: str | None = None


class QueryResponse(BaseModel):
    """Response body for the /api/query endpoint."""

    answer: str
    sources: list[SourceChunk]
    model: str | None = None
    usage: dict[str, Any] | None = None
    low_confidence: bool = False
    coverage: float | None = None
