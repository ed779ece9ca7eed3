"""Coaching-trend analysis endpoints: tier preview and report generation."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from src.analysis.models import TierPreview
from src.analysis.orchestrator import AnalysisOrchestrator
from src.api.dependencies import get_orchestrator
from src.api.models import PreviewResponse, ReportRequest, ReportResponse, ScopeBody

router = APIRouter(prefix="/api/analysis")


@router.post("/preview", response_model=PreviewResponse)
def preview(
    request: ScopeBody,
    orchestrator: Annotated[AnalysisOrchestrator, Depends(get_orchestrator)],
) -> PreviewResponse:
    """Count in-scope calls and say which tier a report would use. Nothing is run."""
    return PreviewResponse.from_preview(orchestrator.preview(request.to_scope()))


@router.post("/report", response_model=ReportResponse)
def report(
    request: ReportRequest,
    orchestrator: Annotated[AnalysisOrchestrator, Depends(get_orchestrator)],
) -> ReportResponse:
    """Run the analysis. The tier is recomputed from the scope as resolved now."""
    preview = None
    if request.preview_tier is not None:
        preview = TierPreview(
            call_count=request.preview_call_count or 0,
            tier=request.preview_tier,
            thresholds=orchestrator.thresholds,
        )
    result = orchestrator.run(request.to_scope(), preview=preview)
    return ReportResponse.from_result(result)
