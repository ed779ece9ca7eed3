"""Tier selection: direct, sampled or hierarchical, by in-scope call count."""

from __future__ import annotations

import logging

from src.analysis.models import AnalysisScope, ScopeRequest, TierPreview
from src.analysis.scope import TranscriptSource, resolve_scope
from src.pipeline_config import AnalysisTier, TierThresholds

logger = logging.getLogger(__name__)


def select_tier(call_count: int, thresholds: TierThresholds = TierThresholds()) -> AnalysisTier:
    """Direct up to ``direct_max`` calls, sampled up to ``sampling_max``, else hierarchical."""
    if call_count <= thresholds.direct_max:
        return AnalysisTier.DIRECT
    if call_count <= thresholds.sampling_max:
        return AnalysisTier.SAMPLED
    return AnalysisTier.HIERARCHICAL


def preview_tier(
    source: TranscriptSource,
    request: ScopeRequest,
    thresholds: TierThresholds = TierThresholds(),
) -> TierPreview:
    """Count in-scope calls and report the tier a run would use right now."""
    scope = resolve_scope(source, request)
    return TierPreview(
        call_count=scope.call_count,
        tier=select_tier(scope.call_count, thresholds),
        thresholds=thresholds,
    )


def revalidate_tier(
    preview: TierPreview | None,
    scope: AnalysisScope,
    thresholds: TierThresholds = TierThresholds(),
) -> tuple[AnalysisTier, bool]:
    """Recompute the tier for the resolved scope.

    Returns the tier to execute and whether it differs from the preview.
    A stale preview is not an error.
    """
    tier = select_tier(scope.call_count, thresholds)
    if preview is None:
        return tier, False

    changed = preview.tier is not tier
    if changed:
        logger.info(
            "Tier changed from %s (%d calls) to %s (%d calls) since preview",
            preview.tier.value,
            preview.call_count,
            tier.value,
            scope.call_count,
        )
    return tier, changed
