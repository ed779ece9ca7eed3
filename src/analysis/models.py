"""Data models for scope resolution, tier selection and trend reports."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.ingestion.models import Transcript
from src.pipeline_config import AnalysisTier, TierThresholds


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @classmethod
    def of(cls, calls: Iterable[Transcript]) -> DateRange:
        dates = sorted(c.call_date for c in calls)
        if not dates:
            raise ValueError("cannot build a date range from no calls")
        return cls(start=dates[0], end=dates[-1])

    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


@dataclass(frozen=True)
class ScopeRequest:
    """What the caller asked for: explicit ids, or a rep plus date range."""

    transcript_ids: tuple[str, ...] | None = None
    rep_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class AnalysisScope:
    """The resolved, immutable set of transcripts for one analysis run."""

    transcript_ids: frozenset[str]

    @property
    def call_count(self) -> int:
        return len(self.transcript_ids)


@dataclass(frozen=True)
class TierPreview:
    """Non-committal tier estimate shown before a run is started."""

    call_count: int
    tier: AnalysisTier
    thresholds: TierThresholds


@dataclass
class BatchDigest:
    """Map-step output for one batch of calls in hierarchical analysis."""

    batch_index: int
    call_count: int
    date_range: DateRange | None = None
    key_findings: list[str] = field(default_factory=list)
    avg_scores: dict[str, float | None] = field(default_factory=dict)
    notable_quotes: list[str] = field(default_factory=list)
    top_improvement_areas: list[str] = field(default_factory=list)
    top_missing_info: list[str] = field(default_factory=list)
    unavailable: bool = False
    reason: str | None = None

    @classmethod
    def placeholder(
        cls,
        batch_index: int,
        call_count: int,
        reason: str,
        date_range: DateRange | None = None,
    ) -> BatchDigest:
        """Stand-in for a batch that failed after retries."""
        return cls(
            batch_index=batch_index,
            call_count=call_count,
            date_range=date_range,
            unavailable=True,
            reason=reason,
        )

    @property
    def note(self) -> str:
        return f"analysis unavailable for {self.call_count} calls"


@dataclass
class TrendReport:
    """Final coaching-trend report."""

    summary: str
    trends: dict[str, Any] = field(default_factory=dict)
    top_priorities: list[dict[str, Any]] = field(default_factory=list)
    excluded_calls: int = 0
    notes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SamplingInfo:
    sampled_count: int
    original_count: int
    method: str = "stratified"


@dataclass(frozen=True)
class HierarchicalInfo:
    batches_analyzed: int
    calls_per_batch: list[int]
    failed_batches: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class AnalysisMetadata:
    tier: AnalysisTier
    total_calls: int
    analyzed_calls: int
    preview_tier: AnalysisTier | None = None
    sampling: SamplingInfo | None = None
    hierarchical: HierarchicalInfo | None = None

    @property
    def tier_changed(self) -> bool:
        return self.preview_tier is not None and self.preview_tier is not self.tier


@dataclass(frozen=True)
class AnalysisResult:
    report: TrendReport
    metadata: AnalysisMetadata
