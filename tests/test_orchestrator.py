"""Tests for the tiered analysis orchestrator with a fake summarizer."""

from __future__ import annotations

import threading
from datetime import date

import pytest
from helpers import NO_WAIT_RETRY, FakeSummarizer, daily_calls, make_transcript

from src.analysis.models import ScopeRequest
from src.analysis.orchestrator import AnalysisOrchestrator
from src.analysis.scope import InMemoryTranscriptSource
from src.errors import (
    AnalysisCancelledError,
    PermanentInputError,
    QuotaExceededError,
    TransientServiceError,
)
from src.ingestion.models import Transcript
from src.pipeline_config import AnalysisConfig, AnalysisTier, TierThresholds

THRESHOLDS = TierThresholds(direct_max=5, sampling_max=10)
REP = ScopeRequest(rep_id="rep-1")


def _orchestrator(
    calls: list[Transcript],
    summarizer: FakeSummarizer,
    **config: object,
) -> AnalysisOrchestrator:
    options: dict[str, object] = {
        "min_batch_size": 5,
        "max_batch_size": 7,
        "max_concurrency": 2,
        "retry": NO_WAIT_RETRY,
    }
    options.update(config)
    return AnalysisOrchestrator(
        InMemoryTranscriptSource(calls),
        summarizer,
        THRESHOLDS,
        AnalysisConfig(**options),  # type: ignore[arg-type]
    )


class TestDirectAndSampled:
    def test_direct_uses_every_call(self) -> None:
        calls = daily_calls(4)
        summarizer = FakeSummarizer()

        result = _orchestrator(calls, summarizer).run(REP)

        assert result.metadata.tier is AnalysisTier.DIRECT
        assert result.metadata.analyzed_calls == 4
        assert summarizer.analyzed == [[c.id for c in calls]]
        assert result.report.summary == "4 calls, 2024-01-07 to 2024-01-10"

    def test_sampled_reports_sampling_metadata(self) -> None:
        summarizer = FakeSummarizer()

        result = _orchestrator(daily_calls(9), summarizer).run(REP)

        meta = result.metadata
        assert meta.tier is AnalysisTier.SAMPLED
        assert meta.total_calls == 9
        assert meta.analyzed_calls == 5
        assert meta.sampling is not None
        assert (meta.sampling.sampled_count, meta.sampling.original_count) == (5, 9)
        assert len(summarizer.analyzed[0]) == 5
        # the report still describes the full date range of the scope
        assert result.report.summary.endswith("2024-01-07 to 2024-01-15")

    def test_empty_text_calls_skipped_and_noted(self) -> None:
        calls = daily_calls(3) + [make_transcript("blank", date(2024, 1, 20), text="  ")]
        summarizer = FakeSummarizer()

        result = _orchestrator(calls, summarizer).run(REP)

        assert "blank" not in summarizer.analyzed[0]
        assert result.report.excluded_calls == 1
        assert result.report.notes == ["1 calls skipped: empty transcript text"]
        assert result.metadata.total_calls == 4

    def test_empty_scope_rejected(self) -> None:
        with pytest.raises(PermanentInputError):
            _orchestrator([], FakeSummarizer()).run(ScopeRequest(rep_id="nobody"))

    def test_all_blank_rejected(self) -> None:
        calls = [make_transcript("a", text=""), make_transcript("b", text=" ")]
        with pytest.raises(PermanentInputError):
            _orchestrator(calls, FakeSummarizer()).run(REP)

    def test_stale_preview_is_reported_not_rejected(self) -> None:
        source_calls = daily_calls(5)
        orchestrator = _orchestrator(source_calls, FakeSummarizer())
        preview = orchestrator.preview(REP)
        assert preview.tier is AnalysisTier.DIRECT

        orchestrator.source.add(make_transcript("extra", date(2024, 2, 1)))  # type: ignore[attr-defined]
        result = orchestrator.run(REP, preview=preview)

        assert result.metadata.tier is AnalysisTier.SAMPLED
        assert result.metadata.preview_tier is AnalysisTier.DIRECT
        assert result.metadata.tier_changed is True


class TestHierarchical:
    def test_map_then_reduce_in_order(self) -> None:
        summarizer = FakeSummarizer()

        result = _orchestrator(daily_calls(21), summarizer).run(REP)

        assert result.metadata.tier is AnalysisTier.HIERARCHICAL
        assert sorted(summarizer.batches) == [0, 1, 2]
        assert summarizer.synthesized is not None
        assert [d.batch_index for d in summarizer.synthesized] == [0, 1, 2]
        info = result.metadata.hierarchical
        assert info is not None
        assert info.calls_per_batch == [7, 7, 7]
        assert info.batches_analyzed == 3
        assert result.report.summary == "synthesis of 21 calls"
        assert result.metadata.analyzed_calls == 21

    def test_failed_batch_becomes_placeholder(self) -> None:
        summarizer = FakeSummarizer(batch_errors={1: [PermanentInputError("bad batch")]})

        result = _orchestrator(daily_calls(21), summarizer).run(REP)

        assert summarizer.synthesized is not None
        placeholder = summarizer.synthesized[1]
        assert placeholder.unavailable is True
        assert placeholder.call_count == 7
        assert result.report.excluded_calls == 7
        assert result.report.notes == [
            "Batch 2 (2024-01-14 to 2024-01-20): analysis unavailable for 7 calls"
        ]
        assert result.metadata.hierarchical is not None
        assert result.metadata.hierarchical.failed_batches == [1]
        assert result.metadata.analyzed_calls == 14

    def test_transient_batch_error_retried(self) -> None:
        summarizer = FakeSummarizer(batch_errors={0: [TransientServiceError("overloaded")]})

        result = _orchestrator(daily_calls(21), summarizer).run(REP)

        assert summarizer.batches.count(0) == 2
        assert result.report.excluded_calls == 0

    def test_all_batches_failed(self) -> None:
        errors = {i: [PermanentInputError("x")] for i in range(3)}
        summarizer = FakeSummarizer(batch_errors=errors)

        result = _orchestrator(daily_calls(21), summarizer).run(REP)

        assert summarizer.synthesized is None
        assert result.report.summary == "Analysis unavailable for all 21 calls."
        assert result.report.excluded_calls == 21
        assert len(result.report.notes) == 3

    def test_quota_stops_submission_and_propagates(self) -> None:
        summarizer = FakeSummarizer(batch_errors={0: [QuotaExceededError("credits exhausted")]})

        with pytest.raises(QuotaExceededError):
            _orchestrator(daily_calls(21), summarizer, max_concurrency=1).run(REP)

        assert summarizer.batches == [0]
        assert summarizer.synthesized is None

    def test_batch_timeout_becomes_placeholder(self) -> None:
        release = threading.Event()
        summarizer = FakeSummarizer(block_batch=(0, release))
        try:
            result = _orchestrator(
                daily_calls(21), summarizer, max_concurrency=3, batch_timeout=0.2
            ).run(REP)
        finally:
            release.set()

        assert result.metadata.hierarchical is not None
        assert result.metadata.hierarchical.failed_batches == [0]
        assert summarizer.synthesized is not None
        assert "timed out" in (summarizer.synthesized[0].reason or "")

    def test_concurrency_bound_respected(self) -> None:
        in_flight = 0
        peak = 0
        lock = threading.Lock()

        class Counting(FakeSummarizer):
            def summarize_batch(self, batch_index, calls, date_range):  # type: ignore[no-untyped-def]
                nonlocal in_flight, peak
                with lock:
                    in_flight += 1
                    peak = max(peak, in_flight)
                try:
                    threading.Event().wait(0.05)
                    return super().summarize_batch(batch_index, calls, date_range)
                finally:
                    with lock:
                        in_flight -= 1

        _orchestrator(daily_calls(42), Counting(), max_concurrency=2).run(REP)
        assert peak <= 2


class TestCancellation:
    def test_cancel_before_start(self) -> None:
        cancel = threading.Event()
        cancel.set()
        summarizer = FakeSummarizer()

        with pytest.raises(AnalysisCancelledError):
            _orchestrator(daily_calls(4), summarizer).run(REP, cancel_event=cancel)

        assert summarizer.analyzed == []

    def test_cancel_between_batches(self) -> None:
        cancel = threading.Event()
        summarizer = FakeSummarizer(on_batch=cancel)

        with pytest.raises(AnalysisCancelledError):
            _orchestrator(daily_calls(21), summarizer, max_concurrency=1).run(
                REP, cancel_event=cancel
            )

        assert summarizer.batches == [0]
        assert summarizer.synthesized is None
