"""Runs a coaching-trend analysis using the tier that fits the scope size.

* Direct: every call's full text in one summarization call.
* Sampled: a stratified subset of ``direct_max`` calls, then as Direct.
* Hierarchical: weekly batches summarized concurrently (map), then one
  synthesis call over the digests in chronological order (reduce).

A batch that still fails after retries becomes a placeholder digest, so
the final report notes the excluded calls instead of dropping them.
Quota exhaustion and cancellation are the only ways a run stops early.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from src.analysis.models import (
    AnalysisMetadata,
    AnalysisResult,
    BatchDigest,
    DateRange,
    HierarchicalInfo,
    SamplingInfo,
    ScopeRequest,
    TierPreview,
    TrendReport,
)
from src.analysis.sampling import split_into_batches, stratified_sample
from src.analysis.scope import TranscriptSource, resolve_scope
from src.analysis.summarizer import SummarizerService
from src.analysis.tiers import preview_tier, revalidate_tier
from src.errors import AnalysisCancelledError, PermanentInputError, QuotaExceededError
from src.ingestion.models import Transcript
from src.pipeline_config import AnalysisConfig, AnalysisTier, TierThresholds
from src.retries import call_with_retry

logger = logging.getLogger(__name__)


def _check_cancel(cancel_event: threading.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError(f"analysis cancelled before {stage}")


class AnalysisOrchestrator:
    def __init__(
        self,
        source: TranscriptSource,
        summarizer: SummarizerService,
        thresholds: TierThresholds = TierThresholds(),
        config: AnalysisConfig = AnalysisConfig(),
    ) -> None:
        self.source = source
        self.summarizer = summarizer
        self.thresholds = thresholds
        self.config = config

    def preview(self, request: ScopeRequest) -> TierPreview:
        return preview_tier(self.source, request, self.thresholds)

    def run(
        self,
        request: ScopeRequest,
        preview: TierPreview | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AnalysisResult:
        """Resolve the scope, re-check the tier and execute it.

        Raises:
            PermanentInputError: The scope is empty or has no usable text.
            QuotaExceededError: The summarization quota ran out.
            AnalysisCancelledError: *cancel_event* was set between units of work.
        """
        scope = resolve_scope(self.source, request)
        if scope.call_count == 0:
            raise PermanentInputError("no calls found in the selected scope")

        tier, _ = revalidate_tier(preview, scope, self.thresholds)
        loaded = self.source.get_transcripts(scope.transcript_ids)
        calls = [c for c in loaded if c.text.strip()]
        skipped = len(loaded) - len(calls)
        if not calls:
            raise PermanentInputError("no calls in scope have transcript text")
        if skipped:
            logger.warning("Skipping %d calls with empty transcript text", skipped)

        date_range = DateRange.of(calls)
        logger.info("Running %s analysis over %d calls (%s)", tier.value, len(calls), date_range.label())
        _check_cancel(cancel_event, "analysis")

        sampling: SamplingInfo | None = None
        hierarchical: HierarchicalInfo | None = None
        if tier is AnalysisTier.DIRECT:
            report = self._analyze(calls, date_range)
            analyzed = len(calls)
        elif tier is AnalysisTier.SAMPLED:
            sample = stratified_sample(calls, self.thresholds.direct_max, self.config.sample_seed)
            report = self._analyze(sample.sampled, date_range)
            analyzed = len(sample.sampled)
            sampling = SamplingInfo(
                sampled_count=len(sample.sampled), original_count=sample.original_count
            )
        else:
            report, hierarchical = self._run_hierarchical(calls, date_range, cancel_event)
            analyzed = len(calls) - report.excluded_calls

        if skipped:
            report.excluded_calls += skipped
            report.notes.append(f"{skipped} calls skipped: empty transcript text")

        metadata = AnalysisMetadata(
            tier=tier,
            total_calls=len(loaded),
            analyzed_calls=analyzed,
            preview_tier=preview.tier if preview else None,
            sampling=sampling,
            hierarchical=hierarchical,
        )
        return AnalysisResult(report=report, metadata=metadata)

    def _analyze(self, calls: Sequence[Transcript], date_range: DateRange) -> TrendReport:
        return call_with_retry(
            lambda: self.summarizer.analyze_calls(calls, date_range), self.config.retry
        )

    def _summarize_batch(self, batch_index: int, batch: list[Transcript]) -> BatchDigest:
        batch_range = DateRange.of(batch)
        return call_with_retry(
            lambda: self.summarizer.summarize_batch(batch_index, batch, batch_range),
            self.config.retry,
        )

    def _map_batches(
        self,
        batches: list[list[Transcript]],
        cancel_event: threading.Event | None,
    ) -> dict[int, BatchDigest]:
        """Summarize batches with at most ``max_concurrency`` calls in flight.

        Cancellation is checked before each submission. A quota error stops
        further submissions and is re-raised once nothing else is pending.
        """
        workers = max(1, min(self.config.max_concurrency, len(batches)))
        queue = deque(enumerate(batches))
        running: dict[Future[BatchDigest], tuple[int, float]] = {}
        digests: dict[int, BatchDigest] = {}
        quota_error: QuotaExceededError | None = None

        def placeholder(idx: int, reason: str) -> None:
            batch = batches[idx]
            logger.warning("Batch %d (%d calls) unavailable: %s", idx, len(batch), reason)
            digests[idx] = BatchDigest.placeholder(idx, len(batch), reason, DateRange.of(batch))

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="analysis-batch")
        try:
            while queue or running:
                while queue and len(running) < workers and quota_error is None:
                    _check_cancel(cancel_event, "next batch")
                    idx, batch = queue.popleft()
                    future = executor.submit(self._summarize_batch, idx, batch)
                    running[future] = (idx, time.monotonic() + self.config.batch_timeout)

                if not running:
                    break

                next_deadline = min(deadline for _, deadline in running.values())
                done, _ = wait(
                    running,
                    timeout=max(0.0, next_deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    idx, _ = running.pop(future)
                    try:
                        digests[idx] = future.result()
                    except QuotaExceededError as exc:
                        quota_error = exc
                        queue.clear()
                    except Exception as exc:
                        placeholder(idx, f"{type(exc).__name__}: {exc}")

                now = time.monotonic()
                for future, (idx, deadline) in list(running.items()):
                    if deadline <= now:
                        future.cancel()
                        running.pop(future)
                        placeholder(idx, f"timed out after {self.config.batch_timeout:.0f}s")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if quota_error is not None:
            raise quota_error
        return digests

    def _run_hierarchical(
        self,
        calls: list[Transcript],
        date_range: DateRange,
        cancel_event: threading.Event | None,
    ) -> tuple[TrendReport, HierarchicalInfo]:
        batches = split_into_batches(calls, self.config.min_batch_size, self.config.max_batch_size)
        logger.info("Split %d calls into %d batches", len(calls), len(batches))

        digests = self._map_batches(batches, cancel_event)
        ordered = [digests[i] for i in sorted(digests)]
        failed = [d for d in ordered if d.unavailable]
        excluded = sum(d.call_count for d in failed)

        info = HierarchicalInfo(
            batches_analyzed=len(ordered) - len(failed),
            calls_per_batch=[len(b) for b in batches],
            failed_batches=[d.batch_index for d in failed],
        )

        if len(failed) == len(ordered):
            report = TrendReport(summary=f"Analysis unavailable for all {len(calls)} calls.")
        else:
            _check_cancel(cancel_event, "synthesis")
            report = call_with_retry(
                lambda: self.summarizer.synthesize(ordered, date_range, len(calls)),
                self.config.retry,
            )

        report.excluded_calls += excluded
        for digest in failed:
            period = digest.date_range.label() if digest.date_range else "unknown dates"
            report.notes.append(f"Batch {digest.batch_index + 1} ({period}): {digest.note}")
        return report, info
