"""Test helpers: transcript factories and fake model services."""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from datetime import date, timedelta
from typing import Any
from unittest.mock import MagicMock

from src.analysis.models import BatchDigest, DateRange, TrendReport
from src.ingestion.models import Transcript
from src.pipeline_config import RetryConfig

NO_WAIT_RETRY = RetryConfig(attempts=2, min_wait=0.0, max_wait=0.0)


def make_transcript(
    tid: str,
    day: date = date(2024, 3, 4),
    text: str = "REP: Hi there.\n\nPROSPECT: Hello.",
    rep_id: str = "rep-1",
    call_type: str | None = "Discovery",
    account_name: str | None = "Acme",
) -> Transcript:
    return Transcript(
        id=tid,
        text=text,
        rep_id=rep_id,
        call_date=day,
        call_type=call_type,
        account_name=account_name,
    )


def daily_calls(count: int, start: date = date(2024, 1, 7), **kwargs: Any) -> list[Transcript]:
    """One call per day starting on *start* (a Sunday by default)."""
    return [make_transcript(f"t{i:04d}", start + timedelta(days=i), **kwargs) for i in range(count)]


def tool_response(name: str, payload: Any) -> MagicMock:
    """A fake Anthropic Messages response holding one tool_use block."""
    block = MagicMock()
    block.type = "tool_use"
    block.name = name
    block.input = payload
    response = MagicMock()
    response.content = [block]
    return response


def json_tool_response(name: str, payload: Any) -> MagicMock:
    return tool_response(name, json.dumps(payload))


class FakeEmbedder:
    """Deterministic embedder; texts listed in *fail_on* raise the given error."""

    def __init__(self, dim: int = 3, fail_on: dict[str, Exception] | None = None) -> None:
        self.dim = dim
        self.fail_on = fail_on or {}
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        for marker, exc in self.fail_on.items():
            if marker in text:
                raise exc
        return [float(len(text) % 7 + 1)] + [1.0] * (self.dim - 1)


class FakeSummarizer:
    """Records every call; *batch_errors* maps batch index to errors raised in order."""

    def __init__(
        self,
        batch_errors: dict[int, list[Exception]] | None = None,
        on_batch: threading.Event | None = None,
        block_batch: tuple[int, threading.Event] | None = None,
    ) -> None:
        self.batch_errors = batch_errors or {}
        self.on_batch = on_batch
        self.block_batch = block_batch
        self.analyzed: list[list[str]] = []
        self.batches: list[int] = []
        self.synthesized: list[BatchDigest] | None = None
        self._lock = threading.Lock()

    def analyze_calls(self, calls: Sequence[Transcript], date_range: DateRange) -> TrendReport:
        self.analyzed.append([c.id for c in calls])
        return TrendReport(summary=f"{len(calls)} calls, {date_range.label()}")

    def summarize_batch(
        self, batch_index: int, calls: Sequence[Transcript], date_range: DateRange
    ) -> BatchDigest:
        with self._lock:
            self.batches.append(batch_index)
            errors = self.batch_errors.get(batch_index)
            error = errors.pop(0) if errors else None
        if self.on_batch is not None:
            self.on_batch.set()
        if self.block_batch is not None and self.block_batch[0] == batch_index:
            self.block_batch[1].wait(5)
        if error is not None:
            raise error
        return BatchDigest(
            batch_index=batch_index,
            call_count=len(calls),
            date_range=date_range,
            key_findings=[f"finding {batch_index}"],
        )

    def synthesize(
        self, digests: Sequence[BatchDigest], date_range: DateRange, total_calls: int
    ) -> TrendReport:
        self.synthesized = list(digests)
        return TrendReport(summary=f"synthesis of {total_calls} calls")
