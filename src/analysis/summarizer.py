"""Claude-powered trend analysis: direct reports, batch digests and synthesis.

Every call forces a tool-use response so the result is structured JSON.
Prompt construction lives in plain ``build_*_prompt`` functions, separate
from the client, so exactly what is sent to the model is easy to inspect.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from anthropic import Anthropic

from src.analysis.models import BatchDigest, DateRange, TrendReport
from src.config import settings
from src.errors import TransientServiceError, classify_service_error
from src.ingestion.models import Transcript

logger = logging.getLogger(__name__)

TREND_DIMENSIONS = [
    "meddpicc",
    "gap_selling",
    "active_listening",
    "discovery_questions",
    "next_steps",
]

_TREND_ENUM = ["improving", "stable", "declining"]

TREND_TOOL: dict[str, Any] = {
    "name": "provide_trend_analysis",
    "description": "Provide a structured coaching-trend analysis for a sales rep.",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "2-3 sentence executive summary of overall performance trends",
            },
            "trends": {
                "type": "object",
                "properties": {
                    dim: {
                        "type": "object",
                        "properties": {
                            "trend": {"type": "string", "enum": _TREND_ENUM},
                            "key_insight": {"type": "string"},
                            "evidence": {"type": "array", "items": {"type": "string"}},
                            "recommendation": {"type": "string"},
                        },
                        "required": ["trend", "key_insight", "evidence", "recommendation"],
                    }
                    for dim in TREND_DIMENSIONS
                },
                "required": TREND_DIMENSIONS,
            },
            "top_priorities": {
                "type": "array",
                "description": "Top 3 priority areas to focus on",
                "items": {
                    "type": "object",
                    "properties": {
                        "area": {"type": "string"},
                        "reason": {"type": "string"},
                        "action_item": {"type": "string"},
                    },
                    "required": ["area", "reason", "action_item"],
                },
            },
        },
        "required": ["summary", "trends", "top_priorities"],
    },
}

BATCH_DIGEST_TOOL: dict[str, Any] = {
    "name": "provide_batch_digest",
    "description": "Summarize one chronological batch of sales calls.",
    "input_schema": {
        "type": "object",
        "properties": {
            "key_findings": {"type": "array", "items": {"type": "string"}},
            "avg_scores": {
                "type": "object",
                "description": "Average 0-100 score per dimension for this batch",
                "properties": {dim: {"type": "number"} for dim in TREND_DIMENSIONS},
            },
            "notable_quotes": {"type": "array", "items": {"type": "string"}},
            "top_improvement_areas": {"type": "array", "items": {"type": "string"}},
            "top_missing_info": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["key_findings", "avg_scores", "notable_quotes", "top_improvement_areas"],
    },
}

TREND_SYSTEM_PROMPT = (
    "You are an expert sales coaching analyst. Your job is to analyze a collection "
    "of sales call transcripts from one rep and identify TRENDS in their performance "
    "over time.\n\n"
    "For each dimension (MEDDPICC qualification, gap selling, active listening, "
    "discovery questions, next steps):\n"
    "- Say whether performance is IMPROVING, STABLE, or DECLINING\n"
    "- Give specific evidence from the calls\n"
    "- Give an actionable recommendation\n\n"
    "Be direct and specific. If something is declining, say so clearly."
)

BATCH_SYSTEM_PROMPT = (
    "You are an expert sales coaching analyst. Summarize this batch of sales call "
    "transcripts into a compact digest: key findings, average scores per coaching "
    "dimension, notable quotes, and the most common improvement areas and missing "
    "information. The digest will later be combined with digests of other periods."
)

SYNTHESIS_SYSTEM_PROMPT = (
    "You are an expert sales coaching analyst. Your job is to SYNTHESIZE multiple "
    "period digests into one trend analysis.\n\n"
    "The digests are in chronological order. Identify overall trends, note how "
    "patterns evolved from early to recent periods, aggregate the most common "
    "issues, and give recommendations based on the full picture. Some periods may "
    "be marked unavailable; do not invent findings for them."
)


def format_calls_for_prompt(calls: Sequence[Transcript]) -> str:
    parts: list[str] = []
    for idx, call in enumerate(calls):
        header = (
            f"### Call {idx + 1} ({call.call_date.isoformat()}, "
            f"{call.call_type or 'Call'}, {call.account_name or 'Unknown'})"
        )
        parts.append(f"{header}\n{call.text.strip()}")
    return "\n\n".join(parts)


def build_direct_prompt(calls: Sequence[Transcript], date_range: DateRange) -> str:
    return (
        f"Analyze these {len(calls)} sales calls from {date_range.label()} "
        f"and identify coaching trends.\n\n{format_calls_for_prompt(calls)}"
    )


def build_batch_prompt(
    batch_index: int, calls: Sequence[Transcript], date_range: DateRange
) -> str:
    return (
        f"Batch {batch_index + 1}: {len(calls)} calls from {date_range.label()}.\n\n"
        f"{format_calls_for_prompt(calls)}"
    )


def _format_digest(position: int, digest: BatchDigest) -> str:
    period = digest.date_range.label() if digest.date_range else "unknown dates"
    if digest.unavailable:
        return (
            f"### Period {position}: {period} ({digest.call_count} calls)\n"
            f"ANALYSIS UNAVAILABLE: {digest.note}."
        )

    lines = [f"### Period {position}: {period} ({digest.call_count} calls)"]
    if digest.avg_scores:
        scores = ", ".join(
            f"{dim}: {score:.1f}" if score is not None else f"{dim}: N/A"
            for dim, score in digest.avg_scores.items()
        )
        lines.append(f"Average scores: {scores}")
    if digest.key_findings:
        lines.append(f"Key findings: {'; '.join(digest.key_findings)}")
    if digest.top_improvement_areas:
        lines.append(f"Top improvement areas: {'; '.join(digest.top_improvement_areas)}")
    if digest.top_missing_info:
        lines.append(f"Top missing information: {'; '.join(digest.top_missing_info)}")
    if digest.notable_quotes:
        lines.append(f"Notable quotes: {'; '.join(digest.notable_quotes)}")
    return "\n".join(lines)


def build_synthesis_prompt(
    digests: Sequence[BatchDigest], date_range: DateRange, total_calls: int
) -> str:
    body = "\n\n".join(_format_digest(i + 1, d) for i, d in enumerate(digests))
    return (
        f"Synthesize these {len(digests)} period digests covering {total_calls} calls "
        f"from {date_range.label()} into one trend analysis.\n\n{body}"
    )


class SummarizerService(Protocol):
    def analyze_calls(self, calls: Sequence[Transcript], date_range: DateRange) -> TrendReport: ...

    def summarize_batch(
        self, batch_index: int, calls: Sequence[Transcript], date_range: DateRange
    ) -> BatchDigest: ...

    def synthesize(
        self, digests: Sequence[BatchDigest], date_range: DateRange, total_calls: int
    ) -> TrendReport: ...


def _tool_input(response: Any, tool_name: str) -> dict[str, Any]:
    for block in response.content:
        if block.type != "tool_use" or block.name != tool_name:
            continue
        data = block.input
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise TransientServiceError(f"unparseable {tool_name} payload") from exc
        return dict(data)
    # A missing tool call is a model hiccup, worth another attempt
    raise TransientServiceError(f"model returned no {tool_name} output")


def _report_from(data: dict[str, Any]) -> TrendReport:
    return TrendReport(
        summary=str(data.get("summary", "")),
        trends=dict(data.get("trends") or {}),
        top_priorities=list(data.get("top_priorities") or []),
    )


class ClaudeSummarizer:
    """Summarization service backed by the Anthropic Messages API."""

    def __init__(
        self,
        client: Anthropic | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
    ) -> None:
        self.client = client or Anthropic(
            api_key=settings.anthropic_api_key or None,
            timeout=settings.llm_timeout_seconds,
        )
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens

    def _call_tool(self, system: str, prompt: str, tool: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                tools=[tool],
                tool_choice={"type": "tool", "name": tool["name"]},
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise classify_service_error(exc) from exc
        return _tool_input(response, tool["name"])

    def analyze_calls(self, calls: Sequence[Transcript], date_range: DateRange) -> TrendReport:
        data = self._call_tool(TREND_SYSTEM_PROMPT, build_direct_prompt(calls, date_range), TREND_TOOL)
        return _report_from(data)

    def summarize_batch(
        self, batch_index: int, calls: Sequence[Transcript], date_range: DateRange
    ) -> BatchDigest:
        data = self._call_tool(
            BATCH_SYSTEM_PROMPT,
            build_batch_prompt(batch_index, calls, date_range),
            BATCH_DIGEST_TOOL,
        )
        scores = data.get("avg_scores") or {}
        return BatchDigest(
            batch_index=batch_index,
            call_count=len(calls),
            date_range=date_range,
            key_findings=list(data.get("key_findings") or []),
            avg_scores={k: (float(v) if v is not None else None) for k, v in scores.items()},
            notable_quotes=list(data.get("notable_quotes") or []),
            top_improvement_areas=list(data.get("top_improvement_areas") or []),
            top_missing_info=list(data.get("top_missing_info") or []),
        )

    def synthesize(
        self, digests: Sequence[BatchDigest], date_range: DateRange, total_calls: int
    ) -> TrendReport:
        logger.info("Synthesizing %d batch digests over %d calls", len(digests), total_calls)
        data = self._call_tool(
            SYNTHESIS_SYSTEM_PROMPT,
            build_synthesis_prompt(digests, date_range, total_calls),
            TREND_TOOL,
        )
        return _report_from(data)
