"""Tests for the model-backed services: NER extraction, summarization and embeddings."""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import httpx
import openai
import pytest
from helpers import json_tool_response, make_transcript, tool_response

from src.analysis.models import BatchDigest, DateRange
from src.analysis.summarizer import (
    BATCH_DIGEST_TOOL,
    TREND_TOOL,
    ClaudeSummarizer,
    _tool_input,
    build_direct_prompt,
    build_synthesis_prompt,
)
from src.errors import PermanentInputError, QuotaExceededError, TransientServiceError
from src.extraction.extractor import (
    MAX_CHUNK_CHARS,
    TOOL_NAME,
    EntityExtractor,
    _parse_tool_response,
    build_extraction_prompt,
)
from src.extraction.models import ChunkEntities, ExtractionContext
from src.ingestion.embeddings import OpenAIEmbedder, get_query_embedding

RANGE = DateRange(date(2024, 1, 1), date(2024, 1, 31))

# ---------------------------------------------------------------------------
# Entity extraction
# ---------------------------------------------------------------------------


class TestExtractionPrompt:
    def test_numbered_chunks_and_context(self) -> None:
        prompt = build_extraction_prompt(
            ["first", "second"], ExtractionContext(account_name="Acme", rep_id="rep-1")
        )
        assert "[CHUNK 1]\nfirst" in prompt
        assert "[CHUNK 2]\nsecond" in prompt
        assert "Return exactly 2 results" in prompt
        assert "Account=Acme, Rep=rep-1, CallType=Unknown" in prompt

    def test_long_chunk_clipped(self) -> None:
        prompt = build_extraction_prompt(["x" * (MAX_CHUNK_CHARS + 50)], ExtractionContext())
        assert "x" * MAX_CHUNK_CHARS in prompt
        assert "x" * (MAX_CHUNK_CHARS + 1) not in prompt

    def test_context_from_chunk_metadata(self) -> None:
        ctx = ExtractionContext.from_metadata({"account_name": "Acme", "call_type": "Demo"})
        assert ctx == ExtractionContext(account_name="Acme", rep_id=None, call_type="Demo")


class TestParseToolResponse:
    def test_results_mapped_in_order(self) -> None:
        response = tool_response(
            TOOL_NAME,
            {
                "results": [
                    {"topics": ["pricing"], "meddpicc_elements": ["metrics"]},
                    {"entities": {"people": [{"value": "Dana", "context": "CFO"}]}},
                ]
            },
        )
        results = _parse_tool_response(response, 2)

        assert results[0] == ChunkEntities(topics=["pricing"], meddpicc_elements=["metrics"])
        assert results[1] is not None
        assert results[1].entities["people"][0]["value"] == "Dana"

    def test_short_result_list_padded_with_none(self) -> None:
        response = tool_response(TOOL_NAME, {"results": [{"topics": ["demo"]}]})
        results = _parse_tool_response(response, 3)
        assert results[0] is not None
        assert results[1:] == [None, None]

    def test_json_string_payload(self) -> None:
        response = json_tool_response(TOOL_NAME, {"results": [{"topics": ["budget"]}]})
        (result,) = _parse_tool_response(response, 1)
        assert result is not None and result.topics == ["budget"]

    def test_garbage_payload_gives_all_none(self) -> None:
        response = tool_response(TOOL_NAME, "{not json")
        assert _parse_tool_response(response, 2) == [None, None]

    def test_other_tool_ignored(self) -> None:
        response = tool_response("something_else", {"results": [{"topics": ["x"]}]})
        assert _parse_tool_response(response, 1) == [None]


class TestEntityExtractor:
    def test_forced_tool_call(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            TOOL_NAME, {"results": [{"topics": ["pricing"]}]}
        )
        extractor = EntityExtractor(client=client, model="claude-test")

        results = extractor.extract_batch(["PROSPECT: what's the price?"], ExtractionContext())

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": TOOL_NAME}
        assert kwargs["model"] == "claude-test"
        assert results[0] is not None and results[0].topics == ["pricing"]

    def test_empty_batch(self) -> None:
        client = MagicMock()
        assert EntityExtractor(client=client).extract_batch([], ExtractionContext()) == []
        client.messages.create.assert_not_called()

    def test_blank_text_rejected(self) -> None:
        client = MagicMock()
        with pytest.raises(PermanentInputError):
            EntityExtractor(client=client).extract_batch(["ok", " "], ExtractionContext())
        client.messages.create.assert_not_called()

    def test_timeout_classified(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = TimeoutError()
        with pytest.raises(TransientServiceError):
            EntityExtractor(client=client).extract_batch(["text"], ExtractionContext())


# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------


class TestToolInput:
    def test_dict_payload(self) -> None:
        assert _tool_input(tool_response("t", {"a": 1}), "t") == {"a": 1}

    def test_missing_tool_is_transient(self) -> None:
        with pytest.raises(TransientServiceError):
            _tool_input(tool_response("other", {}), "t")

    def test_unparseable_is_transient(self) -> None:
        with pytest.raises(TransientServiceError):
            _tool_input(tool_response("t", "nope"), "t")


class TestPrompts:
    def test_direct_prompt_lists_calls(self) -> None:
        calls = [
            make_transcript("a", date(2024, 1, 2), text="REP: one"),
            make_transcript("b", date(2024, 1, 3), text="REP: two", account_name=None),
        ]
        prompt = build_direct_prompt(calls, RANGE)

        assert "Analyze these 2 sales calls from 2024-01-01 to 2024-01-31" in prompt
        assert "### Call 1 (2024-01-02, Discovery, Acme)\nREP: one" in prompt
        assert "### Call 2 (2024-01-03, Discovery, Unknown)" in prompt

    def test_synthesis_prompt_marks_unavailable_batches(self) -> None:
        digests = [
            BatchDigest(
                batch_index=0,
                call_count=5,
                date_range=DateRange(date(2024, 1, 1), date(2024, 1, 7)),
                key_findings=["rushes discovery"],
                avg_scores={"meddpicc": 4.5, "next_steps": None},
            ),
            BatchDigest.placeholder(
                1, 6, "timed out", DateRange(date(2024, 1, 8), date(2024, 1, 14))
            ),
        ]
        prompt = build_synthesis_prompt(digests, RANGE, 11)

        assert "2 period digests covering 11 calls" in prompt
        assert "Average scores: meddpicc: 4.5, next_steps: N/A" in prompt
        assert "Key findings: rushes discovery" in prompt
        assert (
            "### Period 2: 2024-01-08 to 2024-01-14 (6 calls)\n"
            "ANALYSIS UNAVAILABLE: analysis unavailable for 6 calls." in prompt
        )
        assert prompt.index("Period 1") < prompt.index("Period 2")


class TestClaudeSummarizer:
    def test_analyze_calls(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            TREND_TOOL["name"],
            {
                "summary": "Discovery is improving.",
                "trends": {"discovery_questions": {"direction": "improving"}},
                "top_priorities": [{"area": "next steps"}],
            },
        )
        report = ClaudeSummarizer(client=client).analyze_calls([make_transcript("a")], RANGE)

        assert report.summary == "Discovery is improving."
        assert report.trends["discovery_questions"]["direction"] == "improving"
        assert report.top_priorities == [{"area": "next steps"}]
        assert report.excluded_calls == 0

    def test_summarize_batch_builds_digest(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = tool_response(
            BATCH_DIGEST_TOOL["name"],
            {"key_findings": ["strong openers"], "avg_scores": {"meddpicc": 6}},
        )
        digest = ClaudeSummarizer(client=client).summarize_batch(
            2, [make_transcript("a"), make_transcript("b")], RANGE
        )

        assert digest.batch_index == 2
        assert digest.call_count == 2
        assert digest.avg_scores == {"meddpicc": 6.0}
        assert digest.unavailable is False

    def test_sdk_error_classified(self) -> None:
        client = MagicMock()
        client.messages.create.side_effect = TimeoutError("slow")
        with pytest.raises(TransientServiceError):
            ClaudeSummarizer(client=client).synthesize([], RANGE, 0)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


def _openai_error(status: int, message: str) -> openai.APIStatusError:
    response = httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com"))
    return openai.APIStatusError(message, response=response, body=None)


class TestOpenAIEmbedder:
    def test_embed_many_preserves_order(self) -> None:
        client = MagicMock()
        client.embeddings.create.return_value.data = [
            MagicMock(embedding=[0.1, 0.2]),
            MagicMock(embedding=[0.3, 0.4]),
        ]
        vectors = OpenAIEmbedder(client=client, model="m").embed_many(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        client.embeddings.create.assert_called_once_with(input=["a", "b"], model="m")

    def test_empty_text_rejected(self) -> None:
        with pytest.raises(PermanentInputError):
            OpenAIEmbedder(client=MagicMock()).embed("   ")

    def test_insufficient_quota_is_quota_error(self) -> None:
        client = MagicMock()
        client.embeddings.create.side_effect = _openai_error(429, "insufficient_quota")
        with pytest.raises(QuotaExceededError):
            OpenAIEmbedder(client=client).embed("hello")

    def test_query_embedding_uses_given_embedder(self) -> None:
        embedder = MagicMock()
        embedder.embed.return_value = [1.0]
        assert get_query_embedding("q", embedder=embedder) == [1.0]
        embedder.embed.assert_called_once_with("q")
