"""Claude-powered entity, topic and MEDDPICC extraction for transcript chunks."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from anthropic import Anthropic

from src.config import settings
from src.errors import PermanentInputError, classify_service_error
from src.extraction.models import ChunkEntities, ExtractionContext

logger = logging.getLogger(__name__)

TOOL_NAME = "store_chunk_entities"

# Each chunk is clipped to the chunk size before being sent.
MAX_CHUNK_CHARS = 2000

TOPICS = [
    "pricing",
    "objections",
    "demo",
    "next_steps",
    "discovery",
    "negotiation",
    "technical",
    "competitor_discussion",
    "budget",
    "timeline",
    "decision_process",
    "pain_points",
    "value_prop",
    "closing",
]

MEDDPICC_ELEMENTS = [
    "metrics",
    "economic_buyer",
    "decision_criteria",
    "decision_process",
    "paper_process",
    "identify_pain",
    "champion",
    "competition",
]

_CONTEXTUAL_ITEM: dict[str, Any] = {
    "type": "object",
    "properties": {
        "value": {"type": "string"},
        "context": {"type": "string"},
    },
    "required": ["value", "context"],
}

CHUNK_RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "entities": {
            "type": "object",
            "properties": {
                "people": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "role": {"type": "string"},
                            "is_decision_maker": {"type": "boolean"},
                        },
                        "required": ["name"],
                    },
                },
                "organizations": {"type": "array", "items": {"type": "string"}},
                "competitors": {"type": "array", "items": {"type": "string"}},
                "money_amounts": {"type": "array", "items": _CONTEXTUAL_ITEM},
                "dates": {"type": "array", "items": _CONTEXTUAL_ITEM},
                "products": {"type": "array", "items": {"type": "string"}},
            },
        },
        "topics": {"type": "array", "items": {"type": "string", "enum": TOPICS}},
        "meddpicc_elements": {
            "type": "array",
            "items": {"type": "string", "enum": MEDDPICC_ELEMENTS},
        },
    },
    "required": ["entities", "topics", "meddpicc_elements"],
}

SYSTEM_PROMPT = (
    "You are a sales-call analyst. For each numbered transcript chunk, extract "
    "the people, organizations, competitors, money amounts, dates and products "
    "mentioned, the sales topics discussed, and any MEDDPICC elements present.\n\n"
    "Use the store_chunk_entities tool. Return exactly one result per chunk, "
    "in the same order as the chunks. Only extract what the text supports."
)


def _tool_definition(count: int) -> dict[str, Any]:
    return {
        "name": TOOL_NAME,
        "description": f"Store extraction results for {count} transcript chunks, in order.",
        "input_schema": {
            "type": "object",
            "properties": {
                "results": {
                    "type": "array",
                    "description": f"Exactly {count} results, one per chunk in order.",
                    "items": CHUNK_RESULT_SCHEMA,
                }
            },
            "required": ["results"],
        },
    }


def build_extraction_prompt(texts: list[str], context: ExtractionContext) -> str:
    """Render the user message for a batch of chunks."""
    chunk_list = "\n\n---\n\n".join(
        f"[CHUNK {i + 1}]\n{text[:MAX_CHUNK_CHARS]}" for i, text in enumerate(texts)
    )
    return (
        f"Extract entities, topics, and MEDDPICC elements from each of these "
        f"{len(texts)} sales call transcript chunks.\n"
        f"Return exactly {len(texts)} results in the same order as the chunks.\n\n"
        f"Context: Account={context.account_name or 'Unknown'}, "
        f"Rep={context.rep_id or 'Unknown'}, CallType={context.call_type or 'Unknown'}\n\n"
        f"{chunk_list}"
    )


class EntityExtractorService(Protocol):
    def extract_batch(
        self, texts: list[str], context: ExtractionContext
    ) -> list[ChunkEntities | None]: ...


class EntityExtractor:
    """Batched NER over transcript chunks via one forced tool call per batch."""

    def __init__(self, client: Anthropic | None = None, model: str | None = None) -> None:
        self.client = client or Anthropic(
            api_key=settings.anthropic_api_key or None,
            timeout=settings.llm_timeout_seconds,
        )
        self.model = model or settings.llm_model

    def extract_batch(
        self, texts: list[str], context: ExtractionContext
    ) -> list[ChunkEntities | None]:
        """Extract entities for each text.

        Returns:
            One entry per input text; ``None`` where the model returned no
            result for that position.
        """
        if not texts:
            return []
        if any(not t.strip() for t in texts):
            raise PermanentInputError("cannot extract entities from empty chunk text")

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=4096,
                system=SYSTEM_PROMPT,
                tools=[_tool_definition(len(texts))],
                tool_choice={"type": "tool", "name": TOOL_NAME},
                messages=[{"role": "user", "content": build_extraction_prompt(texts, context)}],
            )
        except Exception as exc:
            raise classify_service_error(exc) from exc

        return _parse_tool_response(response, len(texts))


def _parse_tool_response(response: Any, expected: int) -> list[ChunkEntities | None]:
    """Map the tool_use ``results`` array back onto chunk positions."""
    results: list[ChunkEntities | None] = [None] * expected

    for block in response.content:
        if block.type != "tool_use" or block.name != TOOL_NAME:
            continue

        data = block.input
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("Unparseable extraction payload; treating batch as empty")
                return results

        raw_results = data.get("results", []) or []
        if len(raw_results) < expected:
            logger.warning("Extraction returned %d of %d results", len(raw_results), expected)

        for idx, item in enumerate(raw_results[:expected]):
            results[idx] = ChunkEntities(
                entities=item.get("entities") or {},
                topics=list(item.get("topics") or []),
                meddpicc_elements=list(item.get("meddpicc_elements") or []),
            )
        break

    return results
