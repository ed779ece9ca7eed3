"""Claude-powered answer generation with source attribution."""

from __future__ import annotations

from typing import Any

from anthropic import Anthropic
from anthropic.types import TextBlock

from src.config import settings
from src.errors import classify_service_error
from src.retrieval.search import RetrievedChunk

LOW_CONFIDENCE_NOTE = (
    "Note: the call index for this scope is incomplete, so this answer may miss "
    "relevant content."
)


def format_context(chunks: list[RetrievedChunk]) -> str:
    parts: list[str] = []
    for i, item in enumerate(chunks):
        meta = item.chunk.metadata
        label = meta.get("account_name") or "Unknown account"
        date = meta.get("call_date")
        date_str = f" ({date})" if date else ""
        parts.append(f"[Source {i + 1}] {label}{date_str}:\n{item.chunk.text}")
    return "\n\n".join(parts)


def generate_answer(
    question: str,
    context_chunks: list[RetrievedChunk],
    low_confidence: bool = False,
    client: Anthropic | None = None,
) -> dict[str, Any]:
    """Generate an answer using Claude with source attribution.

    Args:
        question: The user's question.
        context_chunks: Retrieved transcript chunks, in rank order.
        low_confidence: Retrieval was degraded; the answer is flagged.
        client: Optional pre-built Anthropic client.

    Returns:
        Dictionary with answer, sources, model, usage and low_confidence.
    """
    context = format_context(context_chunks)

    client = client or Anthropic(
        api_key=settings.anthropic_api_key or None,
        timeout=settings.llm_timeout_seconds,
    )
    try:
        response = client.messages.create(
            model=settings.llm_model,
            max_tokens=1024,
            system=(
                "You are a sales coaching assistant. Answer questions based "
                "on the provided sales call transcript excerpts.\n\n"
                "Rules:\n"
                "- Only answer based on the provided context. If the answer isn't "
                "in the context, say so.\n"
                "- Cite your sources using [Source N] notation.\n"
                "- Distinguish what the rep said from what the prospect said.\n"
                "- Be concise and direct."
            ),
            messages=[
                {
                    "role": "user",
                    "content": f"Context from sales calls:\n\n{context}\n\nQuestion: {question}",
                }
            ],
        )
    except Exception as exc:
        raise classify_service_error(exc) from exc

    block = response.content[0]
    if not isinstance(block, TextBlock):
        raise ValueError(f"Expected TextBlock from Claude, got {type(block).__name__}")

    answer = block.text
    if low_confidence:
        answer = f"{answer}\n\n{LOW_CONFIDENCE_NOTE}"

    return {
        "answer": answer,
        "sources": context_chunks,
        "model": response.model,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
        "low_confidence": low_confidence,
    }
