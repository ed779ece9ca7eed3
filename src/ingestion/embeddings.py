"""Embedding helpers using OpenAI text-embedding-3-small."""

from __future__ import annotations

from typing import Protocol

from openai import OpenAI

from src.config import settings
from src.errors import PermanentInputError, classify_service_error

# The embeddings endpoint rejects inputs past ~8k tokens; characters are a safe proxy.
MAX_EMBED_CHARS = 8000


class Embedder(Protocol):
    """Anything that turns a text into a fixed-length vector."""

    def embed(self, text: str) -> list[float]: ...


class OpenAIEmbedder:
    """Embedding service client.

    SDK failures are translated into the core error taxonomy so that the
    backfill worker can tell a rate limit from an exhausted quota.
    """

    def __init__(self, client: OpenAI | None = None, model: str | None = None) -> None:
        self.client = client or OpenAI(api_key=settings.openai_api_key or None)
        self.model = model or settings.embedding_model

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, preserving order."""
        if any(not t or not t.strip() for t in texts):
            raise PermanentInputError("cannot embed empty text")
        try:
            response = self.client.embeddings.create(
                input=[t[:MAX_EMBED_CHARS] for t in texts],
                model=self.model,
            )
        except Exception as exc:
            raise classify_service_error(exc) from exc
        return [list(item.embedding) for item in response.data]


def get_query_embedding(query: str, embedder: Embedder | None = None) -> list[float]:
    """Generate an embedding vector for the given query string."""
    return (embedder or OpenAIEmbedder()).embed(query)
