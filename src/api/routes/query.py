"""Query endpoint: retrieve indexed call context and generate answers."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from src.api.dependencies import get_chunk_store, get_embedder, get_retrieval_config
from src.api.models import QueryRequest, QueryResponse, SourceChunk
from src.ingestion.embeddings import Embedder, get_query_embedding
from src.ingestion.storage import ChunkStore
from src.pipeline_config import RetrievalConfig
from src.retrieval.generation import generate_answer
from src.retrieval.search import retrieve

router = APIRouter()


@router.post("/api/query", response_model=QueryResponse)
def query(
    request: QueryRequest,
    store: Annotated[ChunkStore, Depends(get_chunk_store)],
    embedder: Annotated[Embedder, Depends(get_embedder)],
    config: Annotated[RetrievalConfig, Depends(get_retrieval_config)],
) -> QueryResponse:
    """Answer a question from the selected calls' indexed chunks.

    When too few chunks are embedded the response is flagged
    ``low_confidence`` rather than failing.
    """
    embedding = get_query_embedding(request.question, embedder)
    result = retrieve(store, embedding, request.transcript_ids, request.token_budget, config)

    if not result.chunks:
        answer = (
            "These calls are not indexed well enough to answer yet."
            if result.low_confidence
            else "No relevant call content found for your question."
        )
        return QueryResponse(
            answer=answer,
            sources=[],
            low_confidence=result.low_confidence,
            coverage=result.coverage,
        )

    generated = generate_answer(request.question, result.chunks, low_confidence=result.low_confidence)

    return QueryResponse(
        answer=generated["answer"],
        sources=[
            SourceChunk(
                content=item.chunk.text,
                transcript_id=item.chunk.transcript_id,
                chunk_index=item.chunk.chunk_index,
                similarity=item.similarity,
                account_name=item.chunk.metadata.get("account_name"),
                call_date=item.chunk.metadata.get("call_date"),
            )
            for item in result.chunks
        ],
        model=generated.get("model"),
        usage=generated.get("usage"),
        low_confidence=generated["low_confidence"],
        coverage=result.coverage,
    )
