"""Data models for per-chunk entity extraction results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ChunkEntities:
    """Entities, topics and MEDDPICC elements extracted from one chunk."""

    entities: dict[str, Any] = field(default_factory=dict)
    topics: list[str] = field(default_factory=list)
    meddpicc_elements: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExtractionContext:
    """Call-level context included in the extraction prompt."""

    account_name: str | None = None
    rep_id: str | None = None
    call_type: str | None = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> ExtractionContext:
        return cls(
            account_name=metadata.get("account_name"),
            rep_id=metadata.get("rep_id"),
            call_type=metadata.get("call_type"),
        )
