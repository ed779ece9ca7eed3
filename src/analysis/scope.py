"""Transcript sources and resolution of an analysis scope to transcript ids."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date
from typing import Any, cast

from supabase import Client

from src.analysis.models import AnalysisScope, ScopeRequest
from src.errors import PermanentInputError
from src.ingestion.models import Transcript
from src.ingestion.storage import FILTER_BATCH_SIZE, batched, get_supabase_client

TRANSCRIPTS_TABLE = "call_transcripts"


class TranscriptSource(ABC):
    """Read-only access to transcripts owned by the calling system."""

    @abstractmethod
    def get_transcripts(self, transcript_ids: Iterable[str]) -> list[Transcript]:
        """Transcripts in chronological order; unknown ids are ignored."""

    @abstractmethod
    def find_transcript_ids(
        self,
        rep_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[str]:
        """Ids of a rep's calls within an inclusive date range."""


def _chronological(transcripts: Iterable[Transcript]) -> list[Transcript]:
    return sorted(transcripts, key=lambda t: (t.call_date, t.id))


class InMemoryTranscriptSource(TranscriptSource):
    def __init__(self, transcripts: Iterable[Transcript] = ()) -> None:
        self._transcripts = {t.id: t for t in transcripts}

    def add(self, transcript: Transcript) -> None:
        self._transcripts[transcript.id] = transcript

    def get_transcripts(self, transcript_ids: Iterable[str]) -> list[Transcript]:
        found = (self._transcripts[tid] for tid in set(transcript_ids) if tid in self._transcripts)
        return _chronological(found)

    def find_transcript_ids(
        self,
        rep_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[str]:
        matches = [
            t
            for t in self._transcripts.values()
            if t.rep_id == rep_id
            and (date_from is None or t.call_date >= date_from)
            and (date_to is None or t.call_date <= date_to)
        ]
        return [t.id for t in _chronological(matches)]


def row_to_transcript(row: dict[str, Any]) -> Transcript:
    return Transcript(
        id=str(row["id"]),
        text=row.get("raw_text") or "",
        rep_id=str(row.get("rep_id") or ""),
        call_date=date.fromisoformat(str(row["call_date"])[:10]),
        call_type=row.get("call_type"),
        account_name=row.get("account_name"),
    )


class SupabaseTranscriptSource(TranscriptSource):
    """Reads the ``call_transcripts`` table, ignoring soft-deleted rows."""

    columns = "id,rep_id,call_date,call_type,account_name,raw_text"

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or get_supabase_client()

    def get_transcripts(self, transcript_ids: Iterable[str]) -> list[Transcript]:
        transcripts: list[Transcript] = []
        for batch in batched(list(transcript_ids), FILTER_BATCH_SIZE):
            result = (
                self.client.table(TRANSCRIPTS_TABLE)
                .select(self.columns)
                .in_("id", batch)
                .is_("deleted_at", "null")
                .execute()
            )
            transcripts.extend(row_to_transcript(r) for r in cast(list[dict[str, Any]], result.data))
        return _chronological(transcripts)

    def find_transcript_ids(
        self,
        rep_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[str]:
        query = (
            self.client.table(TRANSCRIPTS_TABLE)
            .select("id")
            .eq("rep_id", rep_id)
            .is_("deleted_at", "null")
        )
        if date_from is not None:
            query = query.gte("call_date", date_from.isoformat())
        if date_to is not None:
            query = query.lte("call_date", date_to.isoformat())
        result = query.order("call_date").execute()
        return [str(r["id"]) for r in cast(list[dict[str, Any]], result.data)]


def resolve_scope(source: TranscriptSource, request: ScopeRequest) -> AnalysisScope:
    """Turn a scope request into a concrete, immutable set of transcript ids.

    An explicit id selection wins over a rep/date filter.

    Raises:
        PermanentInputError: Neither ids nor a rep were supplied, or the date
            range is inverted.
    """
    if request.transcript_ids is not None:
        return AnalysisScope(transcript_ids=frozenset(request.transcript_ids))

    if not request.rep_id:
        raise PermanentInputError("scope needs either transcript_ids or a rep_id")
    if request.date_from and request.date_to and request.date_from > request.date_to:
        raise PermanentInputError("date_from is after date_to")

    ids = source.find_transcript_ids(request.rep_id, request.date_from, request.date_to)
    return AnalysisScope(transcript_ids=frozenset(ids))
