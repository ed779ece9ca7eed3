"""Backfill worker: drives chunks through the embedding or extraction state machine.

A backfill collects every chunk whose facet is not yet completed, then walks
them in bounded batches. The external calls of a batch run on a bounded
thread pool, each with its own deadline. After each batch the job's heartbeat
is updated and the cancel flag is checked. Per-chunk failures are recorded
and never abort the run; only quota exhaustion or cancellation stop it early.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import partial
from typing import Any

from src.errors import (
    InvalidTransitionError,
    PermanentInputError,
    QuotaExceededError,
    StalledJobWarning,
    TransientServiceError,
)
from src.extraction.extractor import EntityExtractorService
from src.extraction.models import ExtractionContext
from src.indexing.jobs import IndexingJob, JobRegistry, detect_stall
from src.ingestion.embeddings import Embedder
from src.ingestion.models import Chunk
from src.ingestion.storage import ChunkStore
from src.pipeline_config import BackfillConfig, JobKind, JobState
from src.retries import call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatus:
    """A job snapshot plus the stall signal computed at read time."""

    job: IndexingJob
    stall: StalledJobWarning | None = None

    @property
    def stalled(self) -> bool:
        return self.stall is not None


def _batches(items: list[Chunk], size: int) -> Iterator[list[Chunk]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _group_by_transcript(chunks: list[Chunk], per_call: int) -> Iterator[list[Chunk]]:
    """Consecutive runs of same-transcript chunks, at most *per_call* long."""
    group: list[Chunk] = []
    for chunk in chunks:
        if group and (chunk.transcript_id != group[0].transcript_id or len(group) >= per_call):
            yield group
            group = []
        group.append(chunk)
    if group:
        yield group


class Backfiller:
    """Starts, tracks and cancels indexing jobs over a :class:`ChunkStore`.

    Callers must not run two backfills of the same kind over overlapping
    transcript sets at once.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: Embedder | None = None,
        extractor: EntityExtractorService | None = None,
        registry: JobRegistry | None = None,
        config: BackfillConfig = BackfillConfig(),
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.extractor = extractor
        self.registry = registry or JobRegistry()
        self.config = config

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def start_backfill(
        self,
        kind: JobKind,
        transcript_ids: Iterable[str] | None = None,
        retry_failed: bool = True,
        background: bool = True,
    ) -> IndexingJob:
        """Create a job over every chunk still needing *kind* and start it.

        Args:
            kind: Which facet to backfill.
            transcript_ids: Restrict to these transcripts; ``None`` means all.
            retry_failed: Also pick up chunks previously marked ``failed``.
            background: Run on a daemon thread; otherwise run inline.

        Returns:
            A snapshot of the job as created (or as finished, when inline).
        """
        work = self._unit_work(kind)

        ids = list(transcript_ids) if transcript_ids is not None else None
        chunks = self.store.chunks_needing(kind, ids, include_failed=retry_failed)
        job = IndexingJob(kind=kind, total=len(chunks))
        self.registry.add(job)
        logger.info("Starting %s backfill %s over %d chunks", kind.value, job.id, job.total)

        if background:
            worker = threading.Thread(
                target=self._run,
                args=(job, chunks, work),
                name=f"backfill-{job.id[:8]}",
                daemon=True,
            )
            worker.start()
            return job.snapshot()

        self._run(job, chunks, work)
        return job.snapshot()

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation. Returns False for unknown jobs."""
        return self.registry.request_cancel(job_id)

    def get_job(self, job_id: str) -> JobStatus | None:
        job = self.registry.get(job_id)
        if job is None:
            return None
        return JobStatus(job=job, stall=detect_stall(job, self.config.stall_timeout))

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _unit_work(self, kind: JobKind) -> Callable[[list[Chunk]], Sequence[Any]]:
        """The external call for one unit of *kind*, returning one result per chunk."""
        if kind is JobKind.EMBEDDING:
            if self.embedder is None:
                raise ValueError("an embedder is required for embedding backfills")
            embedder = self.embedder
            return lambda unit: [embedder.embed(unit[0].text)]

        if self.extractor is None:
            raise ValueError("an entity extractor is required for extraction backfills")
        extractor = self.extractor
        return lambda unit: extractor.extract_batch(
            [c.text for c in unit], ExtractionContext.from_metadata(unit[0].metadata)
        )

    def _units(self, kind: JobKind, chunks: list[Chunk]) -> list[list[Chunk]]:
        if kind is JobKind.EMBEDDING:
            return [[chunk] for chunk in chunks]
        return list(_group_by_transcript(chunks, self.config.entity_chunks_per_call))

    def _run(
        self,
        job: IndexingJob,
        chunks: list[Chunk],
        work: Callable[[list[Chunk]], Sequence[Any]],
    ) -> None:
        in_flight: list[str] = []
        executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_concurrency),
            thread_name_prefix=f"backfill-{job.id[:8]}",
        )
        try:
            for batch in _batches(chunks, self.config.batch_size(job.kind)):
                if job.cancel_requested:
                    job.state = JobState.CANCELLED
                    logger.info("Backfill %s cancelled at %d/%d", job.id, job.processed, job.total)
                    return

                claimed = self._claim(job, batch)
                in_flight = [c.id for c in claimed]
                self._process_batch(executor, job, claimed, in_flight, work)
                in_flight = []
                job.heartbeat()

            job.state = JobState.COMPLETED
            logger.info(
                "Backfill %s finished: %d completed, %d failed, %d skipped",
                job.id,
                job.completed,
                job.failed,
                job.skipped,
            )
        except QuotaExceededError as exc:
            # Finished chunks stay finished; the unfinished part of the batch goes back.
            self._revert(job.kind, in_flight)
            job.state = JobState.ABORTED
            job.error = f"quota exceeded: {exc}"
            job.heartbeat()
            logger.warning("Backfill %s aborted on quota after %d/%d", job.id, job.processed, job.total)
        except Exception as exc:
            self._revert(job.kind, in_flight)
            job.state = JobState.ABORTED
            job.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Backfill %s aborted", job.id)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _claim(self, job: IndexingJob, batch: list[Chunk]) -> list[Chunk]:
        """Move the batch to ``processing``; chunks that refuse are skipped."""
        ids = [c.id for c in batch]
        try:
            self.store.mark_processing(job.kind, ids)
            return batch
        except InvalidTransitionError:
            pass

        claimed: list[Chunk] = []
        for chunk in batch:
            try:
                self.store.mark_processing(job.kind, [chunk.id])
                claimed.append(chunk)
            except InvalidTransitionError:
                # Completed by someone else since the job was planned
                job.skipped += 1
        return claimed

    def _revert(self, kind: JobKind, chunk_ids: list[str]) -> None:
        if not chunk_ids:
            return
        try:
            self.store.revert_processing(kind, chunk_ids)
        except Exception:
            logger.exception("Could not revert %d in-flight chunks", len(chunk_ids))

    def _fail(self, job: IndexingJob, chunks: list[Chunk], in_flight: list[str]) -> None:
        ids = [c.id for c in chunks]
        self.store.mark_failed(job.kind, ids)
        job.failed += len(ids)
        for chunk_id in ids:
            in_flight.remove(chunk_id)

    def _save(self, job: IndexingJob, chunk: Chunk, result: Any, in_flight: list[str]) -> None:
        if job.kind is JobKind.EMBEDDING:
            self.store.save_embedding(chunk.id, result)
        else:
            self.store.save_entities(chunk.id, result)
        job.completed += 1
        in_flight.remove(chunk.id)

    def _process_batch(
        self,
        executor: ThreadPoolExecutor,
        job: IndexingJob,
        batch: list[Chunk],
        in_flight: list[str],
        work: Callable[[list[Chunk]], Sequence[Any]],
    ) -> None:
        """Run the batch's units on the pool, at most ``max_concurrency`` at once.

        Results are written from this thread only. A unit past its deadline is
        marked failed and its late result is discarded. A quota error stops
        further submissions and is re-raised once nothing else is pending.
        """
        empty = [c for c in batch if not c.text.strip()]
        if empty:
            logger.warning("Failing %d chunks with empty text", len(empty))
            self._fail(job, empty, in_flight)

        workers = max(1, self.config.max_concurrency)
        queue = deque(self._units(job.kind, [c for c in batch if c.text.strip()]))
        running: dict[Future[Sequence[Any]], tuple[list[Chunk], float]] = {}
        quota_error: QuotaExceededError | None = None

        while queue or running:
            while queue and len(running) < workers and quota_error is None:
                unit = queue.popleft()
                future = executor.submit(call_with_retry, partial(work, unit), self.config.retry)
                running[future] = (unit, time.monotonic() + self.config.batch_timeout)

            if not running:
                break

            next_deadline = min(deadline for _, deadline in running.values())
            done, _ = wait(
                running,
                timeout=max(0.0, next_deadline - time.monotonic()),
                return_when=FIRST_COMPLETED,
            )

            for future in done:
                unit, _ = running.pop(future)
                try:
                    results = list(future.result())
                except QuotaExceededError as exc:
                    quota_error = exc
                    queue.clear()
                    continue
                except (TransientServiceError, PermanentInputError) as exc:
                    logger.warning("%s failed for %d chunks: %s", job.kind.value, len(unit), exc)
                    self._fail(job, unit, in_flight)
                    continue

                results += [None] * (len(unit) - len(results))
                for chunk, result in zip(unit, results):
                    if result is None:
                        self._fail(job, [chunk], in_flight)
                    else:
                        self._save(job, chunk, result, in_flight)

            now = time.monotonic()
            for future, (unit, deadline) in list(running.items()):
                if deadline <= now:
                    future.cancel()
                    running.pop(future)
                    logger.warning(
                        "%s timed out after %.0fs for %d chunks",
                        job.kind.value,
                        self.config.batch_timeout,
                        len(unit),
                    )
                    self._fail(job, unit, in_flight)

        if quota_error is not None:
            raise quota_error
