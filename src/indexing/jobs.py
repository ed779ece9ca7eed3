"""Indexing job records, stall detection and the in-process job registry."""

from __future__ import annotations

import dataclasses
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from src.errors import StalledJobWarning
from src.pipeline_config import JobKind, JobState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IndexingJob:
    """Progress record for one backfill run.

    Mutated only by the worker that owns it; everyone else reads snapshots.
    """

    kind: JobKind
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utcnow)
    last_heartbeat_at: datetime = field(default_factory=utcnow)
    cancel_requested: bool = False
    state: JobState = JobState.RUNNING
    error: str | None = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.skipped

    @property
    def is_terminal(self) -> bool:
        return self.state is not JobState.RUNNING

    def heartbeat(self, now: datetime | None = None) -> None:
        self.last_heartbeat_at = now or utcnow()

    def snapshot(self) -> IndexingJob:
        return dataclasses.replace(self)


def detect_stall(
    job: IndexingJob, timeout: float, now: datetime | None = None
) -> StalledJobWarning | None:
    """Return a warning if *job* has not heartbeated within *timeout* seconds.

    Finished and cancelled jobs are never stalled. The job is not modified.
    """
    if job.cancel_requested or job.is_terminal:
        return None
    if job.completed >= job.total or job.processed >= job.total:
        return None

    now = now or utcnow()
    age = (now - job.last_heartbeat_at).total_seconds()
    if age <= timeout:
        return None

    return StalledJobWarning(
        job_id=job.id,
        last_heartbeat_at=job.last_heartbeat_at,
        seconds_since_heartbeat=age,
        timeout=timeout,
        completed=job.completed,
        total=job.total,
    )


class JobRegistry:
    """Thread-safe map of job id to live job record."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, IndexingJob] = {}

    def add(self, job: IndexingJob) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def get(self, job_id: str) -> IndexingJob | None:
        """Snapshot of the job, or ``None`` if unknown."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def live(self, job_id: str) -> IndexingJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def request_cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.cancel_requested = True
            return True
