"""
Error taxonomy for the indexing and analysis core.

Hierarchy:
    CoachingCoreError
    ├── ServiceError - an external model call failed
    │   ├── TransientServiceError - retry with backoff, then mark the unit failed
    │   │   ├── RateLimitError
    │   │   └── ServiceTimeoutError
    │   └── QuotaExceededError - stop issuing calls for the current job
    ├── PermanentInputError - bad input, never retried
    ├── InvalidTransitionError - illegal chunk state change
    └── AnalysisCancelledError - cooperative cancellation of an analysis run
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import anthropic
import openai


class CoachingCoreError(Exception):
    """Base class for all errors raised by this package."""


class ServiceError(CoachingCoreError):
    """An embedding, NER or summarization call failed."""


class TransientServiceError(ServiceError):
    """Retryable failure (overload, 5xx, connection reset)."""


class RateLimitError(TransientServiceError):
    """The service rejected the call with a rate limit (429)."""


class ServiceTimeoutError(TransientServiceError):
    """The call did not complete within its timeout."""


class QuotaExceededError(ServiceError):
    """Usage quota or credits are exhausted; retrying will not help."""


class PermanentInputError(CoachingCoreError):
    """The input itself cannot be processed (e.g. empty transcript text)."""


class InvalidTransitionError(CoachingCoreError):
    """A chunk status change that the state machine does not allow."""


class AnalysisCancelledError(CoachingCoreError):
    """An analysis run stopped because cancellation was requested."""


@dataclass(frozen=True)
class StalledJobWarning:
    """Monitoring signal for a job whose heartbeat is older than the timeout.

    Not an exception: callers decide whether to restart or cancel.
    """

    job_id: str
    last_heartbeat_at: datetime
    seconds_since_heartbeat: float
    timeout: float
    completed: int
    total: int


_QUOTA_MARKERS = ("insufficient_quota", "quota", "credit", "billing")


def _mentions_quota(exc: Exception) -> bool:
    text = str(exc).lower()
    body = getattr(exc, "body", None)
    if body:
        text += " " + str(body).lower()
    return any(marker in text for marker in _QUOTA_MARKERS)


def classify_service_error(exc: Exception) -> CoachingCoreError:
    """Map an OpenAI / Anthropic SDK exception onto the taxonomy.

    Already-classified errors are returned unchanged. Unknown exceptions are
    treated as transient so that they get retried and then recorded.
    """
    if isinstance(exc, CoachingCoreError):
        return exc

    if isinstance(exc, (openai.APITimeoutError, anthropic.APITimeoutError)):
        return ServiceTimeoutError(str(exc) or "request timed out")

    if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return TransientServiceError(f"connection error: {exc}")

    status = getattr(exc, "status_code", None)
    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)) or status is not None:
        if status == 402:
            return QuotaExceededError(str(exc))
        if status == 429:
            # OpenAI reports exhausted credits as a 429 with code insufficient_quota
            if _mentions_quota(exc):
                return QuotaExceededError(str(exc))
            return RateLimitError(str(exc))
        if status in (408, 504):
            return ServiceTimeoutError(str(exc))
        if status is not None and (status >= 500 or status == 529):
            return TransientServiceError(str(exc))
        if status in (400, 413, 422):
            return PermanentInputError(str(exc))

    if isinstance(exc, TimeoutError):
        return ServiceTimeoutError(str(exc) or "request timed out")

    return TransientServiceError(f"{type(exc).__name__}: {exc}")
