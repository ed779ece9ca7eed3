"""Tenacity-based retry wrapper for external service calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.errors import TransientServiceError, classify_service_error
from src.pipeline_config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(fn: Callable[[], T], config: RetryConfig = RetryConfig()) -> T:
    """Run *fn*, retrying only on :class:`TransientServiceError`.

    SDK exceptions are classified first, so a quota or bad-input failure
    surfaces immediately while rate limits and timeouts back off
    exponentially. After the last attempt the final transient error is
    re-raised unchanged.
    """

    def _attempt() -> T:
        try:
            return fn()
        except Exception as exc:
            classified = classify_service_error(exc)
            if classified is exc:
                raise
            raise classified from exc

    retrying = Retrying(
        reraise=True,
        stop=stop_after_attempt(max(1, config.attempts)),
        wait=wait_exponential(multiplier=config.min_wait, min=config.min_wait, max=config.max_wait),
        retry=retry_if_exception_type(TransientServiceError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    return retrying(_attempt)
