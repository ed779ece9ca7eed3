"""Stratified sampling and weekly batching of calls.

Both group calls by calendar week, with weeks starting on Sunday. Sampling
additionally stratifies by call type inside each week so the subset keeps
the full date range and the call-type mix of the scope.
"""

from __future__ import annotations

import logging
import random
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from src.ingestion.models import Transcript

logger = logging.getLogger(__name__)

UNKNOWN_CALL_TYPE = "unknown"


@dataclass(frozen=True)
class SampleResult:
    sampled: list[Transcript]
    original_count: int
    strata: dict[str, int] = field(default_factory=dict)


def week_start(day: date) -> date:
    """The Sunday on or before *day*."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _chronological(calls: Sequence[Transcript]) -> list[Transcript]:
    return sorted(calls, key=lambda c: (c.call_date, c.id))


def group_by_week(calls: Sequence[Transcript]) -> list[tuple[date, list[Transcript]]]:
    weeks: dict[date, list[Transcript]] = defaultdict(list)
    for call in _chronological(calls):
        weeks[week_start(call.call_date)].append(call)
    return sorted(weeks.items())


def _largest_remainder(total: int, weights: Sequence[int]) -> list[int]:
    """Split *total* across *weights* proportionally, summing exactly to *total*.

    Assumes ``total <= sum(weights)``, so no share exceeds its weight.
    Ties on the remainder go to the earlier position.
    """
    weight_sum = sum(weights)
    if total <= 0 or weight_sum == 0:
        return [0] * len(weights)
    ideal = [total * w / weight_sum for w in weights]
    shares = [int(x) for x in ideal]
    leftover = total - sum(shares)
    by_remainder = sorted(range(len(weights)), key=lambda i: (-(ideal[i] - shares[i]), i))
    for i in by_remainder:
        if leftover == 0:
            break
        if shares[i] < weights[i]:
            shares[i] += 1
            leftover -= 1
    return shares


def _week_quotas(sizes: list[int], target_size: int) -> list[int]:
    if len(sizes) >= target_size:
        # More weeks than slots: one call from evenly spaced weeks, first and last included
        quotas = [0] * len(sizes)
        if target_size == 1:
            quotas[0] = 1
            return quotas
        step = (len(sizes) - 1) / (target_size - 1)
        for i in range(target_size):
            quotas[round(i * step)] = 1
        return quotas

    # One call per week, the rest proportional to what each week has left
    extra = _largest_remainder(target_size - len(sizes), [s - 1 for s in sizes])
    return [1 + e for e in extra]


def stratified_sample(
    calls: Sequence[Transcript],
    target_size: int,
    seed: int = 42,
) -> SampleResult:
    """Pick a deterministic, representative subset of *calls*.

    Every week with calls contributes at least one call when there are no
    more weeks than *target_size*. Within a week the quota is shared across
    call types in proportion to their counts. The result is chronological.
    """
    if target_size <= 0:
        raise ValueError("target_size must be positive")
    if len(calls) <= target_size:
        return SampleResult(sampled=_chronological(calls), original_count=len(calls))

    rng = random.Random(seed)
    weeks = group_by_week(calls)
    quotas = _week_quotas([len(week_calls) for _, week_calls in weeks], target_size)

    sampled: list[Transcript] = []
    strata: dict[str, int] = {}
    for (week, week_calls), quota in zip(weeks, quotas):
        if quota == 0:
            continue
        by_type: dict[str, list[Transcript]] = defaultdict(list)
        for call in week_calls:
            by_type[call.call_type or UNKNOWN_CALL_TYPE].append(call)
        types = sorted(by_type)
        type_quotas = _largest_remainder(quota, [len(by_type[t]) for t in types])
        for call_type, k in zip(types, type_quotas):
            if k == 0:
                continue
            sampled.extend(rng.sample(by_type[call_type], k))
            strata[f"{week.isoformat()}/{call_type}"] = k

    logger.info(
        "Sampled %d of %d calls across %d weeks", len(sampled), len(calls), len(weeks)
    )
    return SampleResult(sampled=_chronological(sampled), original_count=len(calls), strata=strata)


def split_into_batches(
    calls: Sequence[Transcript],
    min_size: int = 5,
    max_size: int = 25,
) -> list[list[Transcript]]:
    """Partition calls into chronological batches built from whole weeks.

    Small weeks are merged and large weeks are split. A trailing remainder
    smaller than *min_size* joins the last batch. No call is dropped.
    """
    if not 1 <= min_size <= max_size:
        raise ValueError("batch sizes must satisfy 1 <= min_size <= max_size")

    batches: list[list[Transcript]] = []
    current: list[Transcript] = []

    for _, week_calls in group_by_week(calls):
        if len(week_calls) > max_size:
            pool = current + week_calls
            current = []
            for i in range(0, len(pool), max_size):
                piece = pool[i : i + max_size]
                if len(piece) >= min_size:
                    batches.append(piece)
                else:
                    current = piece
        elif len(current) + len(week_calls) <= max_size:
            current.extend(week_calls)
        elif len(current) >= min_size:
            batches.append(current)
            current = list(week_calls)
        else:
            # Top the undersized batch up from this week rather than dropping it
            need = max_size - len(current)
            batches.append(current + week_calls[:need])
            current = week_calls[need:]

    if current:
        if len(current) >= min_size or not batches:
            batches.append(current)
        else:
            batches[-1].extend(current)

    return batches
