"""Per-resource exponential backoff for runs that keep returning ``wait``."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Mapping


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_seconds: float
    max_seconds: float

    def delay(self, wait_count: int, *, rng: Callable[[], float] = random.random) -> float:
        """Delay before the next cycle after ``wait_count`` consecutive waits.

        Equal jitter: half the capped exponential is fixed, half is random,
        so a waiting run is never re-polled immediately.
        """
        exponent = max(wait_count - 1, 0)
        capped = min(self.base_seconds * (2 ** exponent), self.max_seconds)
        return capped / 2 + rng() * capped / 2


DEFAULT_POLICY = BackoffPolicy(5.0, 60.0)

RESOURCE_BACKOFF: Mapping[str, BackoffPolicy] = MappingProxyType({
    'supabase': BackoffPolicy(2.0, 20.0),
    'github': BackoffPolicy(5.0, 60.0),
    'vercel': BackoffPolicy(10.0, 90.0),
    'sandra': BackoffPolicy(3.0, 30.0),
    'kira': BackoffPolicy(3.0, 30.0),
    'webhook': BackoffPolicy(10.0, 90.0),
})


def policy_for(resource: str) -> BackoffPolicy:
    return RESOURCE_BACKOFF.get(resource, DEFAULT_POLICY)


def next_attempt_at(
    resource: str,
    wait_count: int,
    *,
    now: datetime,
    rng: Callable[[], float] = random.random,
) -> datetime:
    return now + timedelta(seconds=policy_for(resource).delay(wait_count, rng=rng))
