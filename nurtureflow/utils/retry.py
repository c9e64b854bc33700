from __future__ import annotations

import random
from datetime import timedelta
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    maximum: Optional[float] = None,
) -> float:
    """Compute exponential backoff in seconds with jitter."""
    delay = base ** attempt
    if maximum is not None:
        delay = min(delay, maximum)
    return delay + random.uniform(0, jitter)


def backoff_delta(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.5,
    maximum: Optional[float] = None,
) -> timedelta:
    """Backoff for ``attempt`` as a ``timedelta``, for scheduling a retry."""
    return timedelta(seconds=compute_backoff(attempt, base=base, jitter=jitter, maximum=maximum))
