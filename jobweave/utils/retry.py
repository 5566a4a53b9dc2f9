from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    max_delay: Optional[float] = None,
) -> float:
    """Seconds to wait before retrying a job that failed ``attempt`` times.

    Grows as ``base ** attempt`` plus up to ``jitter`` seconds of noise,
    capped at ``max_delay`` when given.
    """
    delay = base ** attempt + random.uniform(0, jitter)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return max(delay, 0.0)
