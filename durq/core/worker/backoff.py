"""Delay computations used by the worker loop."""

from __future__ import annotations

import random
from dataclasses import dataclass

from durq.core.defaults import DEFAULT_MAX_BACKOFF_SECONDS


def calculate_backoff(
    retry_count: int,
    base: int,
    max_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
) -> int:
    """Seconds before a failed item becomes visible again.

    retry_count is the value after the claim (first attempt = 1), so base 4
    gives 4s, 16s, 64s, ...
    """
    if retry_count <= 0:
        return 0
    if base <= 1:
        return min(base, max_seconds)
    # Stop multiplying once the cap is reached.
    delay = 1
    for _ in range(retry_count):
        delay *= base
        if delay >= max_seconds:
            return max_seconds
    return delay


@dataclass
class _RetryBackoff:
    """Jittered exponential backoff for transient database errors."""

    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)
