from __future__ import annotations

import random
from typing import Optional


class BackoffStrategy:
    """Exponential backoff with jitter for retry delays.

    Computes sleep duration as base * 2^(attempt-1) plus random jitter,
    capped at a configurable maximum."""

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 5.0, jitter_ratio: float = 0.1) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter_ratio = max(0.0, jitter_ratio)

    def get_sleep(self, attempt: int, error_type: Optional[str] = None) -> float:
        """Calculate the backoff sleep duration in seconds for a given retry attempt.

        Rate-limit errors (``error_type`` containing 429) start one step further
        along the curve."""
        step = max(attempt - 1, 0)
        if error_type and "429" in error_type:
            step += 1
        exp = min(self._max, self._base * (2 ** step))
        jitter = random.uniform(0, exp * self._jitter_ratio) if self._jitter_ratio else 0.0
        return exp + jitter
