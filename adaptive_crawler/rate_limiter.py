from __future__ import annotations

import bisect
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List


class DomainRateLimiter:
    """Thread-safe per-domain limiter: at most N requests per rolling window.

    Calling acquire() reserves the next free slot for the domain and blocks
    the current thread until that slot's time arrives."""

    def __init__(
        self,
        max_requests: int = 10,
        window_secs: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._max = max_requests
        self._window = window_secs
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._slots: Dict[str, List[float]] = defaultdict(list)

    def acquire(self, domain: str) -> float:
        """Block until a request to ``domain`` is permitted; return seconds waited."""
        if self._max <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            slots = self._slots[domain]
            cutoff = now - self._window
            while slots and slots[0] <= cutoff:
                slots.pop(0)
            if len(slots) < self._max:
                bisect.insort(slots, now)
                return 0.0
            # The slot frees up one window after the oldest request still counted.
            slot_time = slots.pop(0) + self._window
            bisect.insort(slots, slot_time)
            wait = max(0.0, slot_time - now)
        if wait > 0:
            self._sleep(wait)
        return wait

    def in_window(self, domain: str) -> int:
        """Number of requests counted against ``domain`` in the current window."""
        with self._lock:
            cutoff = self._clock() - self._window
            return sum(1 for ts in self._slots.get(domain, []) if ts > cutoff)

    def reset(self, domain: str = "") -> None:
        with self._lock:
            if domain:
                self._slots.pop(domain, None)
            else:
                self._slots.clear()
