from __future__ import annotations

import time
from collections import Counter, deque
from dataclasses import asdict
from threading import Lock
from typing import Deque, Dict, List

from .models import AttemptRecord, MetricsSnapshot


class MetricsCollector:
    """Thread-safe collector for fetch-attempt metrics.

    Records one AttemptRecord per executor attempt and produces aggregated
    MetricsSnapshot objects over configurable sliding time windows."""

    def __init__(self, max_events: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[tuple[float, AttemptRecord]] = deque(maxlen=max_events)

    def record_attempt(self, record: AttemptRecord) -> None:
        """Record an attempt with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), record))

    def snapshot(self, window_secs: int = 300) -> MetricsSnapshot:
        """Return aggregated metrics for attempts within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        with self._lock:
            events: List[AttemptRecord] = [e for ts, e in self._events if ts >= cutoff]
        total = len(events)
        attempts_by_method: Counter = Counter(e.method.value for e in events)
        successes_by_method: Counter = Counter(e.method.value for e in events if e.success)
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total_attempts=total,
            success_count=sum(1 for e in events if e.success),
            attempts_by_method=dict(attempts_by_method),
            successes_by_method=dict(successes_by_method),
            http_403_count=sum(1 for e in events if e.status_code == 403),
            http_429_count=sum(1 for e in events if e.status_code == 429),
            blocked_count=sum(1 for e in events if e.error_type in ("BlockedError", "CaptchaError")),
            timeout_count=sum(1 for e in events if e.error_type and "timeout" in e.error_type.lower()),
            avg_latency_ms=avg_latency_ms,
            timestamp=now,
        )

    def domain_summary(self, domain: str) -> Dict[str, Dict[str, int]]:
        """Per-method attempt/success counts for one domain over all retained events."""
        summary: Dict[str, Dict[str, int]] = {}
        with self._lock:
            events = [e for _, e in self._events if e.domain == domain]
        for e in events:
            entry = summary.setdefault(e.method.value, {"attempts": 0, "successes": 0})
            entry["attempts"] += 1
            if e.success:
                entry["successes"] += 1
        return summary

    def export_json(self) -> List[Dict]:
        """Export all recorded attempts as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **asdict(e), "method": e.method.value} for ts, e in self._events]
