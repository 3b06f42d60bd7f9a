from __future__ import annotations

import datetime as _dt
import threading
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from .models import FrontierItem, FrontierStatus, utcnow
from .storage import StorageBase

logger = structlog.get_logger(__name__)

HIGH_VALUE_PATHS = ("/about", "/contact", "/products", "/services", "/blog")
LOW_VALUE_PATHS = ("/tag/", "/category/", "/archive/", "/page/")


def normalize_url(url: str) -> str:
    """Drop the fragment, lowercase scheme/host and sort the query string."""
    parts = urlsplit(url.strip())
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))


def is_internal_url(url: str, domain: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    domain = domain.lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return host == domain or host.endswith("." + domain)


def calculate_priority(url: str, depth: int) -> int:
    priority = 10 - depth
    path = urlsplit(url).path.lower()
    if any(segment in path for segment in HIGH_VALUE_PATHS):
        priority += 5
    if any(segment in path for segment in LOW_VALUE_PATHS):
        priority -= 3
    return max(0, priority)


class UrlFrontier:
    """Durable per-session URL queue with dedup, priorities and an attempt cap.

    All state lives in the store; the frontier only adds per-session
    condition variables so idle workers can block until new URLs arrive.
    """

    def __init__(self, storage: StorageBase, max_attempts: int = 3) -> None:
        self._storage = storage
        self._max_attempts = max_attempts
        self._lock = threading.Lock()
        self._conditions: Dict[str, threading.Condition] = {}

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _condition(self, session_id: str) -> threading.Condition:
        with self._lock:
            cond = self._conditions.get(session_id)
            if cond is None:
                cond = self._conditions[session_id] = threading.Condition()
            return cond

    # ------------------------------------------------------------ writes

    def add_url(
        self,
        session_id: str,
        url: str,
        depth: int,
        parent_url: Optional[str] = None,
        priority: int = 0,
    ) -> bool:
        """Insert the URL unless the session already knows it."""
        return self.add_urls(session_id, [(url, depth, parent_url, priority)]) == 1

    def add_urls(self, session_id: str, batch: Iterable[Tuple[str, int, Optional[str], int]]) -> int:
        entries = []
        seen = set()
        for url, depth, parent_url, priority in batch:
            normalized = normalize_url(url)
            if normalized in seen:
                continue
            seen.add(normalized)
            entries.append((normalized, depth, parent_url, priority))
        if not entries:
            return 0
        inserted = self._storage.insert_frontier(session_id, entries)
        if inserted:
            self.wake(session_id)
        logger.debug("frontier_urls_added", session_id=session_id, offered=len(entries), inserted=inserted)
        return inserted

    def next(self, session_id: str) -> Optional[FrontierItem]:
        return self._storage.claim_next(session_id, self._max_attempts)

    def mark_completed(self, item_id: int) -> None:
        self._storage.set_frontier_status(item_id, FrontierStatus.COMPLETED)

    def mark_failed(self, item_id: int, error: str) -> None:
        self._storage.set_frontier_status(item_id, FrontierStatus.FAILED, error=error)

    def reset(self, item_id: int) -> None:
        item = self._storage.get_frontier_item(item_id)
        self._storage.set_frontier_status(item_id, FrontierStatus.PENDING)
        if item is not None:
            self.wake(item.session_id)

    def release(self, item_id: int) -> None:
        """Hand back an interrupted claim without counting it as an attempt."""
        item = self._storage.get_frontier_item(item_id)
        if self._storage.release_claim(item_id) and item is not None:
            self.wake(item.session_id)

    def requeue_processing(self, session_id: str) -> int:
        count = self._storage.requeue_processing(session_id)
        if count:
            logger.info("frontier_requeued", session_id=session_id, count=count)
            self.wake(session_id)
        return count

    def retry_failed(self, session_id: str) -> int:
        count = self._storage.retry_failed(session_id, self._max_attempts)
        if count:
            self.wake(session_id)
        return count

    def purge(self, session_id: str, older_than_days: Optional[float] = None) -> int:
        """Delete the session's items, or only finished ones older than the cutoff."""
        cutoff = utcnow() - _dt.timedelta(days=older_than_days) if older_than_days is not None else None
        count = self._storage.purge_frontier(session_id, cutoff)
        if cutoff is None:
            with self._lock:
                self._conditions.pop(session_id, None)
        return count

    # ------------------------------------------------------------ reads

    def pending_count(self, session_id: str) -> int:
        return self.stats(session_id)["retryable"]

    def stats(self, session_id: str) -> Dict[str, int]:
        return self._storage.frontier_counts(session_id, self._max_attempts)

    def items(self, session_id: str, status: Optional[FrontierStatus] = None) -> List[FrontierItem]:
        return self._storage.frontier_items(session_id, status=status)

    def items_at_depth(self, session_id: str, depth: int) -> List[FrontierItem]:
        return self._storage.frontier_items(session_id, depth=depth)

    # ------------------------------------------------------------ waiting

    def wait_for_work(self, session_id: str, timeout: float) -> None:
        """Block until URLs are added to the session or ``timeout`` elapses."""
        cond = self._condition(session_id)
        with cond:
            cond.wait(timeout)

    def wake(self, session_id: str) -> None:
        cond = self._condition(session_id)
        with cond:
            cond.notify_all()
