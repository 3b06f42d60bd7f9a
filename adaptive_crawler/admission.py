from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, Optional

import structlog

from .errors import FetchCancelledError, ServerBusyError

logger = structlog.get_logger(__name__)


class _Waiter:
    __slots__ = ("granted",)

    def __init__(self) -> None:
        self.granted = False


class AdmissionGate:
    """Process-wide counting gate for heavy (browser-backed) operations.

    Callers beyond ``max_concurrent`` queue in FIFO order. A queued caller
    that is not admitted within the queue timeout is removed from the queue
    and receives ``ServerBusyError``. Slots are handed directly to the oldest
    waiter on release, so a newcomer can never overtake the queue.
    """

    def __init__(self, max_concurrent: int = 3, queue_timeout: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._max = max(1, int(max_concurrent))
        self._queue_timeout = queue_timeout
        self._running = 0
        self._waiters: Deque[_Waiter] = deque()

    def acquire(self, timeout: Optional[float] = None, cancel_event: Optional[threading.Event] = None) -> None:
        """Take a slot, waiting up to ``timeout`` seconds (gate default if None)."""
        wait_budget = self._queue_timeout if timeout is None else timeout
        with self._cv:
            if self._running < self._max and not self._waiters:
                self._running += 1
                logger.debug("browser_slot_acquired", running=self._running, max_concurrent=self._max)
                return

            waiter = _Waiter()
            self._waiters.append(waiter)
            logger.info(
                "browser_slot_queued",
                position=len(self._waiters),
                running=self._running,
                max_concurrent=self._max,
            )
            deadline = time.monotonic() + wait_budget
            while not waiter.granted:
                if cancel_event is not None and cancel_event.is_set():
                    self._waiters.remove(waiter)
                    raise FetchCancelledError("fetch cancelled while waiting for a browser slot")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._waiters.remove(waiter)
                    logger.warning("browser_slot_timeout", running=self._running, queued=len(self._waiters))
                    raise ServerBusyError(
                        f"Request queued too long. Server is busy. Please try again later. "
                        f"({self._running} browsers running)"
                    )
                # Cancellable waits re-check the event at least every 250ms.
                self._cv.wait(min(remaining, 0.25) if cancel_event is not None else remaining)
            logger.debug("browser_slot_acquired", running=self._running, max_concurrent=self._max)

    def release(self) -> None:
        with self._cv:
            self._running = max(0, self._running - 1)
            while self._waiters and self._running < self._max:
                waiter = self._waiters.popleft()
                waiter.granted = True
                self._running += 1
            self._cv.notify_all()
            logger.debug("browser_slot_released", running=self._running, queued=len(self._waiters))

    @contextmanager
    def slot(self, timeout: Optional[float] = None, cancel_event: Optional[threading.Event] = None) -> Iterator[None]:
        """Hold a slot for the duration of the block; released on every exit path."""
        self.acquire(timeout=timeout, cancel_event=cancel_event)
        try:
            yield
        finally:
            self.release()

    def wake_waiters(self) -> None:
        """Wake queued callers so they re-check their cancel events."""
        with self._cv:
            self._cv.notify_all()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"running": self._running, "queued": len(self._waiters), "max_concurrent": self._max}

    @property
    def max_concurrent(self) -> int:
        return self._max
