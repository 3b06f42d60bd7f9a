from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .errors import BlockedError, FetchCancelledError, FetchError, InvalidUrlError, ServerBusyError
from .metrics import MetricsCollector
from .models import AttemptRecord, FetchMethod, FetchOptions, FetchResult
from .parsing import parse_html


@dataclass
class RawPage:
    """What an executor brings back before parsing."""

    html: str
    final_url: str
    status_code: Optional[int]
    diagnostics: Dict[str, Any] = field(default_factory=dict)


def validate_url(url: str) -> str:
    parts = urlsplit(url or "")
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidUrlError(f"Invalid URL {url!r}: only absolute http(s) URLs are supported")
    return parts.hostname.lower()


def raise_for_status(status_code: Optional[int], method: FetchMethod) -> None:
    """Map a non-2xx/3xx response onto the error taxonomy."""
    if status_code is None or status_code < 400:
        return
    tag = method.value
    if status_code in (401, 403):
        raise BlockedError(
            f"Access forbidden (HTTP {status_code}): the website blocked automated access",
            method=tag,
            status_code=status_code,
        )
    if status_code == 429:
        raise BlockedError("Rate limit hit (HTTP 429): too many requests", method=tag, status_code=status_code)
    if status_code >= 500:
        raise FetchError(f"Server error (HTTP {status_code})", method=tag, status_code=status_code, transient=True)
    if status_code == 404:
        raise FetchError("Page not found (HTTP 404)", method=tag, status_code=status_code)
    raise FetchError(f"HTTP {status_code}: failed to load page", method=tag, status_code=status_code)


class BaseFetcher(ABC):
    """Abstract fetch executor: one capability, ``fetch(url, options)``.

    Subclasses implement ``retrieve`` (network / browser work) and may
    override ``parse``. The template records one AttemptRecord per call and
    guarantees that anything escaping ``retrieve`` is a FetchError (or a
    cancellation / admission error, which pass through untouched).
    """

    method: FetchMethod

    def __init__(self, metrics: Optional[MetricsCollector] = None) -> None:
        self._metrics = metrics

    def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        options = options or FetchOptions()
        domain = validate_url(url)
        if options.cancelled():
            raise FetchCancelledError(f"fetch of {url} cancelled")
        start_ms = self._now_ms()
        status_code = None
        try:
            raw = self.retrieve(url, options)
            status_code = raw.status_code
            result = self.parse(raw)
        except FetchError as exc:
            self._record(domain, False, exc.status_code, start_ms, _error_type(exc))
            raise
        except (FetchCancelledError, InvalidUrlError, ServerBusyError):
            raise
        except Exception as exc:  # noqa: BLE001
            self._record(domain, False, status_code, start_ms, type(exc).__name__)
            raise FetchError(
                f"{self.method.value} fetch failed: {exc}",
                method=self.method.value,
                status_code=status_code,
                transient=_looks_transient(exc),
            ) from exc
        self._record(domain, True, status_code, start_ms, None)
        result.diagnostics.setdefault("latency_ms", self._now_ms() - start_ms)
        return result

    @abstractmethod
    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        ...

    def parse(self, raw: RawPage) -> FetchResult:
        content = parse_html(raw.html, raw.final_url, method=self.method, status_code=raw.status_code)
        return FetchResult(content=content, diagnostics=dict(raw.diagnostics))

    def close(self) -> None:
        """Release long-lived resources (sessions, browsers)."""

    def _record(
        self, domain: str, success: bool, status_code: Optional[int], start_ms: int, error_type: Optional[str]
    ) -> None:
        if not self._metrics:
            return
        self._metrics.record_attempt(
            AttemptRecord(
                domain=domain,
                method=self.method,
                success=success,
                status_code=status_code,
                latency_ms=self._now_ms() - start_ms,
                error_type=error_type,
            )
        )

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)


def _error_type(exc: FetchError) -> str:
    if "timeout" in str(exc).lower():
        return "Timeout"
    return type(exc).__name__


def _looks_transient(exc: BaseException) -> bool:
    name = type(exc).__name__.lower()
    text = str(exc).lower()
    return any(k in name or k in text for k in ("timeout", "timed out", "connection", "reset", "temporar"))
