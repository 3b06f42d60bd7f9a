from __future__ import annotations

from typing import Dict, List, Optional

from .admission import AdmissionGate
from .backoff import BackoffStrategy
from .base import BaseFetcher
from .fetchers import DynamicFetcher, StaticFetcher
from .metrics import MetricsCollector
from .models import FetchMethod
from .rate_limiter import DomainRateLimiter
from .settings import ScraperSettings
from .stealth import StealthFetcher


class FetcherFactory:
    """Registry of fetch executors keyed by FetchMethod.

    The cascade only ever dispatches through ``get``, so a new strategy is
    added by registering another BaseFetcher under its tag. Executors are
    shared between threads; they keep no per-request state outside locks.
    """

    def __init__(self, fetchers: Optional[Dict[FetchMethod, BaseFetcher]] = None) -> None:
        self._fetchers: Dict[FetchMethod, BaseFetcher] = {}
        for method, fetcher in (fetchers or {}).items():
            self.register(method, fetcher)

    def register(self, method: FetchMethod, fetcher: BaseFetcher) -> None:
        self._fetchers[FetchMethod(method)] = fetcher

    def get(self, method: FetchMethod) -> BaseFetcher:
        try:
            return self._fetchers[FetchMethod(method)]
        except KeyError:
            raise ValueError(f"No fetcher registered for method: {method}") from None

    def has(self, method: FetchMethod) -> bool:
        return FetchMethod(method) in self._fetchers

    @property
    def methods(self) -> List[FetchMethod]:
        return list(self._fetchers)

    def close(self) -> None:
        for fetcher in self._fetchers.values():
            fetcher.close()

    @classmethod
    def default(
        cls,
        gate: AdmissionGate,
        metrics: Optional[MetricsCollector] = None,
        settings: Optional[ScraperSettings] = None,
    ) -> "FetcherFactory":
        """Static, dynamic and stealth executors wired to one admission gate."""
        settings = settings or ScraperSettings()
        return cls(
            {
                FetchMethod.STATIC: StaticFetcher(metrics=metrics, user_agent=settings.user_agent),
                FetchMethod.DYNAMIC: DynamicFetcher(
                    gate, metrics=metrics, headless=settings.headless, user_agent=settings.user_agent
                ),
                FetchMethod.STEALTH: StealthFetcher(
                    gate,
                    metrics=metrics,
                    rate_limiter=DomainRateLimiter(max_requests=settings.stealth_requests_per_minute, window_secs=60),
                    backoff=BackoffStrategy(base_seconds=2.0, max_seconds=30.0),
                    headless=settings.headless,
                    session_ttl=settings.stealth_session_ttl,
                ),
            }
        )
