from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from .admission import AdmissionGate
from .auth import AuthenticationHandler, DefaultAuthenticationHandler
from .extraction import (
    ContentExtractor,
    DefaultContentExtractor,
    DefaultStructuredExtractor,
    StructuredExtractor,
)
from .factory import FetcherFactory
from .frontier import UrlFrontier
from .log import configure_logging
from .metrics import MetricsCollector
from .models import (
    CrawlConfig,
    CrawlProgress,
    CrawlSession,
    DomainProfile,
    FetchMethod,
    FetchOptions,
    MetricsSnapshot,
    RobotsInfo,
    ScrapeOutcome,
)
from .orchestrator import CrawlOrchestrator
from .profiles import DomainProfileStore
from .robots import DefaultRobotsChecker, RobotsChecker
from .scraper import AdaptiveScraper
from .settings import ScraperSettings, get_settings
from .storage import SqliteStorage, StorageBase

logger = structlog.get_logger(__name__)


class ScrapingService:
    """Service root: builds every component once and wires them explicitly.

    Collaborators and the fetcher registry can be injected, which is how the
    tests swap browsers and the network for fakes.
    """

    def __init__(
        self,
        settings: Optional[ScraperSettings] = None,
        storage: Optional[StorageBase] = None,
        factory: Optional[FetcherFactory] = None,
        robots_checker: Optional[RobotsChecker] = None,
        content_extractor: Optional[ContentExtractor] = None,
        structured_extractor: Optional[StructuredExtractor] = None,
        auth_handler: Optional[AuthenticationHandler] = None,
        enable_hybrid: bool = False,
        configure_logs: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        if configure_logs:
            configure_logging(self.settings.log_level, json_output=self.settings.log_json)

        self.gate = AdmissionGate(
            max_concurrent=self.settings.max_concurrent_browsers,
            queue_timeout=self.settings.browser_queue_timeout,
        )
        self.metrics = MetricsCollector()
        self.profiles = DomainProfileStore()
        self.factory = factory or FetcherFactory.default(self.gate, metrics=self.metrics, settings=self.settings)
        self.scraper = AdaptiveScraper(self.profiles, self.factory, enable_hybrid=enable_hybrid)

        self.storage = storage or SqliteStorage(self.settings.database_path)
        self.frontier = UrlFrontier(self.storage, max_attempts=self.settings.frontier_max_attempts)
        self.robots = robots_checker or DefaultRobotsChecker(
            timeout=self.settings.request_timeout,
            user_agent=self.settings.robots_user_agent,
        )
        self.orchestrator = CrawlOrchestrator(
            storage=self.storage,
            frontier=self.frontier,
            scraper=self.scraper,
            content_extractor=content_extractor or DefaultContentExtractor(),
            structured_extractor=structured_extractor or DefaultStructuredExtractor(),
            robots_checker=self.robots,
            auth_handler=auth_handler or DefaultAuthenticationHandler(timeout=self.settings.request_timeout),
            robots_user_agent=self.settings.robots_user_agent,
        )
        logger.info(
            "service_started",
            database=self.settings.database_path,
            max_concurrent_browsers=self.settings.max_concurrent_browsers,
            methods=[m.value for m in self.factory.methods],
        )

    # ------------------------------------------------------------ scrape

    def scrape(
        self,
        url: str,
        options: Optional[FetchOptions] = None,
        force_method: Optional[FetchMethod] = None,
    ) -> ScrapeOutcome:
        options = options or FetchOptions(timeout=self.settings.request_timeout)
        return self.scraper.scrape(url, options, force_method=force_method)

    def check_robots(self, url: str, user_agent: Optional[str] = None) -> RobotsInfo:
        return self.robots.check(url, user_agent or self.settings.robots_user_agent)

    # ------------------------------------------------------------ crawl lifecycle

    def start_crawl(self, url: str, config: Optional[CrawlConfig] = None) -> str:
        return self.orchestrator.start(url, config)

    def crawl_status(self, session_id: str) -> CrawlSession:
        return self.orchestrator.status(session_id)

    def crawl_progress(self, session_id: str) -> CrawlProgress:
        return self.orchestrator.progress(session_id)

    def pause_crawl(self, session_id: str) -> CrawlSession:
        return self.orchestrator.pause(session_id)

    def resume_crawl(self, session_id: str) -> CrawlSession:
        return self.orchestrator.resume(session_id)

    def stop_crawl(self, session_id: str) -> CrawlSession:
        return self.orchestrator.stop(session_id)

    def delete_crawl(self, session_id: str) -> bool:
        return self.orchestrator.delete(session_id)

    def list_crawls(self) -> List[CrawlSession]:
        return self.orchestrator.list_sessions()

    def crawl_content(self, session_id: str) -> List[Dict[str, Any]]:
        return self.orchestrator.content(session_id)

    def wait_crawl(self, session_id: str, timeout: Optional[float] = None) -> CrawlSession:
        return self.orchestrator.wait(session_id, timeout)

    # ------------------------------------------------------------ profiles

    def get_profile(self, domain: str) -> Optional[DomainProfile]:
        return self.profiles.get(domain)

    def clear_profile(self, domain: str) -> bool:
        return self.profiles.clear(domain)

    def clear_profiles(self) -> int:
        return self.profiles.clear_all()

    def export_profiles(self) -> str:
        return self.profiles.export_json()

    def import_profiles(self, data: str) -> int:
        return self.profiles.import_json(data)

    def success_rate_report(self) -> List[Dict[str, Any]]:
        return self.profiles.success_rate_report()

    # ------------------------------------------------------------ observability

    def gate_stats(self) -> Dict[str, int]:
        return self.gate.stats()

    def metrics_snapshot(self, window_secs: int = 300) -> MetricsSnapshot:
        return self.metrics.snapshot(window_secs)

    def stealth_sessions(self) -> Dict[str, Dict[str, Any]]:
        if not self.factory.has(FetchMethod.STEALTH):
            return {}
        fetcher = self.factory.get(FetchMethod.STEALTH)
        stats = getattr(fetcher, "session_stats", None)
        return stats() if callable(stats) else {}

    def close(self) -> None:
        """Pause running crawls (resumable later), then release resources."""
        self.orchestrator.shutdown()
        self.gate.wake_waiters()
        self.factory.close()
        self.storage.close()
        logger.info("service_stopped")
