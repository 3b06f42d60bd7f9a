from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Protocol, Tuple
from urllib import robotparser
from urllib.parse import urlsplit, urlunsplit

import requests
import structlog

from .models import RobotsInfo

logger = structlog.get_logger(__name__)


class RobotsRules:
    """Parsed robots.txt for one origin, or a blanket allow/deny."""

    def __init__(
        self,
        parser: Optional[robotparser.RobotFileParser] = None,
        allow_all: bool = True,
        error: Optional[str] = None,
    ) -> None:
        self._parser = parser
        self._allow_all = allow_all
        self.error = error

    def can_fetch(self, user_agent: str, url: str) -> bool:
        if self._parser is None:
            return self._allow_all
        return self._parser.can_fetch(user_agent, url)

    def crawl_delay(self, user_agent: str) -> Optional[float]:
        if self._parser is None:
            return None
        delay = self._parser.crawl_delay(user_agent) or self._parser.crawl_delay("*")
        return float(delay) if delay else None

    @property
    def sitemaps(self) -> List[str]:
        if self._parser is None:
            return []
        return list(self._parser.site_maps() or [])


class RobotsChecker(Protocol):
    def check(self, url: str, user_agent: str) -> RobotsInfo:
        ...

    def rules_for(self, url: str, user_agent: str) -> RobotsRules:
        ...


def robots_url_for(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "/robots.txt", "", ""))


class DefaultRobotsChecker:
    """Fetches robots.txt with ``requests`` and caches the rules per origin.

    A missing robots.txt (404 and other 4xx except 401/403) allows
    everything; 401/403, server errors and network failures disallow.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        cache_ttl: float = 3600.0,
        user_agent: str = "AdaptiveCrawler-Bot",
    ) -> None:
        self._session = session or requests.Session()
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._user_agent = user_agent
        self._cache: Dict[str, Tuple[RobotsRules, float]] = {}
        self._lock = threading.Lock()

    def rules_for(self, url: str, user_agent: Optional[str] = None) -> RobotsRules:
        robots_url = robots_url_for(url)
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(robots_url)
            if cached and now - cached[1] < self._cache_ttl:
                return cached[0]
        rules = self._fetch(robots_url, user_agent or self._user_agent)
        with self._lock:
            self._cache[robots_url] = (rules, now)
        return rules

    def check(self, url: str, user_agent: Optional[str] = None) -> RobotsInfo:
        user_agent = user_agent or self._user_agent
        rules = self.rules_for(url, user_agent)
        return RobotsInfo(
            url=url,
            is_allowed=rules.can_fetch(user_agent, url),
            user_agent=user_agent,
            crawl_delay=rules.crawl_delay(user_agent),
            sitemaps=rules.sitemaps,
            error=rules.error,
        )

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _fetch(self, robots_url: str, user_agent: str) -> RobotsRules:
        try:
            resp = self._session.get(robots_url, timeout=self._timeout, headers={"User-Agent": user_agent})
        except requests.RequestException as exc:
            logger.warning("robots_fetch_failed", url=robots_url, error=str(exc))
            return RobotsRules(allow_all=False, error=f"Failed to fetch robots.txt: {exc}")

        status = resp.status_code
        if status in (401, 403):
            return RobotsRules(allow_all=False, error=f"robots.txt access restricted (HTTP {status})")
        if status >= 500:
            return RobotsRules(allow_all=False, error=f"robots.txt unavailable (HTTP {status})")
        if status >= 400:
            return RobotsRules(allow_all=True, error="No robots.txt found (scraping allowed by default)")

        parser = robotparser.RobotFileParser()
        parser.set_url(robots_url)
        parser.parse((resp.text or "").splitlines())
        logger.debug("robots_loaded", url=robots_url)
        return RobotsRules(parser=parser)
