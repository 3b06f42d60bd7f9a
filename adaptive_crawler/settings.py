"""Process-wide settings.

Environment variables use the ``SCRAPER_`` prefix, e.g.
``SCRAPER_MAX_CONCURRENT_BROWSERS=5`` or ``SCRAPER_DATABASE_PATH=/data/crawl.db``.
Per-crawl knobs live in :class:`adaptive_crawler.models.CrawlConfig`.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class ScraperSettings(BaseSettings):
    # Each slot is a Chromium instance: ~3 per 2GB of RAM.
    max_concurrent_browsers: int = 3
    browser_queue_timeout: float = 120.0
    headless: bool = True

    database_path: str = "crawler.db"

    user_agent: str = DEFAULT_USER_AGENT
    robots_user_agent: str = "AdaptiveCrawler-Bot"
    request_timeout: float = 30.0

    stealth_requests_per_minute: int = 10
    stealth_session_ttl: float = 3600.0

    frontier_max_attempts: int = 3

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(extra="ignore", env_prefix="SCRAPER_")


@lru_cache(maxsize=1)
def get_settings() -> ScraperSettings:
    return ScraperSettings()
