"""Adaptive scraping and crawl orchestration engine.

Learns per domain which fetch strategy works (plain HTTP, headless render,
stealth render), falls back through the others when one fails, and drives
resumable multi-threaded crawl sessions over a durable URL frontier.

Key modules:
    profiles        -- DomainProfileStore: per-domain learning and strategy selection
    scraper         -- AdaptiveScraper: selection plus fallback cascade
    base            -- BaseFetcher abstract class
    fetchers        -- StaticFetcher, DynamicFetcher
    stealth         -- StealthFetcher, fingerprints, anti-bot scan, browser sessions
    captcha         -- CaptchaSolver hooks (skip / manual / external service)
    factory         -- FetcherFactory: method -> executor registry
    admission       -- AdmissionGate bounding concurrent browser work
    frontier        -- UrlFrontier: durable priority queue with dedup
    orchestrator    -- CrawlOrchestrator: session state machine and workers
    storage         -- StorageBase and SqliteStorage
    robots          -- robots.txt checker
    extraction      -- content and structured-data extractors
    auth            -- authentication handler
    parsing         -- HTML -> ScrapedContent
    quality         -- quality / completeness scoring and content merge
    metrics         -- MetricsCollector for fetch attempts
    rate_limiter    -- DomainRateLimiter for per-domain request pacing
    backoff         -- BackoffStrategy for exponential retry delays
    models          -- dataclasses and enums
    errors          -- exception hierarchy
    settings        -- ScraperSettings (SCRAPER_ environment variables)
    log             -- structlog configuration
    service         -- ScrapingService wiring everything together
"""

__version__ = "0.1.0"
