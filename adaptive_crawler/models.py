from __future__ import annotations

import datetime as _dt
import threading
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(tz=_dt.timezone.utc)


def _iso(value: Optional[_dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Any) -> Optional[_dt.datetime]:
    if not value:
        return None
    if isinstance(value, _dt.datetime):
        return value
    return _dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class FetchMethod(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"
    STEALTH = "stealth"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXTREME = "extreme"


DIFFICULTY_ORDER = [Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD, Difficulty.EXTREME]


class FrontierStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------- profiles


@dataclass
class SiteCharacteristics:
    has_anti_bot: bool = False
    requires_js: bool = False
    has_rate_limit: bool = False
    has_captcha: bool = False
    difficulty: Difficulty = Difficulty.EASY

    def flag_count(self) -> int:
        return sum((self.has_anti_bot, self.requires_js, self.has_rate_limit, self.has_captcha))


@dataclass
class ScrapingStrategy:
    """Transient strategy decision; recomputed for every fetch attempt."""

    method: FetchMethod
    confidence: int
    reasons: List[str] = field(default_factory=list)
    estimated_time: float = 0.0
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "estimated_time": self.estimated_time,
            "options": dict(self.options),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapingStrategy":
        return cls(
            method=FetchMethod(data.get("method", FetchMethod.STATIC.value)),
            confidence=int(data.get("confidence", 0)),
            reasons=list(data.get("reasons") or []),
            estimated_time=float(data.get("estimated_time", 0.0)),
            options=dict(data.get("options") or {}),
        )


RECENT_FAILURES_LIMIT = 10


def _default_rates() -> Dict[FetchMethod, float]:
    return {m: 0.0 for m in FetchMethod}


@dataclass
class DomainProfile:
    domain: str
    characteristics: SiteCharacteristics = field(default_factory=SiteCharacteristics)
    success_rates: Dict[FetchMethod, float] = field(default_factory=_default_rates)
    optimal_strategy: ScrapingStrategy = field(
        default_factory=lambda: ScrapingStrategy(method=FetchMethod.STATIC, confidence=80)
    )
    total_attempts: int = 0
    recent_failures: Deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_FAILURES_LIMIT))
    last_updated: _dt.datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        chars = asdict(self.characteristics)
        chars["difficulty"] = self.characteristics.difficulty.value
        return {
            "domain": self.domain,
            "characteristics": chars,
            "success_rates": {m.value: rate for m, rate in self.success_rates.items()},
            "optimal_strategy": self.optimal_strategy.to_dict(),
            "total_attempts": self.total_attempts,
            "recent_failures": list(self.recent_failures),
            "last_updated": _iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainProfile":
        raw_chars = dict(data.get("characteristics") or {})
        chars = SiteCharacteristics(
            has_anti_bot=bool(raw_chars.get("has_anti_bot", False)),
            requires_js=bool(raw_chars.get("requires_js", False)),
            has_rate_limit=bool(raw_chars.get("has_rate_limit", False)),
            has_captcha=bool(raw_chars.get("has_captcha", False)),
            difficulty=Difficulty(raw_chars.get("difficulty", Difficulty.EASY.value)),
        )
        rates = _default_rates()
        for key, value in (data.get("success_rates") or {}).items():
            try:
                rates[FetchMethod(key)] = min(1.0, max(0.0, float(value)))
            except ValueError:
                continue
        optimal = data.get("optimal_strategy")
        return cls(
            domain=str(data["domain"]),
            characteristics=chars,
            success_rates=rates,
            optimal_strategy=ScrapingStrategy.from_dict(optimal) if optimal else ScrapingStrategy(FetchMethod.STATIC, 80),
            total_attempts=max(0, int(data.get("total_attempts", 0))),
            recent_failures=deque(
                [str(f) for f in (data.get("recent_failures") or [])], maxlen=RECENT_FAILURES_LIMIT
            ),
            last_updated=_parse_iso(data.get("last_updated")) or utcnow(),
        )


# ---------------------------------------------------------------- content


@dataclass(frozen=True)
class Link:
    text: str
    href: str
    internal: bool


@dataclass(frozen=True)
class Image:
    src: str
    alt: str = ""


@dataclass(frozen=True)
class Heading:
    level: int
    text: str


@dataclass
class ScrapedContent:
    url: str
    title: str = ""
    description: str = ""
    content: str = ""
    html: str = ""
    links: List[Link] = field(default_factory=list)
    images: List[Image] = field(default_factory=list)
    headings: List[Heading] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    word_count: int = 0
    method: Optional[FetchMethod] = None
    status_code: Optional[int] = None
    scraped_at: _dt.datetime = field(default_factory=utcnow)

    def to_dict(self, include_html: bool = False) -> Dict[str, Any]:
        data = {
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "links": [asdict(link) for link in self.links],
            "images": [asdict(img) for img in self.images],
            "headings": [asdict(h) for h in self.headings],
            "metadata": self.metadata,
            "word_count": self.word_count,
            "method": self.method.value if self.method else None,
            "status_code": self.status_code,
            "scraped_at": _iso(self.scraped_at),
        }
        if include_html:
            data["html"] = self.html
        return data


@dataclass
class FetchResult:
    content: ScrapedContent
    diagnostics: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchOptions:
    timeout: float = 30.0
    user_agent: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    impersonate: Optional[str] = None
    wait_for_selector: Optional[str] = None
    block_images: bool = True
    settle_delay: float = 0.5
    stealth_level: str = "advanced"
    human_behavior: bool = True
    session_persistence: bool = True
    captcha_solver: str = "skip"
    captcha_api_key: Optional[str] = None
    max_retries: int = 3
    rate_limit_per_minute: Optional[int] = None
    # Set by the crawl orchestrator; executors abort between steps once it is set.
    cancel_event: Optional[threading.Event] = None

    def merged(self, overrides: Dict[str, Any]) -> "FetchOptions":
        """Return a copy with strategy-level overrides applied (unknown keys ignored)."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)

    def cancelled(self) -> bool:
        return bool(self.cancel_event and self.cancel_event.is_set())


@dataclass
class ScrapeOutcome:
    url: str
    content: ScrapedContent
    strategy: ScrapingStrategy
    quality_score: int
    completeness_score: int
    methods_attempted: List[FetchMethod] = field(default_factory=list)
    adaptations: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    total_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "strategy": self.strategy.to_dict(),
            "quality_score": self.quality_score,
            "completeness_score": self.completeness_score,
            "methods_attempted": [m.value for m in self.methods_attempted],
            "adaptations": list(self.adaptations),
            "errors": dict(self.errors),
            "total_time": self.total_time,
            "content": self.content.to_dict(),
        }


# ---------------------------------------------------------------- stealth


@dataclass(frozen=True)
class BrowserFingerprint:
    user_agent: str
    viewport: Dict[str, int]
    timezone: str
    locale: str
    platform: str


@dataclass
class BrowserSession:
    """Per-domain browser identity reused by the stealth executor."""

    domain: str
    fingerprint: BrowserFingerprint
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    last_used: float = 0.0


@dataclass
class AntiBotReport:
    detected: bool
    indicators: List[str] = field(default_factory=list)
    confidence: int = 0


@dataclass
class CaptchaChallenge:
    type: str = "none"
    site_key: Optional[str] = None
    image_url: Optional[str] = None


# ---------------------------------------------------------------- metrics


@dataclass(frozen=True)
class AttemptRecord:
    domain: str
    method: FetchMethod
    success: bool
    status_code: Optional[int]
    latency_ms: int
    error_type: Optional[str]


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_attempts: int
    success_count: int
    attempts_by_method: Dict[str, int]
    successes_by_method: Dict[str, int]
    http_403_count: int
    http_429_count: int
    blocked_count: int
    timeout_count: int
    avg_latency_ms: float
    timestamp: float


# ---------------------------------------------------------------- crawl


@dataclass
class AuthConfig:
    type: str = "none"  # none | basic | bearer | cookie | form
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    cookies: Dict[str, str] = field(default_factory=dict)
    login_url: Optional[str] = None
    username_field: str = "username"
    password_field: str = "password"
    success_indicator: Optional[str] = None
    optional: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AuthConfig"]:
        if not data:
            return None
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class CrawlConfig:
    max_pages: int = 100
    max_depth: int = 5
    respect_robots: bool = True
    delay: float = 1.0
    concurrent: int = 3
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    user_agent: Optional[str] = None
    timeout: float = 30.0
    authentication: Optional[AuthConfig] = None
    enable_structured_data: bool = False
    force_method: Optional[FetchMethod] = None
    captcha_solver: str = "skip"
    captcha_api_key: Optional[str] = None
    max_fetch_retries: int = 3

    def __post_init__(self) -> None:
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if self.concurrent < 1:
            raise ValueError("concurrent must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if isinstance(self.force_method, str):
            self.force_method = FetchMethod(self.force_method)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["force_method"] = self.force_method.value if self.force_method else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["authentication"] = AuthConfig.from_dict(known.get("authentication"))
        return cls(**known)


@dataclass
class CrawlStats:
    total_urls: int = 0
    processed_urls: int = 0
    failed_urls: int = 0
    extracted_items: int = 0
    start_time: Optional[_dt.datetime] = None
    end_time: Optional[_dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_urls": self.total_urls,
            "processed_urls": self.processed_urls,
            "failed_urls": self.failed_urls,
            "extracted_items": self.extracted_items,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
        }


@dataclass
class CrawlSession:
    session_id: str
    domain: str
    start_url: str
    config: CrawlConfig
    status: SessionStatus = SessionStatus.PENDING
    stats: CrawlStats = field(default_factory=CrawlStats)
    created_at: _dt.datetime = field(default_factory=utcnow)
    updated_at: _dt.datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "domain": self.domain,
            "start_url": self.start_url,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class FrontierItem:
    id: int
    session_id: str
    url: str
    depth: int
    parent_url: Optional[str]
    priority: int
    status: FrontierStatus
    attempts: int
    last_error: Optional[str]
    discovered_at: _dt.datetime
    processed_at: Optional[_dt.datetime] = None


@dataclass
class CrawlProgress:
    session_id: str
    status: SessionStatus
    total_urls: int
    processed_urls: int
    failed_urls: int
    extracted_items: int
    frontier: Dict[str, int]
    current_url: Optional[str] = None
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------- collaborators


@dataclass
class RobotsInfo:
    url: str
    is_allowed: bool
    user_agent: str
    crawl_delay: Optional[float] = None
    sitemaps: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ExtractedContent:
    url: str
    title: str
    description: str
    text_content: str
    markdown_content: str
    internal_links: List[str] = field(default_factory=list)
    external_links: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    content_chunks: List[str] = field(default_factory=list)
    content_hash: str = ""


@dataclass
class StructuredData:
    schema: str
    fields: Dict[str, Any] = field(default_factory=dict)
    quality_score: float = 0.0
    nested_structures: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AuthResult:
    success: bool
    cookies: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
