"""Stealth fetch executor.

A rendered fetch that tries to look like a returning human visitor:

* one browser identity (fingerprint + cookies) per domain, reused for an hour;
* a per-domain request budget (rolling minute);
* an init script that hides the usual automation tells;
* an anti-bot signature scan after navigation, with human-like interaction
  when protection is likely;
* CAPTCHA detection handed to a pluggable solver;
* retries with exponential backoff and a fresh fingerprint each time.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, Mapping, Optional

import structlog
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .admission import AdmissionGate
from .backoff import BackoffStrategy
from .base import BaseFetcher, RawPage, raise_for_status, validate_url
from .captcha import get_solver
from .errors import BlockedError, CaptchaError, FetchCancelledError, FetchError
from .metrics import MetricsCollector
from .models import AntiBotReport, BrowserFingerprint, BrowserSession, CaptchaChallenge, FetchMethod, FetchOptions
from .rate_limiter import DomainRateLimiter

logger = structlog.get_logger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)
VIEWPORTS = (
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1280, "height": 720},
)
TIMEZONES = ("America/New_York", "America/Chicago", "America/Los_Angeles", "Europe/London", "Europe/Berlin")
LOCALES = ("en-US", "en-GB", "en-CA")
PLATFORMS = ("Win32", "MacIntel", "Linux x86_64")

STEALTH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process,TranslateUI",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
    "--disable-client-side-phishing-detection",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-default-browser-check",
    "--no-first-run",
    "--password-store=basic",
    "--use-mock-keychain",
]

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'plugins', {get: () => [1, 2, 3, 4, 5]});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US', 'en']});
const originalQuery = window.navigator.permissions && window.navigator.permissions.query;
if (originalQuery) {
  window.navigator.permissions.query = (parameters) => (
    parameters.name === 'notifications'
      ? Promise.resolve({ state: Notification.permission })
      : originalQuery(parameters)
  );
}
window.chrome = window.chrome || {};
window.chrome.runtime = window.chrome.runtime || {};
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Array;
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Promise;
delete window.cdc_adoQpoasnfa76pfcZLmcfl_Symbol;
"""

ANTIBOT_SCAN_SCRIPT = """
() => {
  const title = (document.title || '').toLowerCase();
  const text = ((document.body && document.body.innerText) || '').toLowerCase();
  return {
    cloudflare: !!document.querySelector('[data-ray]') || document.title.includes('Cloudflare'),
    recaptcha: !!document.querySelector('.g-recaptcha') || !!document.querySelector('[data-sitekey]'),
    hcaptcha: !!document.querySelector('.h-captcha'),
    distil: !!document.querySelector('[data-distil-auto-init]'),
    imperva: document.cookie.includes('incap_ses') || document.cookie.includes('visid_incap'),
    akamai: !!document.querySelector('[data-akamai-bm-capabilities]'),
    bot_title: title.includes('bot') || title.includes('blocked'),
    access_denied: text.includes('access denied') || text.includes('forbidden'),
    rate_limited: text.includes('rate limit') || text.includes('too many requests'),
    js_challenge: !!document.querySelector('script[src*="challenge"]') || text.includes('checking your browser'),
  };
}
"""

CAPTCHA_SCAN_SCRIPT = """
() => {
  const recaptcha = document.querySelector('.g-recaptcha, [data-sitekey]:not(.h-captcha)');
  if (recaptcha) return {type: 'recaptcha', site_key: recaptcha.getAttribute('data-sitekey')};
  const hcaptcha = document.querySelector('.h-captcha');
  if (hcaptcha) return {type: 'hcaptcha', site_key: hcaptcha.getAttribute('data-sitekey')};
  if ((document.title || '').includes('Cloudflare') || document.querySelector('[data-ray]')) return {type: 'cloudflare'};
  const img = document.querySelector('img[src*="captcha"], img[alt*="captcha"]');
  if (img) return {type: 'custom', image_url: img.getAttribute('src')};
  return {type: 'none'};
}
"""

# signal -> (indicator text, confidence weight)
ANTIBOT_SIGNALS: Dict[str, tuple] = {
    "cloudflare": ("Cloudflare protection detected", 30),
    "recaptcha": ("reCAPTCHA detected", 25),
    "hcaptcha": ("hCaptcha detected", 25),
    "distil": ("Distil Networks protection", 20),
    "imperva": ("Imperva Incapsula detected", 20),
    "akamai": ("Akamai Bot Manager detected", 20),
    "bot_title": ("Bot detection in title", 15),
    "access_denied": ("Access denied message", 35),
    "rate_limited": ("Rate limiting detected", 30),
    "js_challenge": ("JavaScript challenge detected", 25),
}
ANTIBOT_DETECTED_THRESHOLD = 30
HUMAN_BEHAVIOR_THRESHOLD = 70


def random_fingerprint(rng: Optional[random.Random] = None) -> BrowserFingerprint:
    rng = rng or random
    return BrowserFingerprint(
        user_agent=rng.choice(USER_AGENTS),
        viewport=dict(rng.choice(VIEWPORTS)),
        timezone=rng.choice(TIMEZONES),
        locale=rng.choice(LOCALES),
        platform=rng.choice(PLATFORMS),
    )


def score_antibot_signals(signals: Mapping[str, Any]) -> AntiBotReport:
    """Turn the raw page scan into an AntiBotReport."""
    indicators = []
    confidence = 0
    for key, (label, weight) in ANTIBOT_SIGNALS.items():
        if signals.get(key):
            indicators.append(label)
            confidence += weight
    confidence = min(confidence, 100)
    return AntiBotReport(detected=confidence > ANTIBOT_DETECTED_THRESHOLD, indicators=indicators, confidence=confidence)


def captcha_from_scan(data: Optional[Mapping[str, Any]]) -> CaptchaChallenge:
    data = data or {}
    kind = data.get("type") or "none"
    if kind not in ("recaptcha", "hcaptcha", "cloudflare", "custom"):
        kind = "none"
    return CaptchaChallenge(type=kind, site_key=data.get("site_key"), image_url=data.get("image_url"))


def _extra_headers(fingerprint: BrowserFingerprint, custom: Mapping[str, str]) -> Dict[str, str]:
    headers = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
        "Accept-Language": f"{fingerprint.locale},en;q=0.5",
        "DNT": "1",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "none",
        "Cache-Control": "max-age=0",
    }
    headers.update(custom)
    return headers


class StealthFetcher(BaseFetcher):
    method = FetchMethod.STEALTH

    def __init__(
        self,
        gate: AdmissionGate,
        metrics: Optional[MetricsCollector] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        backoff: Optional[BackoffStrategy] = None,
        headless: bool = True,
        session_ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(metrics)
        self._gate = gate
        self._rate_limiter = rate_limiter or DomainRateLimiter(max_requests=10, window_secs=60)
        self._limiters: Dict[int, DomainRateLimiter] = {}
        self._backoff = backoff or BackoffStrategy(base_seconds=2.0, max_seconds=30.0)
        self._headless = headless
        self._session_ttl = session_ttl
        self._clock = clock
        self._sessions: Dict[str, BrowserSession] = {}
        self._sessions_lock = threading.Lock()

    # ------------------------------------------------------------ sessions

    def session_for(self, domain: str, persistent: bool = True) -> BrowserSession:
        """Reuse the domain's browser identity unless it has gone stale."""
        now = self._clock()
        with self._sessions_lock:
            session = self._sessions.get(domain) if persistent else None
            if session is None or now - session.last_used > self._session_ttl:
                session = BrowserSession(domain=domain, fingerprint=random_fingerprint(), last_used=now)
                if persistent:
                    self._sessions[domain] = session
                logger.debug("stealth_session_created", domain=domain, user_agent=session.fingerprint.user_agent)
            session.last_used = now
            return session

    def expire_sessions(self) -> int:
        now = self._clock()
        with self._sessions_lock:
            stale = [d for d, s in self._sessions.items() if now - s.last_used > self._session_ttl]
            for domain in stale:
                del self._sessions[domain]
        return len(stale)

    def session_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._sessions_lock:
            return {
                d: {"success_count": s.success_count, "failure_count": s.failure_count, "cookies": len(s.cookies)}
                for d, s in self._sessions.items()
            }

    def close(self) -> None:
        with self._sessions_lock:
            self._sessions.clear()

    def _limiter_for(self, options: FetchOptions) -> DomainRateLimiter:
        if not options.rate_limit_per_minute:
            return self._rate_limiter
        with self._sessions_lock:
            limiter = self._limiters.get(options.rate_limit_per_minute)
            if limiter is None:
                limiter = self._limiters[options.rate_limit_per_minute] = DomainRateLimiter(
                    max_requests=options.rate_limit_per_minute, window_secs=60
                )
            return limiter

    # ------------------------------------------------------------ fetch

    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        domain = validate_url(url)
        session = self.session_for(domain, persistent=options.session_persistence)
        attempts = max(1, options.max_retries)
        for attempt in range(1, attempts + 1):
            waited = self._limiter_for(options).acquire(domain)
            if waited:
                logger.info("stealth_rate_limited", domain=domain, waited=round(waited, 2))
            try:
                raw = self._attempt(url, options, session)
            except FetchError as exc:
                session.failure_count += 1
                # blocks and hard failures surface at once; only transient errors retry
                if isinstance(exc, BlockedError) or not exc.transient or attempt >= attempts:
                    raise
                sleep_s = self._backoff.get_sleep(attempt, str(exc.status_code or ""))
                logger.info("stealth_retry", domain=domain, attempt=attempt, sleep=round(sleep_s, 2), error=str(exc))
                session.fingerprint = random_fingerprint()
                if options.cancel_event is not None:
                    if options.cancel_event.wait(sleep_s):
                        raise FetchCancelledError(f"stealth fetch of {url} cancelled") from exc
                else:
                    time.sleep(sleep_s)
                continue
            session.success_count += 1
            raw.diagnostics["attempts"] = attempt
            return raw
        raise FetchError(f"stealth fetch of {url} exhausted retries", method=self.method.value)

    def _attempt(self, url: str, options: FetchOptions, session: BrowserSession) -> RawPage:
        with self._gate.slot(cancel_event=options.cancel_event):
            if options.cancelled():
                raise FetchCancelledError(f"stealth fetch of {url} cancelled")
            try:
                return self._render(url, options, session)
            except PlaywrightTimeoutError as exc:
                raise FetchError(
                    f"Navigation timeout after {options.timeout}s", method=self.method.value, transient=True
                ) from exc
            except PlaywrightError as exc:
                raise FetchError(f"Browser error: {exc}", method=self.method.value) from exc

    def _render(self, url: str, options: FetchOptions, session: BrowserSession) -> RawPage:
        fingerprint = session.fingerprint
        timeout_ms = int(options.timeout * 1000)
        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=self._headless, args=STEALTH_ARGS)
            try:
                context = browser.new_context(
                    user_agent=options.user_agent or fingerprint.user_agent,
                    viewport=fingerprint.viewport,
                    locale=fingerprint.locale,
                    timezone_id=fingerprint.timezone,
                    ignore_https_errors=True,
                    extra_http_headers=_extra_headers(fingerprint, options.headers),
                )
                context.add_init_script(STEALTH_INIT_SCRIPT)
                cookies = list(session.cookies)
                cookies.extend({"name": k, "value": v, "url": url} for k, v in options.cookies.items())
                if cookies:
                    context.add_cookies(cookies)
                page = context.new_page()
                response = page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                status = response.status if response else None
                page.wait_for_timeout(random.uniform(1000, 3000) if options.human_behavior else options.settle_delay * 1000)

                report = score_antibot_signals(page.evaluate(ANTIBOT_SCAN_SCRIPT) or {})
                logger.info(
                    "antibot_scan",
                    url=url,
                    detected=report.detected,
                    confidence=report.confidence,
                    indicators=report.indicators,
                )
                if report.detected and report.confidence > HUMAN_BEHAVIOR_THRESHOLD and options.human_behavior:
                    self._simulate_human(page, fingerprint)

                challenge = captcha_from_scan(page.evaluate(CAPTCHA_SCAN_SCRIPT))
                solved = False
                if challenge.type != "none":
                    solver = get_solver(options.captcha_solver, options.captcha_api_key)
                    solved = solver.solve(page, challenge, url)
                    if not solved:
                        raise CaptchaError(
                            f"CAPTCHA ({challenge.type}) detected and unsolved",
                            method=self.method.value,
                            status_code=status,
                        )
                    # The status belongs to the challenge page, not the content behind it.
                    status = None
                    page.wait_for_timeout(2000)

                raise_for_status(status, self.method)
                if options.wait_for_selector:
                    try:
                        page.wait_for_selector(options.wait_for_selector, timeout=5000)
                    except PlaywrightTimeoutError:
                        logger.info("wait_selector_missing", url=url, selector=options.wait_for_selector)
                html = page.content()
                final_url = page.url
                if options.session_persistence:
                    session.cookies = context.cookies()
            finally:
                browser.close()
        return RawPage(
            html=html,
            final_url=final_url,
            status_code=status,
            diagnostics={
                "anti_bot": asdict(report),
                "captcha": asdict(challenge),
                "captcha_solved": solved,
                "fingerprint": asdict(fingerprint),
            },
        )

    @staticmethod
    def _simulate_human(page: Any, fingerprint: BrowserFingerprint) -> None:
        width = fingerprint.viewport.get("width", 1280)
        height = fingerprint.viewport.get("height", 720)
        for _ in range(3):
            page.mouse.move(random.uniform(0, width), random.uniform(0, height), steps=10)
            page.wait_for_timeout(random.uniform(100, 300))
        for step in range(1, 4):
            page.evaluate(f"window.scrollTo(0, {int(step * height * 0.8)})")
            page.wait_for_timeout(random.uniform(300, 700))
        page.wait_for_timeout(random.uniform(1000, 3000))
        page.evaluate("window.scrollTo(0, 0)")
        page.wait_for_timeout(500)
