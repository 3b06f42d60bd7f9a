from __future__ import annotations

from typing import Any, Dict, Optional

import requests
import structlog
from curl_cffi import requests as curl_requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .admission import AdmissionGate
from .base import BaseFetcher, RawPage, raise_for_status
from .errors import BlockedError, FetchCancelledError, FetchError
from .metrics import MetricsCollector
from .models import FetchMethod, FetchOptions
from .settings import DEFAULT_USER_AGENT

logger = structlog.get_logger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate, br",
    "DNT": "1",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}

CHALLENGE_MARKERS = ("cf-chl", "checking your browser", "challenge-platform", "ddos-guard", "_incapsula_resource")

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

BLOCKED_RESOURCE_TYPES = ("image", "font", "media")
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}


def looks_like_challenge(html: str) -> bool:
    lowered = (html or "")[:20000].lower()
    return any(marker in lowered for marker in CHALLENGE_MARKERS)


class StaticFetcher(BaseFetcher):
    """Plain HTTP GET + HTML parse.

    Uses ``requests`` by default; when the strategy asks for browser
    impersonation (``options.impersonate``) the request goes through a
    ``curl_cffi`` session so the TLS/HTTP2 fingerprint matches a real browser.
    """

    method = FetchMethod.STATIC

    def __init__(self, metrics: Optional[MetricsCollector] = None, user_agent: str = DEFAULT_USER_AGENT) -> None:
        super().__init__(metrics)
        self._user_agent = user_agent

    def _headers(self, options: FetchOptions) -> Dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        headers["User-Agent"] = options.user_agent or self._user_agent
        headers.update(options.headers)
        return headers

    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        headers = self._headers(options)
        if options.impersonate:
            response = self._get_impersonated(url, headers, options)
        else:
            try:
                response = requests.get(
                    url,
                    headers=headers,
                    cookies=options.cookies or None,
                    timeout=options.timeout,
                    allow_redirects=True,
                )
            except requests.Timeout as exc:
                raise FetchError(f"Request timeout after {options.timeout}s", method=self.method.value, transient=True) from exc
            except requests.ConnectionError as exc:
                raise FetchError(f"Connection error: {exc}", method=self.method.value, transient=True) from exc

        status = response.status_code
        html = response.text or ""
        if status == 503 and looks_like_challenge(html):
            raise BlockedError(
                "Anti-bot challenge page (HTTP 503): the website blocked automated access",
                method=self.method.value,
                status_code=status,
            )
        raise_for_status(status, self.method)
        return RawPage(
            html=html,
            final_url=str(response.url),
            status_code=status,
            diagnostics={"impersonate": options.impersonate, "content_length": len(html)},
        )

    def _get_impersonated(self, url: str, headers: Dict[str, str], options: FetchOptions) -> Any:
        # curl_cffi supplies its own browser-consistent UA and header order.
        headers = {k: v for k, v in headers.items() if k not in ("User-Agent", "Accept-Encoding")}
        session = curl_requests.Session()
        try:
            return session.get(
                url,
                headers=headers,
                cookies=options.cookies or None,
                impersonate=options.impersonate,
                timeout=options.timeout,
                allow_redirects=True,
            )
        finally:
            session.close()


def _block_heavy_resources(route: Any) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        route.abort()
    else:
        route.continue_()


def _playwright_cookies(cookies: Dict[str, str], url: str) -> list:
    return [{"name": name, "value": value, "url": url} for name, value in cookies.items()]


class DynamicFetcher(BaseFetcher):
    """Headless Chromium render through Playwright.

    Every render holds one AdmissionGate slot for the lifetime of its browser.
    The browser is launched per fetch and always closed, so a crashed page
    never leaks a Chromium process.
    """

    method = FetchMethod.DYNAMIC

    def __init__(
        self,
        gate: AdmissionGate,
        metrics: Optional[MetricsCollector] = None,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        super().__init__(metrics)
        self._gate = gate
        self._headless = headless
        self._user_agent = user_agent

    def retrieve(self, url: str, options: FetchOptions) -> RawPage:
        with self._gate.slot(cancel_event=options.cancel_event):
            if options.cancelled():
                raise FetchCancelledError(f"render of {url} cancelled")
            try:
                return self._render(url, options)
            except PlaywrightTimeoutError as exc:
                raise FetchError(
                    f"Navigation timeout after {options.timeout}s",
                    method=self.method.value,
                    transient=True,
                ) from exc
            except PlaywrightError as exc:
                raise FetchError(f"Browser error: {exc}", method=self.method.value, transient=False) from exc

    def _render(self, url: str, options: FetchOptions) -> RawPage:
        timeout_ms = int(options.timeout * 1000)
        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=self._headless, args=BROWSER_ARGS)
            try:
                context = browser.new_context(
                    user_agent=options.user_agent or self._user_agent,
                    viewport=DEFAULT_VIEWPORT,
                    extra_http_headers=options.headers or None,
                    ignore_https_errors=True,
                )
                if options.cookies:
                    context.add_cookies(_playwright_cookies(options.cookies, url))
                if options.block_images:
                    context.route("**/*", _block_heavy_resources)
                page = context.new_page()
                response = page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                status = response.status if response else None
                raise_for_status(status, self.method)

                if options.wait_for_selector:
                    try:
                        page.wait_for_selector(options.wait_for_selector, timeout=5000)
                    except PlaywrightTimeoutError:
                        logger.info("wait_selector_missing", url=url, selector=options.wait_for_selector)

                page.wait_for_timeout(options.settle_delay * 1000)
                # Trigger lazy loaders, then settle once more.
                page.evaluate("window.scrollTo(0, document.body ? document.body.scrollHeight : 0)")
                page.wait_for_timeout(300)
                html = page.content()
                final_url = page.url
            finally:
                browser.close()
        return RawPage(html=html, final_url=final_url, status_code=status, diagnostics={"rendered": True})
