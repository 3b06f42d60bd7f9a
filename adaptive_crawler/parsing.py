from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .models import FetchMethod, Heading, Image, Link, ScrapedContent

NO_TITLE = "No title found"

CONTENT_SELECTORS = (
    "main",
    "article",
    "[role=main]",
    "[data-testid*=content]",
    ".content",
    ".post-content",
    ".entry-content",
    ".article-content",
    "#content",
    "body",
)

NOISE_SELECTORS = (
    "script, style, noscript, nav, footer, aside, .nav, .navigation, .sidebar, "
    ".ad, .advertisement, [class*=cookie], [class*=popup], [class*=modal]"
)

LINK_LIMIT = 150
IMAGE_LIMIT = 75

_WS = re.compile(r"\s+")

SPA_MARKERS = ("ng-app", "data-reactroot", "__NEXT_DATA__", "__NUXT__", "data-v-app", "id=\"root\"")
AJAX_MARKERS = ("fetch(", "XMLHttpRequest", "axios", "$.ajax")
LAZY_MARKERS = ("data-src", "loading=\"lazy\"", "IntersectionObserver")
LOADING_MARKERS = ("spinner", "skeleton", "loading...")


def _clean(text: str) -> str:
    return _WS.sub(" ", text or "").strip()


def word_count(text: str) -> int:
    return len([w for w in (text or "").split() if w])


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def _resolve(href: str, base_url: str) -> Optional[str]:
    href = (href or "").strip()
    if not href or href.startswith(("javascript:", "mailto:", "tel:", "#", "data:")):
        return None
    resolved = urljoin(base_url, href)
    if urlsplit(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def _meta(soup: BeautifulSoup, *, name: Optional[str] = None, prop: Optional[str] = None) -> Optional[str]:
    attrs = {"name": name} if name else {"property": prop}
    tag = soup.find("meta", attrs=attrs)
    if isinstance(tag, Tag):
        value = tag.get("content")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_main_text(soup: BeautifulSoup) -> str:
    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        text = _clean(element.get_text(" "))
        if len(text) > 100 or selector == "body":
            return text
    return _clean(soup.get_text(" "))


def _extract_json_ld(soup: BeautifulSoup) -> List[Any]:
    blocks = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        try:
            blocks.append(json.loads(raw))
        except (TypeError, ValueError):
            continue
    return blocks


def parse_html(
    html: str,
    url: str,
    method: Optional[FetchMethod] = None,
    status_code: Optional[int] = None,
) -> ScrapedContent:
    """Turn a raw HTML document into ScrapedContent.

    Link ``internal`` flags compare hostnames with ``url``; links and images
    are resolved to absolute URLs, deduplicated and capped."""
    soup = BeautifulSoup(html or "", "html.parser")
    page_host = _host(url)

    # Structured data must be read before noise stripping drops <script> tags.
    json_ld = _extract_json_ld(soup)

    title_tag = soup.find("title")
    h1 = soup.find("h1")
    title = _clean(title_tag.get_text()) if title_tag else ""
    if not title and h1:
        title = _clean(h1.get_text())

    description = _meta(soup, name="description") or _meta(soup, prop="og:description") or ""

    metadata: Dict[str, Any] = {
        "meta_description": _meta(soup, name="description"),
        "meta_keywords": _meta(soup, name="keywords"),
        "author": _meta(soup, name="author") or _meta(soup, prop="article:author"),
        "published_date": _meta(soup, prop="article:published_time") or _meta(soup, name="date"),
        "og_title": _meta(soup, prop="og:title"),
        "og_description": _meta(soup, prop="og:description"),
        "og_image": _meta(soup, prop="og:image"),
        "twitter_card": _meta(soup, name="twitter:card"),
    }
    canonical = soup.find("link", attrs={"rel": "canonical"})
    if isinstance(canonical, Tag) and canonical.get("href"):
        metadata["canonical"] = canonical.get("href")
    if json_ld:
        metadata["structured_data"] = json_ld
    metadata = {k: v for k, v in metadata.items() if v}

    headings: List[Heading] = []
    for tag in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = _clean(tag.get_text())
        if text:
            headings.append(Heading(level=int(tag.name[1]), text=text))

    links: List[Link] = []
    seen_links = set()
    for a in soup.find_all("a", href=True):
        resolved = _resolve(a.get("href"), url)
        if not resolved:
            continue
        resolved = resolved.split("#", 1)[0]
        if resolved in seen_links:
            continue
        seen_links.add(resolved)
        text = _clean(a.get_text())[:200]
        links.append(Link(text=text or resolved, href=resolved, internal=_host(resolved) == page_host))
        if len(links) >= LINK_LIMIT:
            break

    images: List[Image] = []
    seen_images = set()
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or img.get("data-lazy-src")
        resolved = _resolve(src, url) if isinstance(src, str) else None
        if not resolved or resolved in seen_images:
            continue
        seen_images.add(resolved)
        images.append(Image(src=resolved, alt=_clean(img.get("alt") or "")))
        if len(images) >= IMAGE_LIMIT:
            break

    for noise in soup.select(NOISE_SELECTORS):
        noise.decompose()
    text = _extract_main_text(soup)

    return ScrapedContent(
        url=url,
        title=title or NO_TITLE,
        description=description,
        content=text,
        html=html or "",
        links=links,
        images=images,
        headings=headings,
        metadata=metadata,
        word_count=word_count(text),
        method=method,
        status_code=status_code,
    )


def extract_title(html: str) -> str:
    match = re.search(r"<title[^>]*>(.*?)</title>", html or "", re.IGNORECASE | re.DOTALL)
    return _clean(match.group(1)) if match else ""


def needs_dynamic_rendering(html: str) -> Tuple[bool, int, List[str]]:
    """Score how likely a statically fetched page needs JavaScript rendering.

    Returns (needs_dynamic, confidence 0-100, reasons)."""
    html = html or ""
    reasons: List[str] = []
    score = 0
    if any(marker in html for marker in SPA_MARKERS):
        reasons.append("Single Page Application detected")
        score += 30
    visible = _clean(re.sub(r"<script.*?</script>|<style.*?</style>|<[^>]+>", " ", html, flags=re.DOTALL))
    if len(visible) < 500:
        reasons.append("Minimal static content")
        score += 25
    lowered = html.lower()
    if any(marker in lowered for marker in LOADING_MARKERS):
        reasons.append("Loading indicators found")
        score += 20
    if any(marker in html for marker in AJAX_MARKERS):
        reasons.append("AJAX/fetch patterns detected")
        score += 25
    if any(marker in html for marker in LAZY_MARKERS):
        reasons.append("Lazy loading detected")
        score += 15
    confidence = min(score, 100)
    return confidence > 40, confidence, reasons
