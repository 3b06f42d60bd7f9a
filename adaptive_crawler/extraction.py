from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, Optional, Protocol

from bs4 import BeautifulSoup, Tag

from .frontier import is_internal_url, normalize_url
from .models import ExtractedContent, StructuredData
from .parsing import NO_TITLE, parse_html

CHUNK_SIZE = 1000


class ContentExtractor(Protocol):
    def extract(self, html: str, url: str, domain: str) -> ExtractedContent:
        ...


class StructuredExtractor(Protocol):
    def extract(self, html: str, url: str, schema: Optional[Dict[str, str]] = None) -> StructuredData:
        ...


def chunk_text(text: str, size: int = CHUNK_SIZE) -> List[str]:
    """Split text on word boundaries into chunks of at most ``size`` characters."""
    chunks: List[str] = []
    current: List[str] = []
    length = 0
    for word in text.split():
        if current and length + len(word) + 1 > size:
            chunks.append(" ".join(current))
            current, length = [], 0
        current.append(word)
        length += len(word) + 1
    if current:
        chunks.append(" ".join(current))
    return chunks


def _markdown(soup: BeautifulSoup) -> str:
    lines: List[str] = []
    root = soup.find("main") or soup.find("article") or soup.body or soup
    for el in root.find_all(["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre", "blockquote"]):
        text = " ".join(el.get_text(" ").split())
        if not text:
            continue
        if el.name.startswith("h"):
            lines.append("#" * int(el.name[1]) + " " + text)
        elif el.name == "li":
            lines.append("- " + text)
        elif el.name == "pre":
            lines.append("```\n" + el.get_text() + "\n```")
        elif el.name == "blockquote":
            lines.append("> " + text)
        else:
            lines.append(text)
    return "\n\n".join(lines)


class DefaultContentExtractor:
    """BeautifulSoup extractor: text, markdown, link split and a content hash."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size

    def extract(self, html: str, url: str, domain: str) -> ExtractedContent:
        parsed = parse_html(html, url)
        internal: List[str] = []
        external: List[str] = []
        for link in parsed.links:
            target = normalize_url(link.href)
            if is_internal_url(target, domain):
                if target not in internal:
                    internal.append(target)
            elif target not in external:
                external.append(target)
        soup = BeautifulSoup(html or "", "html.parser")
        for noise in soup.select("script, style, noscript, nav, footer, aside"):
            noise.decompose()
        text = parsed.content
        return ExtractedContent(
            url=url,
            title="" if parsed.title == NO_TITLE else parsed.title,
            description=parsed.description,
            text_content=text,
            markdown_content=_markdown(soup),
            internal_links=internal,
            external_links=external,
            images=[img.src for img in parsed.images],
            content_chunks=chunk_text(text, self._chunk_size),
            content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        )


OPENGRAPH_FIELDS = ("og:title", "og:description", "og:image", "og:type", "og:url", "og:site_name")


class DefaultStructuredExtractor:
    """Reads JSON-LD and OpenGraph; a custom schema maps field names to CSS selectors."""

    def extract(self, html: str, url: str, schema: Optional[Dict[str, str]] = None) -> StructuredData:
        soup = BeautifulSoup(html or "", "html.parser")
        if schema:
            return self._extract_custom(soup, schema)

        nested: List[Dict[str, Any]] = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or script.get_text())
            except (TypeError, ValueError):
                continue
            items = data if isinstance(data, list) else data.get("@graph", [data]) if isinstance(data, dict) else []
            nested.extend(item for item in items if isinstance(item, dict))

        fields: Dict[str, Any] = {}
        for prop in OPENGRAPH_FIELDS:
            tag = soup.find("meta", attrs={"property": prop})
            if isinstance(tag, Tag) and tag.get("content"):
                fields[prop.split(":", 1)[1]] = tag.get("content")

        schema_name = "generic"
        if nested:
            primary = nested[0]
            kind = primary.get("@type")
            schema_name = (kind[0] if isinstance(kind, list) and kind else kind or "thing").lower()
            for key, value in primary.items():
                if not key.startswith("@"):
                    fields.setdefault(key, value)
        elif fields:
            schema_name = "opengraph"

        expected = ("title", "description", "image", "url")
        present = sum(1 for key in expected if fields.get(key) or fields.get("name" if key == "title" else key))
        return StructuredData(
            schema=schema_name,
            fields=fields,
            quality_score=round(present / len(expected), 2),
            nested_structures=nested[1:],
        )

    @staticmethod
    def _extract_custom(soup: BeautifulSoup, schema: Dict[str, str]) -> StructuredData:
        fields: Dict[str, Any] = {}
        for name, selector in schema.items():
            matches = soup.select(selector)
            values = [" ".join(m.get_text(" ").split()) for m in matches]
            values = [v for v in values if v]
            if not values:
                fields[name] = None
            else:
                fields[name] = values[0] if len(values) == 1 else values
        filled = sum(1 for v in fields.values() if v is not None)
        return StructuredData(
            schema="custom",
            fields=fields,
            quality_score=round(filled / len(schema), 2) if schema else 0.0,
        )
