from __future__ import annotations

from dataclasses import replace
from typing import List, Tuple

from .models import Heading, Image, Link, ScrapedContent
from .parsing import LINK_LIMIT, IMAGE_LIMIT, NO_TITLE, word_count


def quality_score(content: ScrapedContent) -> Tuple[int, List[str]]:
    """Score fetched content 0-100 from volume, metadata and structure."""
    reasons: List[str] = []
    score = 0

    words = content.word_count
    if words > 1000:
        score += 30
        reasons.append("Rich content (1000+ words)")
    elif words > 500:
        score += 20
        reasons.append("Moderate content (500+ words)")
    elif words > 100:
        score += 10
        reasons.append("Basic content (100+ words)")
    else:
        reasons.append("Minimal content (<100 words)")

    if content.title and content.title != NO_TITLE and len(content.title) > 10:
        score += 15
        reasons.append("Good title")

    if content.description and len(content.description) > 50:
        score += 10
        reasons.append("Good description")

    if len(content.links) > 10:
        score += 15
        reasons.append("Rich link structure")
    elif len(content.links) > 5:
        score += 10
        reasons.append("Moderate links")

    if len(content.images) > 5:
        score += 10
        reasons.append("Rich media content")
    elif content.images:
        score += 5
        reasons.append("Some media content")

    if len(content.headings) > 5:
        score += 10
        reasons.append("Good content structure")
    elif content.headings:
        score += 5
        reasons.append("Basic structure")

    metadata_fields = sum(1 for v in content.metadata.values() if v)
    if metadata_fields > 5:
        score += 10
        reasons.append("Rich metadata")
    elif metadata_fields > 2:
        score += 5
        reasons.append("Basic metadata")

    return min(score, 100), reasons


def completeness_score(content: ScrapedContent) -> int:
    score = 0
    if content.title and content.title != NO_TITLE:
        score += 20
    if content.description:
        score += 15
    if content.content and content.word_count > 100:
        score += 25
    if content.links:
        score += 10
    if content.images:
        score += 10
    if content.headings:
        score += 10
    if content.metadata:
        score += 10
    return min(score, 100)


def merge_content(static: ScrapedContent, rendered: ScrapedContent) -> ScrapedContent:
    """Union a lightweight and a rendered fetch of the same page.

    The body comes from whichever fetch produced more words; links, images
    and headings are unioned, metadata is merged with the rendered fetch
    taking precedence."""
    base = rendered if rendered.word_count > static.word_count else static

    links: List[Link] = []
    seen = set()
    for link in list(static.links) + list(rendered.links):
        if link.href not in seen:
            seen.add(link.href)
            links.append(link)

    images: List[Image] = []
    seen = set()
    for img in list(static.images) + list(rendered.images):
        if img.src not in seen:
            seen.add(img.src)
            images.append(img)

    headings: List[Heading] = []
    seen_headings = set()
    for heading in list(static.headings) + list(rendered.headings):
        key = (heading.level, heading.text)
        if key not in seen_headings:
            seen_headings.add(key)
            headings.append(heading)

    metadata = {**static.metadata, **rendered.metadata}
    return replace(
        base,
        links=links[:LINK_LIMIT],
        images=images[:IMAGE_LIMIT],
        headings=headings,
        metadata=metadata,
        word_count=word_count(base.content),
    )
