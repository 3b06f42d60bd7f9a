"""Tests for HTML parsing, quality scoring and content merging."""

import unittest

from adaptive_crawler.models import FetchMethod
from adaptive_crawler.parsing import NO_TITLE, extract_title, needs_dynamic_rendering, parse_html
from adaptive_crawler.quality import completeness_score, merge_content, quality_score

from tests.fakes import rich_page

ARTICLE = """
<html><head>
  <title>Widgets and gadgets</title>
  <meta name="description" content="All about widgets">
  <meta property="og:image" content="https://example.com/og.png">
  <link rel="canonical" href="https://example.com/widgets">
  <script type="application/ld+json">{"@type": "Article", "headline": "Widgets"}</script>
</head><body>
  <nav><a href="/home">Home</a></nav>
  <main>
    <h1>Widgets</h1><h2>Sizes</h2>
    <p>Widgets come in many sizes.</p>
    <a href="/about#team">About</a>
    <a href="https://other.org/x">Elsewhere</a>
    <a href="mailto:hi@example.com">Mail</a>
    <a href="/about">About again</a>
    <img src="/a.png" alt="A"><img data-src="/lazy.png">
  </main>
  <footer>footer text</footer>
</body></html>
"""


class TestParseHtml(unittest.TestCase):
    """Verify that parse_html extracts the fields the scorer relies on."""

    def setUp(self):
        self.content = parse_html(ARTICLE, "https://example.com/widgets", method=FetchMethod.STATIC, status_code=200)

    def test_title_and_description(self):
        self.assertEqual(self.content.title, "Widgets and gadgets")
        self.assertEqual(self.content.description, "All about widgets")
        self.assertEqual(self.content.method, FetchMethod.STATIC)

    def test_links_are_resolved_deduplicated_and_flagged(self):
        hrefs = [link.href for link in self.content.links]
        self.assertIn("https://example.com/about", hrefs)
        self.assertEqual(hrefs.count("https://example.com/about"), 1)
        self.assertFalse(any(h.startswith("mailto:") for h in hrefs))
        internal = {link.href: link.internal for link in self.content.links}
        self.assertTrue(internal["https://example.com/about"])
        self.assertFalse(internal["https://other.org/x"])

    def test_images_include_lazy_sources(self):
        self.assertEqual(
            [img.src for img in self.content.images],
            ["https://example.com/a.png", "https://example.com/lazy.png"],
        )

    def test_noise_is_stripped_from_text(self):
        self.assertIn("Widgets come in many sizes.", self.content.content)
        self.assertNotIn("footer text", self.content.content)

    def test_metadata(self):
        self.assertEqual(self.content.metadata["canonical"], "https://example.com/widgets")
        self.assertEqual(self.content.metadata["structured_data"][0]["@type"], "Article")
        self.assertEqual([h.level for h in self.content.headings], [1, 2])

    def test_missing_title_falls_back(self):
        self.assertEqual(parse_html("<p>x</p>", "https://example.com/").title, NO_TITLE)
        self.assertEqual(parse_html("<h1>Heading</h1>", "https://example.com/").title, "Heading")

    def test_extract_title(self):
        self.assertEqual(extract_title("<TITLE>\n Hi  there </TITLE>"), "Hi there")


class TestNeedsDynamicRendering(unittest.TestCase):
    def test_spa_shell_needs_rendering(self):
        html = '<html><body><div id="root"></div><script>fetch("/api/items")</script></body></html>'
        needed, confidence, reasons = needs_dynamic_rendering(html)
        self.assertTrue(needed)
        self.assertEqual(confidence, 80)
        self.assertIn("Single Page Application detected", reasons)

    def test_rich_static_page_does_not(self):
        needed, confidence, _ = needs_dynamic_rendering(rich_page())
        self.assertFalse(needed)
        self.assertEqual(confidence, 0)


class TestQualityScore(unittest.TestCase):
    """Verify the additive 0-100 quality score."""

    def test_rich_page_scores_high(self):
        links = [f"https://example.com/p{i}" for i in range(12)]
        content = parse_html(rich_page(links=links), "https://example.com/")
        score, reasons = quality_score(content)
        self.assertEqual(score, 85)
        self.assertIn("Rich link structure", reasons)
        self.assertIn("Moderate content (500+ words)", reasons)

    def test_empty_page_scores_zero(self):
        score, reasons = quality_score(parse_html("", "https://example.com/"))
        self.assertEqual(score, 0)
        self.assertEqual(reasons, ["Minimal content (<100 words)"])

    def test_completeness(self):
        content = parse_html(ARTICLE, "https://example.com/widgets")
        # title, description, links, images, headings, metadata; body under 100 words
        self.assertEqual(completeness_score(content), 75)


class TestMergeContent(unittest.TestCase):
    """Verify that a static and a rendered fetch of one page are unioned."""

    def test_union_and_richer_body(self):
        static = parse_html(ARTICLE, "https://example.com/widgets", method=FetchMethod.STATIC)
        rendered = parse_html(
            rich_page(links=["https://example.com/rendered-only"]),
            "https://example.com/widgets",
            method=FetchMethod.DYNAMIC,
        )
        merged = merge_content(static, rendered)
        hrefs = [link.href for link in merged.links]
        self.assertIn("https://example.com/about", hrefs)
        self.assertIn("https://example.com/rendered-only", hrefs)
        self.assertEqual(len(hrefs), len(set(hrefs)))
        self.assertEqual(merged.content, rendered.content)
        self.assertEqual(merged.method, FetchMethod.DYNAMIC)
        self.assertIn("canonical", merged.metadata)
        self.assertIn((1, "Widgets"), [(h.level, h.text) for h in merged.headings])


if __name__ == "__main__":
    unittest.main()
