"""Tests for robots.txt checking."""

import unittest

import requests

from adaptive_crawler.robots import DefaultRobotsChecker, robots_url_for

from tests.fakes import FakeResponse, FakeSession

ROBOTS_TXT = """
User-agent: *
Disallow: /private/
Crawl-delay: 2

Sitemap: https://example.com/sitemap.xml
"""


class TestDefaultRobotsChecker(unittest.TestCase):
    """Verify how each robots.txt response maps to allow / deny."""

    def checker(self, *responses):
        session = FakeSession(get=list(responses))
        return DefaultRobotsChecker(session=session), session

    def test_robots_url(self):
        self.assertEqual(robots_url_for("https://example.com/a/b?q=1"), "https://example.com/robots.txt")

    def test_missing_robots_allows_everything(self):
        checker, _ = self.checker(FakeResponse(404))
        info = checker.check("https://example.com/anything")
        self.assertTrue(info.is_allowed)
        self.assertIn("No robots.txt", info.error)

    def test_restricted_robots_disallows(self):
        checker, _ = self.checker(FakeResponse(403))
        self.assertFalse(checker.check("https://example.com/").is_allowed)

    def test_server_error_disallows(self):
        checker, _ = self.checker(FakeResponse(500))
        info = checker.check("https://example.com/")
        self.assertFalse(info.is_allowed)
        self.assertIn("HTTP 500", info.error)

    def test_network_error_disallows(self):
        checker, _ = self.checker(requests.ConnectionError("refused"))
        info = checker.check("https://example.com/")
        self.assertFalse(info.is_allowed)
        self.assertIn("Failed to fetch robots.txt", info.error)

    def test_rules_are_applied(self):
        checker, _ = self.checker(FakeResponse(200, ROBOTS_TXT))
        blocked = checker.check("https://example.com/private/page", "TestBot")
        allowed = checker.check("https://example.com/public/page", "TestBot")
        self.assertFalse(blocked.is_allowed)
        self.assertTrue(allowed.is_allowed)
        self.assertEqual(allowed.crawl_delay, 2.0)
        self.assertEqual(allowed.sitemaps, ["https://example.com/sitemap.xml"])
        self.assertIsNone(allowed.error)

    def test_rules_are_cached_per_origin(self):
        checker, session = self.checker(FakeResponse(200, ROBOTS_TXT), FakeResponse(404))
        checker.check("https://example.com/a")
        checker.check("https://example.com/b")
        self.assertEqual(len(session.requests), 1)
        checker.check("https://other.org/")
        self.assertEqual(len(session.requests), 2)

    def test_clear_cache_refetches(self):
        checker, session = self.checker(FakeResponse(404), FakeResponse(404))
        checker.check("https://example.com/")
        checker.clear_cache()
        checker.check("https://example.com/")
        self.assertEqual(len(session.requests), 2)


if __name__ == "__main__":
    unittest.main()
