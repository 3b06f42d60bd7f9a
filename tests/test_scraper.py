"""Tests for the AdaptiveScraper selection and fallback cascade."""

import unittest

from adaptive_crawler.errors import (
    AllStrategiesFailedError,
    BlockedError,
    FetchError,
    InvalidUrlError,
    ServerBusyError,
)
from adaptive_crawler.factory import FetcherFactory
from adaptive_crawler.models import Difficulty, FetchMethod
from adaptive_crawler.profiles import DomainProfileStore
from adaptive_crawler.scraper import AdaptiveScraper

from tests.fakes import FakeFetcher, rich_page

URL = "https://example.com/article"
SPA_SHELL = '<html><head><title>App</title></head><body><div id="root"></div><script>fetch("/api")</script></body></html>'


def forbidden(method: str = "static") -> BlockedError:
    return BlockedError(
        "Access forbidden (HTTP 403): the website blocked automated access", method=method, status_code=403
    )


class ScraperTestCase(unittest.TestCase):
    def build(self, static=None, dynamic=None, stealth=None, enable_hybrid=False):
        self.static = FakeFetcher(FetchMethod.STATIC, default=static)
        self.dynamic = FakeFetcher(FetchMethod.DYNAMIC, default=dynamic)
        self.stealth = FakeFetcher(FetchMethod.STEALTH, default=stealth)
        self.profiles = DomainProfileStore()
        factory = FetcherFactory(
            {FetchMethod.STATIC: self.static, FetchMethod.DYNAMIC: self.dynamic, FetchMethod.STEALTH: self.stealth}
        )
        self.scraper = AdaptiveScraper(self.profiles, factory, enable_hybrid=enable_hybrid)
        return self.scraper


class TestHappyPath(ScraperTestCase):
    """Verify selection, scoring and learning on a cooperative site."""

    def test_static_success(self):
        outcome = self.build().scrape(URL)
        self.assertEqual(outcome.strategy.method, FetchMethod.STATIC)
        self.assertEqual(outcome.methods_attempted, [FetchMethod.STATIC])
        self.assertGreaterEqual(outcome.quality_score, 50)
        self.assertGreater(outcome.completeness_score, 0)
        self.assertEqual(self.dynamic.calls, [])
        profile = self.profiles.get("example.com")
        self.assertEqual(profile.total_attempts, 1)
        self.assertEqual(profile.success_rates[FetchMethod.STATIC], 1.0)

    def test_strategy_options_reach_the_executor(self):
        scraper = self.build()
        self.profiles.observe("example.com", has_rate_limit=True)
        scraper.scrape(URL)
        self.assertEqual(self.stealth.options[0].timeout, 90.0)
        self.assertEqual(self.static.calls, [])

    def test_repeated_success_becomes_learned(self):
        scraper = self.build()
        for _ in range(6):
            scraper.scrape(URL)
        outcome = scraper.scrape(URL)
        self.assertTrue(outcome.strategy.reasons[0].startswith("Learned success rate"))

    def test_invalid_url(self):
        with self.assertRaises(InvalidUrlError):
            self.build().scrape("notaurl")
        self.assertEqual(self.static.calls, [])


class TestFallback(ScraperTestCase):
    """Verify the cascade reacts to failures and updates the profile."""

    def test_forbidden_static_flags_anti_bot_and_tries_dynamic(self):
        outcome = self.build(static=forbidden()).scrape(URL)
        self.assertEqual(outcome.methods_attempted, [FetchMethod.STATIC, FetchMethod.DYNAMIC])
        self.assertEqual(outcome.strategy.method, FetchMethod.DYNAMIC)
        self.assertIn("Fallback to dynamic after static failed", outcome.adaptations)
        self.assertIn("403", outcome.errors["static"])
        profile = self.profiles.get("example.com")
        self.assertTrue(profile.characteristics.has_anti_bot)
        self.assertEqual(profile.total_attempts, 2)

    def test_next_selection_avoids_static_after_block(self):
        scraper = self.build(static=forbidden())
        scraper.scrape(URL)
        self.assertNotEqual(self.profiles.select_strategy("example.com").method, FetchMethod.STATIC)

    def test_forced_method_never_falls_back(self):
        scraper = self.build(static=forbidden())
        with self.assertRaises(BlockedError):
            scraper.scrape(URL, force_method=FetchMethod.STATIC)
        self.assertEqual(self.dynamic.calls, [])
        self.assertEqual(self.stealth.calls, [])
        self.assertEqual(self.profiles.get("example.com").total_attempts, 1)

    def test_all_strategies_failed(self):
        scraper = self.build(
            static=forbidden(),
            dynamic=FetchError("Navigation timeout after 30s", method="dynamic", transient=True),
            stealth=forbidden("stealth"),
        )
        with self.assertRaises(AllStrategiesFailedError) as ctx:
            scraper.scrape(URL)
        self.assertEqual(set(ctx.exception.errors), {"static", "dynamic", "stealth"})
        self.assertEqual(self.profiles.get("example.com").total_attempts, 3)

    def test_unregistered_methods_are_skipped(self):
        static = FakeFetcher(FetchMethod.STATIC, default=forbidden())
        stealth = FakeFetcher(FetchMethod.STEALTH)
        profiles = DomainProfileStore()
        scraper = AdaptiveScraper(profiles, FetcherFactory({FetchMethod.STATIC: static, FetchMethod.STEALTH: stealth}))
        outcome = scraper.scrape(URL)
        self.assertEqual(outcome.methods_attempted, [FetchMethod.STATIC, FetchMethod.STEALTH])


class TestServerBusy(ScraperTestCase):
    """Admission refusals are not site failures."""

    def test_busy_is_raised_without_recording(self):
        scraper = self.build(dynamic=ServerBusyError("busy"))
        with self.assertRaises(ServerBusyError):
            scraper.scrape(URL, force_method=FetchMethod.DYNAMIC)
        self.assertEqual(self.profiles.get("example.com").total_attempts, 0)

    def test_busy_during_fallback_propagates(self):
        scraper = self.build(static=forbidden(), dynamic=ServerBusyError("busy"))
        with self.assertRaises(ServerBusyError):
            scraper.scrape(URL)
        self.assertEqual(self.profiles.get("example.com").total_attempts, 1)
        self.assertEqual(self.stealth.calls, [])


class TestObservations(ScraperTestCase):
    """Content-level observations raise profile flags."""

    def test_thin_static_page_marks_requires_js(self):
        outcome = self.build(static="<html><body><p>hi</p></body></html>").scrape(URL)
        self.assertIn("Low quality content detected", outcome.adaptations)
        self.assertTrue(self.profiles.get("example.com").characteristics.requires_js)
        self.assertEqual(self.profiles.select_strategy("example.com").method, FetchMethod.DYNAMIC)

    def test_blocked_text_in_render_marks_anti_bot(self):
        page = rich_page(title="Request blocked by the firewall")
        self.build(dynamic=page).scrape(URL, force_method=FetchMethod.DYNAMIC)
        self.assertTrue(self.profiles.get("example.com").characteristics.has_anti_bot)

    def test_stealth_scan_raises_difficulty(self):
        self.build()
        self.stealth.diagnostics = {"anti_bot": {"detected": True, "confidence": 85}, "captcha": {"type": "none"}}
        outcome = self.scraper.scrape(URL, force_method=FetchMethod.STEALTH)
        profile = self.profiles.get("example.com")
        self.assertTrue(profile.characteristics.has_anti_bot)
        self.assertEqual(profile.characteristics.difficulty, Difficulty.EXTREME)
        self.assertIn("Stealth scan: anti-bot confidence 85", outcome.adaptations)


class TestHybrid(ScraperTestCase):
    """Thin static pages are enriched with a rendered fetch when enabled."""

    def test_spa_shell_is_merged_with_render(self):
        outcome = self.build(static=SPA_SHELL, enable_hybrid=True).scrape(URL)
        self.assertEqual(outcome.methods_attempted, [FetchMethod.STATIC, FetchMethod.DYNAMIC])
        self.assertIn("Merged static and rendered content", outcome.adaptations)
        self.assertGreater(outcome.content.word_count, 500)

    def test_disabled_by_default(self):
        outcome = self.build(static=SPA_SHELL).scrape(URL)
        self.assertEqual(outcome.methods_attempted, [FetchMethod.STATIC])

    def test_busy_render_keeps_static_result(self):
        outcome = self.build(static=SPA_SHELL, dynamic=ServerBusyError("busy"), enable_hybrid=True).scrape(URL)
        self.assertEqual(outcome.strategy.method, FetchMethod.STATIC)
        self.assertEqual(outcome.content.title, "App")


if __name__ == "__main__":
    unittest.main()
