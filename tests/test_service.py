"""Tests for the ScrapingService wiring."""

import json
import os
import shutil
import tempfile
import unittest

from adaptive_crawler.factory import FetcherFactory
from adaptive_crawler.models import CrawlConfig, FetchMethod, SessionStatus
from adaptive_crawler.service import ScrapingService
from adaptive_crawler.settings import ScraperSettings

from tests.fakes import FakeFetcher, rich_page

SEED = "https://example.com/"


class ServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        settings = ScraperSettings(database_path=os.path.join(self.tmpdir, "service.db"), log_json=False)
        self.fetcher = FakeFetcher(FetchMethod.STATIC, pages={SEED: rich_page(links=["/a", "/b"])})
        self.service = ScrapingService(
            settings=settings,
            factory=FetcherFactory({FetchMethod.STATIC: self.fetcher}),
            configure_logs=False,
        )

    def tearDown(self):
        self.service.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestScrape(ServiceTestCase):
    """One-off scrapes feed the domain profiles."""

    def test_scrape_and_profile(self):
        outcome = self.service.scrape(SEED)
        self.assertEqual(outcome.strategy.method, FetchMethod.STATIC)
        profile = self.service.get_profile("example.com")
        self.assertEqual(profile.total_attempts, 1)
        report = self.service.success_rate_report()
        self.assertEqual(report[0]["domain"], "example.com")

    def test_profiles_export_import_clear(self):
        self.service.scrape(SEED)
        exported = self.service.export_profiles()
        self.assertEqual(self.service.clear_profiles(), 1)
        self.assertIsNone(self.service.get_profile("example.com"))
        self.assertEqual(self.service.import_profiles(exported), 1)
        self.assertTrue(self.service.clear_profile("example.com"))
        self.assertFalse(self.service.clear_profile("example.com"))
        self.assertIsInstance(json.loads(exported), list)

    def test_observability(self):
        self.assertEqual(self.service.gate_stats()["running"], 0)
        self.assertEqual(self.service.metrics_snapshot().total_attempts, 0)
        self.assertEqual(self.service.stealth_sessions(), {})


class TestCrawl(ServiceTestCase):
    """The crawl lifecycle through the service facade."""

    def test_crawl_round_trip(self):
        sid = self.service.start_crawl(SEED, CrawlConfig(delay=0, respect_robots=False, concurrent=2))
        session = self.service.wait_crawl(sid, 10)
        self.assertEqual(session.status, SessionStatus.COMPLETED)
        self.assertEqual(session.stats.processed_urls, 3)
        self.assertEqual(len(self.service.crawl_content(sid)), 3)
        self.assertEqual(self.service.crawl_progress(sid).frontier["completed"], 3)
        self.assertEqual([s.session_id for s in self.service.list_crawls()], [sid])
        self.assertTrue(self.service.delete_crawl(sid))
        self.assertEqual(self.service.list_crawls(), [])


if __name__ == "__main__":
    unittest.main()
