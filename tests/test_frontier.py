"""Tests for the UrlFrontier."""

import os
import shutil
import tempfile
import threading
import time
import unittest

from adaptive_crawler.frontier import UrlFrontier, calculate_priority, is_internal_url, normalize_url
from adaptive_crawler.models import CrawlConfig, CrawlSession, FrontierStatus
from adaptive_crawler.storage import SqliteStorage


class TestUrlHelpers(unittest.TestCase):
    """Verify URL normalisation, same-site checks and priorities."""

    def test_normalize_url(self):
        self.assertEqual(normalize_url("HTTPS://Example.COM/a?b=2&a=1#frag"), "https://example.com/a?a=1&b=2")
        self.assertEqual(normalize_url("https://example.com"), "https://example.com/")

    def test_is_internal_url(self):
        self.assertTrue(is_internal_url("https://example.com/x", "example.com"))
        self.assertTrue(is_internal_url("https://blog.example.com/x", "www.example.com"))
        self.assertFalse(is_internal_url("https://notexample.com/x", "example.com"))
        self.assertFalse(is_internal_url("https://other.org/", "example.com"))

    def test_calculate_priority(self):
        self.assertEqual(calculate_priority("https://example.com/about", 1), 14)
        self.assertEqual(calculate_priority("https://example.com/tag/news", 2), 5)
        self.assertEqual(calculate_priority("https://example.com/x", 3), 7)
        self.assertEqual(calculate_priority("https://example.com/x", 20), 0)


class FrontierTestCase(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.storage = SqliteStorage(os.path.join(self.tmpdir, "frontier.db"))
        for sid in ("s1", "s2"):
            self.storage.create_session(
                CrawlSession(session_id=sid, domain="example.com", start_url="https://example.com/", config=CrawlConfig())
            )
        self.frontier = UrlFrontier(self.storage, max_attempts=2)

    def tearDown(self):
        self.storage.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class TestDedup(FrontierTestCase):
    """Re-adding a URL never creates a second item nor changes it."""

    def test_readding_is_a_no_op(self):
        self.assertTrue(self.frontier.add_url("s1", "https://example.com/a", depth=1, priority=5))
        self.assertFalse(self.frontier.add_url("s1", "https://EXAMPLE.com/a#top", depth=0, priority=50))
        items = self.frontier.items("s1")
        self.assertEqual(len(items), 1)
        self.assertEqual((items[0].depth, items[0].priority), (1, 5))

    def test_sessions_are_isolated(self):
        self.frontier.add_url("s1", "https://example.com/a", depth=0)
        self.assertTrue(self.frontier.add_url("s2", "https://example.com/a", depth=0))
        self.assertEqual(self.frontier.stats("s1")["total"], 1)

    def test_batch_counts_only_new_urls(self):
        self.frontier.add_url("s1", "https://example.com/a", depth=0)
        batch = [
            ("https://example.com/a", 1, None, 0),
            ("https://example.com/b", 1, None, 0),
            ("https://example.com/b#x", 1, None, 0),
        ]
        self.assertEqual(self.frontier.add_urls("s1", batch), 1)


class TestClaiming(FrontierTestCase):
    """Verify ordering, exclusivity and the attempt cap."""

    def test_priority_then_depth_order(self):
        self.frontier.add_url("s1", "https://example.com/c", depth=2, priority=8)
        self.frontier.add_url("s1", "https://example.com/a", depth=0, priority=10)
        self.frontier.add_url("s1", "https://example.com/b", depth=1, priority=8)
        claimed = [self.frontier.next("s1").url for _ in range(3)]
        self.assertEqual(claimed, ["https://example.com/a", "https://example.com/b", "https://example.com/c"])
        self.assertIsNone(self.frontier.next("s1"))

    def test_concurrent_claims_are_unique(self):
        self.frontier.add_urls("s1", [(f"https://example.com/p{i}", 1, None, i % 5) for i in range(60)])
        claimed = []
        lock = threading.Lock()

        def worker():
            while True:
                item = self.frontier.next("s1")
                if item is None:
                    return
                with lock:
                    claimed.append(item.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(claimed), 60)
        self.assertEqual(len(set(claimed)), 60)
        self.assertEqual(self.frontier.stats("s1")["processing"], 60)

    def test_attempt_cap(self):
        """An item reset max_attempts times is no longer handed out."""
        self.frontier.add_url("s1", "https://example.com/a", depth=0)
        for _ in range(2):
            item = self.frontier.next("s1")
            self.frontier.reset(item.id)
        self.assertIsNone(self.frontier.next("s1"))
        stats = self.frontier.stats("s1")
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(self.frontier.pending_count("s1"), 0)

    def test_requeue_processing(self):
        self.frontier.add_urls("s1", [("https://example.com/a", 0, None, 0), ("https://example.com/b", 0, None, 0)])
        self.frontier.next("s1")
        self.frontier.next("s1")
        self.assertEqual(self.frontier.requeue_processing("s1"), 2)
        self.assertEqual(self.frontier.stats("s1")["pending"], 2)
        self.assertEqual([item.attempts for item in self.frontier.items("s1")], [0, 0])

    def test_release_gives_back_the_attempt(self):
        """Interrupted claims can be released any number of times."""
        self.frontier.add_url("s1", "https://example.com/a", depth=0)
        for _ in range(5):
            item = self.frontier.next("s1")
            self.assertEqual(item.attempts, 1)
            self.frontier.release(item.id)
        self.assertEqual(self.frontier.pending_count("s1"), 1)
        self.assertEqual(self.frontier.items("s1")[0].attempts, 0)

    def test_mark_completed_and_failed(self):
        self.frontier.add_urls("s1", [("https://example.com/a", 0, None, 0), ("https://example.com/b", 0, None, 0)])
        self.frontier.mark_completed(self.frontier.next("s1").id)
        self.frontier.mark_failed(self.frontier.next("s1").id, "Blocked by robots.txt")
        stats = self.frontier.stats("s1")
        self.assertEqual((stats["completed"], stats["failed"]), (1, 1))
        failed = self.frontier.items("s1", FrontierStatus.FAILED)
        self.assertEqual(failed[0].last_error, "Blocked by robots.txt")

    def test_retry_failed_respects_cap(self):
        self.frontier.add_url("s1", "https://example.com/a", depth=0)
        self.frontier.mark_failed(self.frontier.next("s1").id, "HTTP 500")
        self.assertEqual(self.frontier.retry_failed("s1"), 1)
        self.frontier.mark_failed(self.frontier.next("s1").id, "HTTP 500")
        # two attempts used: no more retries
        self.assertEqual(self.frontier.retry_failed("s1"), 0)

    def test_items_at_depth_and_purge(self):
        self.frontier.add_urls("s1", [("https://example.com/", 0, None, 10), ("https://example.com/a", 1, None, 9)])
        self.assertEqual([i.url for i in self.frontier.items_at_depth("s1", 1)], ["https://example.com/a"])
        self.frontier.mark_completed(self.frontier.next("s1").id)
        self.assertEqual(self.frontier.purge("s1", older_than_days=1), 0)
        self.assertEqual(self.frontier.purge("s1"), 2)


class TestWaiting(FrontierTestCase):
    def test_add_wakes_waiting_worker(self):
        woke = []

        def waiter():
            start = time.monotonic()
            self.frontier.wait_for_work("s1", timeout=5)
            woke.append(time.monotonic() - start)

        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.05)
        self.frontier.add_url("s1", "https://example.com/new", depth=1)
        t.join(5)
        self.assertEqual(len(woke), 1)
        self.assertLess(woke[0], 2.0)


if __name__ == "__main__":
    unittest.main()
