"""Tests for the DomainProfileStore and strategy selection."""

import json
import threading
import unittest

from adaptive_crawler.errors import ProfileImportError
from adaptive_crawler.models import Difficulty, FetchMethod
from adaptive_crawler.profiles import DomainProfileStore


class TestRecordOutcome(unittest.TestCase):
    """Verify success-rate bookkeeping."""

    def setUp(self):
        self.store = DomainProfileStore()

    def test_rates_stay_in_unit_interval_and_attempts_are_counted(self):
        pattern = [
            (FetchMethod.STATIC, True),
            (FetchMethod.STATIC, False),
            (FetchMethod.DYNAMIC, True),
            (FetchMethod.STEALTH, False),
            (FetchMethod.STATIC, True),
            (FetchMethod.DYNAMIC, True),
            (FetchMethod.DYNAMIC, False),
        ]
        for method, success in pattern:
            self.store.record_outcome("example.com", method, success, None if success else "timeout")
        profile = self.store.get("example.com")
        self.assertEqual(profile.total_attempts, len(pattern))
        for rate in profile.success_rates.values():
            self.assertGreaterEqual(rate, 0.0)
            self.assertLessEqual(rate, 1.0)

    def test_first_success_gives_full_rate(self):
        profile = self.store.record_outcome("example.com", FetchMethod.STATIC, True)
        self.assertEqual(profile.success_rates[FetchMethod.STATIC], 1.0)
        self.assertEqual(profile.optimal_strategy.method, FetchMethod.STATIC)

    def test_concurrent_updates_are_all_counted(self):
        def worker():
            for _ in range(50):
                self.store.record_outcome("Example.com", FetchMethod.STATIC, True)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.store.get("example.com").total_attempts, 200)

    def test_error_text_raises_flags(self):
        self.store.record_outcome("example.com", FetchMethod.STATIC, False, "Access forbidden (HTTP 403)")
        self.store.record_outcome("example.com", FetchMethod.STATIC, False, "Rate limit hit (HTTP 429)")
        profile = self.store.get("example.com")
        self.assertTrue(profile.characteristics.has_anti_bot)
        self.assertTrue(profile.characteristics.has_rate_limit)
        self.assertEqual(profile.characteristics.difficulty, Difficulty.HARD)
        self.assertEqual(len(profile.recent_failures), 2)

    def test_readers_get_copies(self):
        self.store.record_outcome("example.com", FetchMethod.STATIC, True)
        copy = self.store.get("example.com")
        copy.success_rates[FetchMethod.STATIC] = 0.0
        self.assertEqual(self.store.get("example.com").success_rates[FetchMethod.STATIC], 1.0)


class TestSelectStrategy(unittest.TestCase):
    """Verify learned, heuristic and forced selection."""

    def setUp(self):
        self.store = DomainProfileStore()

    def test_unknown_domain_starts_with_static(self):
        strategy = self.store.select_strategy("new-site.org")
        self.assertEqual(strategy.method, FetchMethod.STATIC)
        self.assertEqual(strategy.confidence, 70)

    def test_learned_rates_take_over(self):
        """A profile with static 0.9 over 10 attempts selects static confidently."""
        self.store.import_json(
            json.dumps(
                {
                    "domain": "example.com",
                    "success_rates": {"static": 0.9, "dynamic": 0.2, "stealth": 0.0},
                    "total_attempts": 10,
                }
            )
        )
        strategy = self.store.select_strategy("example.com")
        self.assertEqual(strategy.method, FetchMethod.STATIC)
        self.assertGreaterEqual(strategy.confidence, 70)
        self.assertIn("Learned", strategy.reasons[0])

    def test_few_attempts_fall_back_to_heuristics(self):
        for _ in range(3):
            self.store.record_outcome("example.com", FetchMethod.DYNAMIC, True)
        strategy = self.store.select_strategy("example.com")
        self.assertTrue(any("Heuristic" in r for r in strategy.reasons))

    def test_anti_bot_flag_moves_away_from_static(self):
        self.store.observe("example.com", has_anti_bot=True)
        strategy = self.store.select_strategy("example.com")
        self.assertNotEqual(strategy.method, FetchMethod.STATIC)

    def test_requires_js_prefers_dynamic(self):
        self.store.observe("example.com", requires_js=True)
        strategy = self.store.select_strategy("example.com")
        self.assertEqual(strategy.method, FetchMethod.DYNAMIC)
        self.assertEqual(strategy.options["settle_delay"], 1.0)

    def test_score_tie_goes_to_heavier_method(self):
        self.store.observe("example.com", requires_js=True, has_rate_limit=True)
        strategy = self.store.select_strategy("example.com")
        self.assertEqual(strategy.method, FetchMethod.STEALTH)
        self.assertEqual(strategy.confidence, 60)

    def test_domain_hint(self):
        strategy = self.store.select_strategy("my-react-app.dev")
        self.assertEqual(strategy.method, FetchMethod.DYNAMIC)

    def test_override_wins(self):
        strategy = self.store.select_strategy("example.com", FetchMethod.STEALTH)
        self.assertEqual(strategy.method, FetchMethod.STEALTH)
        self.assertEqual(strategy.confidence, 100)

    def test_rate_limit_tunes_options(self):
        self.store.observe("example.com", has_rate_limit=True)
        strategy = self.store.select_strategy("example.com", FetchMethod.STEALTH)
        self.assertEqual(strategy.options["rate_limit_per_minute"], 5)
        self.assertEqual(strategy.options["timeout"], 90.0)


class TestProfileManagement(unittest.TestCase):
    """Verify clear, export and import."""

    def test_export_import_round_trip(self):
        source = DomainProfileStore()
        source.record_outcome("a.example", FetchMethod.STATIC, True)
        source.observe("b.example", requires_js=True, difficulty=Difficulty.HARD)
        target = DomainProfileStore()
        self.assertEqual(target.import_json(source.export_json()), 2)
        b = target.get("b.example")
        self.assertTrue(b.characteristics.requires_js)
        self.assertEqual(b.characteristics.difficulty, Difficulty.HARD)
        self.assertEqual(target.get("a.example").total_attempts, 1)

    def test_import_rejects_invalid_json(self):
        with self.assertRaises(ProfileImportError):
            DomainProfileStore().import_json("{not json")

    def test_import_skips_records_without_domain(self):
        self.assertEqual(DomainProfileStore().import_json(json.dumps([{"total_attempts": 3}])), 0)

    def test_clear(self):
        store = DomainProfileStore()
        store.record_outcome("a.example", FetchMethod.STATIC, True)
        store.record_outcome("b.example", FetchMethod.STATIC, True)
        self.assertTrue(store.clear("A.example"))
        self.assertFalse(store.clear("a.example"))
        self.assertEqual(store.clear_all(), 1)
        self.assertEqual(store.all_profiles(), [])

    def test_success_rate_report(self):
        store = DomainProfileStore()
        store.record_outcome("a.example", FetchMethod.STATIC, True)
        report = store.success_rate_report()
        self.assertEqual(report[0]["domain"], "a.example")
        self.assertEqual(report[0]["rates"]["static"], 1.0)
        self.assertEqual(report[0]["optimal"], "static")


if __name__ == "__main__":
    unittest.main()
