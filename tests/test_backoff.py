"""Tests for the BackoffStrategy class."""

import unittest

from adaptive_crawler.backoff import BackoffStrategy


class TestBackoffStrategy(unittest.TestCase):
    """Verify exponential backoff produces correct sleep durations."""

    def test_first_attempt_returns_base(self):
        """First retry should sleep approximately the base duration."""
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=30.0)
        sleep = backoff.get_sleep(attempt=1)
        # base * 2^0 = 1.0, plus up to 10% jitter
        self.assertGreaterEqual(sleep, 1.0)
        self.assertLessEqual(sleep, 1.1)

    def test_exponential_growth(self):
        """Each subsequent attempt should double the sleep time."""
        backoff = BackoffStrategy(base_seconds=0.5, max_seconds=100.0, jitter_ratio=0)
        self.assertEqual(
            [backoff.get_sleep(attempt=n) for n in (1, 2, 3)],
            [0.5, 1.0, 2.0],
        )

    def test_respects_max_seconds(self):
        """The page-retry curve (base 1s, cap 5s) never exceeds the cap plus jitter."""
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=5.0)
        sleep = backoff.get_sleep(attempt=20)
        self.assertLessEqual(sleep, 5.5)

    def test_jitter_is_non_negative(self):
        backoff = BackoffStrategy(base_seconds=0.1, max_seconds=1.0)
        for attempt in range(1, 10):
            self.assertGreater(backoff.get_sleep(attempt), 0)


class TestBackoffWithErrorType(unittest.TestCase):
    """Verify that the error type shifts the curve for rate limits only."""

    def test_rate_limit_starts_one_step_later(self):
        backoff = BackoffStrategy(base_seconds=1.0, max_seconds=30.0, jitter_ratio=0)
        self.assertEqual(backoff.get_sleep(attempt=1, error_type="429"), 2.0)
        self.assertEqual(backoff.get_sleep(attempt=1, error_type="TimeoutError"), 1.0)


if __name__ == "__main__":
    unittest.main()
