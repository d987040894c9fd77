import asyncio
import unittest

from codex_keeper.config.models import RateLimitSettings
from codex_keeper.throttle import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class RateLimiterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(max_tokens=3, tokens_per_interval=1, interval_seconds=1.0, clock=self.clock)

    def test_burst_then_denial_then_refill(self) -> None:
        remaining = [self.limiter.check_limit("c").remaining for _ in range(3)]
        self.assertEqual(remaining, [2, 1, 0])

        denied = self.limiter.check_limit("c")
        self.assertFalse(denied.allowed)
        self.assertEqual(denied.remaining, 0)
        self.assertGreater(denied.retry_after, 0)

        self.clock.now += 1.0
        self.assertTrue(self.limiter.check_limit("c").allowed)

    def test_retry_after_counts_down_to_next_token(self) -> None:
        for _ in range(3):
            self.limiter.check_limit("c")
        self.clock.now += 0.25

        denied = self.limiter.check_limit("c")

        self.assertAlmostEqual(denied.retry_after, 0.75)

    def test_partial_intervals_are_not_lost(self) -> None:
        for _ in range(3):
            self.limiter.check_limit("c")
        self.clock.now += 0.6
        self.assertFalse(self.limiter.check_limit("c").allowed)
        self.clock.now += 0.6
        self.assertTrue(self.limiter.check_limit("c").allowed)

    def test_reset_starts_a_fresh_bucket(self) -> None:
        for _ in range(3):
            self.limiter.check_limit("c")

        self.limiter.reset("c")

        self.assertEqual(self.limiter.check_limit("c").remaining, 2)

    def test_clients_are_independent(self) -> None:
        for _ in range(4):
            self.limiter.check_limit("a")
        self.assertTrue(self.limiter.check_limit("b").allowed)

    def test_tokens_never_exceed_capacity(self) -> None:
        self.limiter.check_limit("c")
        self.clock.now += 1000
        self.assertEqual(self.limiter.check_limit("c").remaining, 2)
        self.assertEqual(self.limiter.get_status("c").remaining, 2)

    def test_cleanup_removes_idle_buckets(self) -> None:
        self.limiter.check_limit("idle")
        self.clock.now += 50
        self.limiter.check_limit("active")

        self.assertEqual(self.limiter.cleanup(max_age_seconds=10), 1)
        self.assertEqual(self.limiter.get_status("idle").remaining, 3)
        self.assertEqual(self.limiter.get_status("active").remaining, 2)

    def test_from_settings(self) -> None:
        limiter = RateLimiter.from_settings(RateLimitSettings(max_tokens=5), clock=self.clock)
        self.assertEqual(limiter.check_limit("c").remaining, 4)

    def test_invalid_bounds_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(max_tokens=0)


class RateLimiterBackgroundTests(unittest.IsolatedAsyncioTestCase):
    async def test_background_cleanup_runs_until_stopped(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_tokens=3, tokens_per_interval=1, interval_seconds=1.0, clock=clock)
        limiter.check_limit("idle")
        clock.now += 100

        limiter.start(interval_seconds=0.01, max_age_seconds=10)
        await asyncio.sleep(0.05)
        await asyncio.wait_for(limiter.stop(), timeout=1)

        self.assertEqual(limiter.cleanup(max_age_seconds=10), 0)


if __name__ == "__main__":
    unittest.main()
