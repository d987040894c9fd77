import unittest

from codex_keeper.store.memory_cache import MemoryCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class MemoryCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()

    def make_cache(self, *, max_size: int = 100, max_age_seconds: float = 60.0) -> MemoryCache:
        return MemoryCache(max_size=max_size, max_age_seconds=max_age_seconds, clock=self.clock)

    def test_least_recently_used_entry_is_evicted(self) -> None:
        cache = self.make_cache(max_size=100)

        self.assertTrue(cache.set("a", "va", 60))
        self.assertTrue(cache.set("b", "vb", 60))

        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.get("b"), "vb")
        self.assertEqual(cache.total_size, 60)

    def test_reads_refresh_recency(self) -> None:
        cache = self.make_cache(max_size=100)
        cache.set("a", "va", 40)
        cache.set("b", "vb", 40)
        cache.get("a")

        cache.set("c", "vc", 40)

        self.assertTrue(cache.has("a"))
        self.assertFalse(cache.has("b"))
        self.assertTrue(cache.has("c"))

    def test_entry_larger_than_cache_is_rejected(self) -> None:
        cache = self.make_cache(max_size=100)
        cache.set("a", "va", 10)

        self.assertFalse(cache.set("big", "v", 101))
        self.assertTrue(cache.has("a"))

    def test_replacing_a_key_does_not_double_count(self) -> None:
        cache = self.make_cache(max_size=100)
        cache.set("a", "v1", 70)
        cache.set("a", "v2", 80)

        self.assertEqual(cache.get("a"), "v2")
        self.assertEqual(cache.total_size, 80)

    def test_expired_entries_are_dropped_on_read(self) -> None:
        cache = self.make_cache(max_age_seconds=10)
        cache.set("a", "va", 5)
        self.clock.now = 10.5

        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.total_size, 0)

    def test_cleanup_removes_only_expired_entries(self) -> None:
        cache = self.make_cache(max_age_seconds=10)
        cache.set("old", "v", 5)
        self.clock.now = 6
        cache.set("new", "v", 5)
        self.clock.now = 11

        self.assertEqual(cache.cleanup(), 1)
        self.assertEqual(cache.keys(), ["new"])

    def test_total_size_never_exceeds_max(self) -> None:
        cache = self.make_cache(max_size=50)
        for i, size in enumerate([10, 30, 25, 5, 50, 7, 49, 1]):
            cache.set(f"k{i}", i, size)
            self.assertLessEqual(cache.total_size, 50)

    def test_stats_track_hits_and_misses(self) -> None:
        cache = self.make_cache()
        cache.set("a", "va", 1)
        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.stats()
        self.assertEqual(stats.hits, 2)
        self.assertEqual(stats.misses, 1)
        self.assertAlmostEqual(stats.hit_rate, 2 / 3)

    def test_delete_and_get_many(self) -> None:
        cache = self.make_cache()
        cache.set("a", 1, 1)
        cache.set("b", 2, 1)

        self.assertTrue(cache.delete("a"))
        self.assertFalse(cache.delete("a"))
        self.assertEqual(cache.get_many(["a", "b"]), {"b": 2})

        cache.clear()
        self.assertEqual(cache.total_size, 0)
        self.assertEqual(cache.keys(), [])


if __name__ == "__main__":
    unittest.main()
