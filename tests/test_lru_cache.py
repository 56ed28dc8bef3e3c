"""
Tests for the in-process LRUCache that backs the metadata cache.
"""
import unittest
import sys
import os

# Add the parent directory to the path so we can import the application modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from models import Metadata
from utils import LRUCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


VIDEOS = ["dQw4w9WgXcQ", "jNQXAC9IVRw", "9bZkp7q19f0", "kJQP7kiw5Fk"]


class TestLRUCache(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.cache = LRUCache(maxsize=3, ttl_seconds=10, clock=self.clock)

    async def fill(self, count):
        for video_id in VIDEOS[:count]:
            await self.cache.put(video_id, Metadata(title=video_id))

    async def test_hit_and_miss(self):
        await self.fill(1)

        self.assertEqual((await self.cache.get(VIDEOS[0])).title, VIDEOS[0])
        self.assertIsNone(await self.cache.get("unknownvid0"))

    async def test_full_cache_drops_oldest(self):
        await self.fill(4)

        self.assertIsNone(await self.cache.get(VIDEOS[0]))
        for video_id in VIDEOS[1:]:
            self.assertIsNotNone(await self.cache.get(video_id))
        self.assertEqual((await self.cache.get_stats())["evictions"], 1)

    async def test_read_refreshes_recency(self):
        await self.fill(3)
        await self.cache.get(VIDEOS[0])

        await self.cache.put(VIDEOS[3], Metadata(title="new"))

        self.assertIsNone(await self.cache.get(VIDEOS[1]))
        self.assertIsNotNone(await self.cache.get(VIDEOS[0]))

    async def test_eviction_percent_drops_a_block(self):
        cache = LRUCache(maxsize=10, eviction_percent=30, clock=self.clock)
        for n in range(11):
            await cache.put(n, n)

        self.assertEqual(await cache.size(), 8)
        self.assertIsNone(await cache.get(2))
        self.assertEqual(await cache.get(3), 3)

    async def test_default_ttl_expires(self):
        await self.fill(1)
        self.clock.now += 10

        self.assertIsNone(await self.cache.get(VIDEOS[0]))
        stats = await self.cache.get_stats()
        self.assertEqual(stats["ttl_expirations"], 1)
        self.assertEqual(stats["size"], 0)

    async def test_per_item_ttl(self):
        await self.cache.put("short", "a", ttl_seconds=1)
        await self.cache.put("long", "b")
        self.clock.now += 2

        self.assertIsNone(await self.cache.get("short"))
        self.assertEqual(await self.cache.get("long"), "b")

    async def test_without_ttl_entries_stay(self):
        cache = LRUCache(maxsize=2, clock=self.clock)
        await cache.put("k", "v")
        self.clock.now += 10 ** 6

        self.assertEqual(await cache.get("k"), "v")
        self.assertFalse((await cache.get_stats())["ttl_enabled"])

    async def test_overwrite_keeps_one_slot(self):
        await self.cache.put(VIDEOS[0], "old")
        await self.cache.put(VIDEOS[0], "new")

        self.assertEqual(await self.cache.get(VIDEOS[0]), "new")
        self.assertEqual(await self.cache.size(), 1)

    async def test_remove_and_clear(self):
        await self.fill(3)

        self.assertTrue(await self.cache.remove(VIDEOS[0]))
        self.assertFalse(await self.cache.remove(VIDEOS[0]))
        self.assertEqual(await self.cache.clear(), 2)
        self.assertEqual(await self.cache.size(), 0)

    async def test_stats(self):
        await self.fill(2)
        await self.cache.get(VIDEOS[0])
        await self.cache.get("unknownvid0")

        stats = await self.cache.get_stats()

        self.assertEqual((stats["hits"], stats["misses"]), (1, 1))
        self.assertEqual(stats["hit_ratio"], 0.5)
        self.assertEqual((stats["size"], stats["maxsize"]), (2, 3))

    def test_maxsize_must_be_positive(self):
        with self.assertRaises(ValueError):
            LRUCache(maxsize=0)


if __name__ == '__main__':
    unittest.main()
