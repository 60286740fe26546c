import asyncio
import unittest

from ridebook.cache import RequestCache
from ridebook.lazy import Lazy, unwrap


class RequestCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_loads_share_one_call(self):
        cache = RequestCache()
        calls = []

        async def loader():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "token"

        results = await asyncio.gather(
            cache.get_or_load("k", loader),
            cache.get_or_load("k", loader),
            cache.get_or_load("k", loader),
        )
        self.assertEqual(results, ["token", "token", "token"])
        self.assertEqual(len(calls), 1)
        self.assertEqual(cache.get("k"), "token")
        self.assertEqual(await cache.get_or_load("k", loader), "token")
        self.assertEqual(len(calls), 1)

    async def test_failed_load_is_not_cached(self):
        cache = RequestCache()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return 42

        with self.assertRaises(RuntimeError):
            await cache.get_or_load("k", flaky)
        self.assertIsNone(cache.get("k"))
        self.assertEqual(await cache.get_or_load("k", flaky), 42)
        self.assertEqual(len(attempts), 2)

    async def test_invalidate_forces_reload(self):
        cache = RequestCache()
        cache.set("k", 1)
        cache.invalidate("k")

        async def loader():
            return 2

        self.assertEqual(await cache.get_or_load("k", loader), 2)

    async def test_separate_caches_do_not_share(self):
        first, second = RequestCache(), RequestCache()
        first.set("k", "a")
        self.assertIsNone(second.get("k"))


class LazyTests(unittest.IsolatedAsyncioTestCase):
    async def test_loader_runs_once_and_only_on_demand(self):
        calls = []

        async def loader():
            calls.append(1)
            return [1, 2]

        lazy = Lazy(loader)
        self.assertEqual(calls, [])

        first, second = await asyncio.gather(lazy.get(), lazy.get())
        self.assertEqual(first, [1, 2])
        self.assertIs(first, second)
        self.assertEqual(len(calls), 1)

    async def test_unwrap(self):
        async def loader():
            return "x"

        self.assertEqual(await unwrap(Lazy(loader)), "x")
        self.assertEqual(await unwrap("plain"), "plain")


if __name__ == "__main__":
    unittest.main()
