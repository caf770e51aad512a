import asyncio
import base64
import tempfile
import unittest

import httpx

from examtutor.context_cache import ContextCache, encode_image
from examtutor.data_store import DataStoreError

from _support import PAPER_ID, PNG_BYTES, make_backends, seed_paper, seed_question


class _SlowStore:
    """Wraps a store and delays question lookups so overlapping fetches can be observed."""

    def __init__(self, inner, delay_s=0.05, failures=0):
        self.inner = inner
        self.delay_s = delay_s
        self.failures = failures
        self.queries = 0

    async def query_one(self, table, filters):
        self.queries += 1
        await asyncio.sleep(self.delay_s)
        if self.failures > 0:
            self.failures -= 1
            raise DataStoreError("connection reset")
        return await self.inner.query_one(table, filters)


class TestContextCache(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store, self.storage = make_backends(self.tmp.name)
        seed_paper(self.store, self.storage, with_pdf=False)
        seed_question(self.store, self.storage, 3, images=2, text="Find x", scheme="M1 for x = 2")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    async def test_fetch_builds_bundle_and_caches(self):
        cache = ContextCache(self.store, self.storage, PAPER_ID)
        self.assertIsNone(cache.get("3"))

        bundle = await cache.fetch_and_cache("3")
        self.assertIsNotNone(bundle)
        self.assertEqual(len(bundle.images), 2)
        self.assertEqual(base64.b64decode(bundle.images[0]), PNG_BYTES + b"\x00")
        self.assertEqual(bundle.question_text, "Find x")
        self.assertEqual(bundle.marking_scheme_text, "M1 for x = 2")
        self.assertIs(cache.get("3"), bundle)
        self.assertIn("3", cache)

        again = await cache.fetch_and_cache("3")
        self.assertIs(again, bundle)
        self.assertEqual(cache.fetch_count, 1)

    async def test_overlapping_fetches_share_one_request(self):
        slow = _SlowStore(self.store)
        cache = ContextCache(slow, self.storage, PAPER_ID)
        first, second = await asyncio.gather(cache.fetch_and_cache("3"), cache.fetch_and_cache("3"))
        self.assertIs(first, second)
        self.assertEqual(slow.queries, 1)
        self.assertEqual(cache.fetch_count, 1)

    async def test_missing_question_returns_none(self):
        cache = ContextCache(self.store, self.storage, PAPER_ID)
        self.assertIsNone(await cache.fetch_and_cache("42"))
        self.assertIsNone(await cache.fetch_and_cache(None))
        self.assertEqual(len(cache), 0)

    async def test_failed_fetch_is_not_cached(self):
        slow = _SlowStore(self.store, delay_s=0, failures=1)
        cache = ContextCache(slow, self.storage, PAPER_ID)
        self.assertIsNone(await cache.fetch_and_cache("3"))
        self.assertNotIn("3", cache)
        self.assertIsNotNone(await cache.fetch_and_cache("3"))
        self.assertEqual(slow.queries, 2)

    async def test_question_without_retrievable_images(self):
        self.store._insert_sync(
            "exam_questions",
            {"exam_paper_id": PAPER_ID, "question_number": "4", "image_paths": ["missing/q4.png"]},
        )
        cache = ContextCache(self.store, self.storage, PAPER_ID)
        self.assertIsNone(await cache.fetch_and_cache("4"))

    async def test_image_urls_downloaded_over_http(self):
        self.store._insert_sync(
            "exam_questions",
            {
                "exam_paper_id": PAPER_ID,
                "question_number": "5",
                "image_urls": ["https://cdn.test/q5-a.png", "https://cdn.test/q5-b.png"],
            },
        )
        requested = []

        def handler(request):
            requested.append(str(request.url))
            if request.url.path.endswith("q5-b.png"):
                return httpx.Response(404)
            return httpx.Response(200, content=b"png-a")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            cache = ContextCache(self.store, self.storage, PAPER_ID, http_client=client)
            bundle = await cache.fetch_and_cache("5")

        self.assertEqual(len(requested), 2)
        self.assertEqual(bundle.images, (encode_image(b"png-a"),))

    async def test_cancel_pending(self):
        slow = _SlowStore(self.store, delay_s=1.0)
        cache = ContextCache(slow, self.storage, PAPER_ID)
        task = asyncio.create_task(cache.fetch_and_cache("3"))
        await asyncio.sleep(0.01)
        self.assertEqual(cache.cancel_pending(), 1)
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertNotIn("3", cache)


if __name__ == "__main__":
    unittest.main()
