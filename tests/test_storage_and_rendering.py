import base64
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from examtutor import storage_provider
from examtutor.pdf_images import count_pdf_pages, count_pdf_pages_async, render_pdf_pages, render_pdf_pages_async
from examtutor.storage_provider import LocalFileStorageProvider, ObjectStorageError, SupabaseStorageProvider

from _support import make_pdf


class TestLocalFileStorage(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage = LocalFileStorageProvider(Path(self.tmp.name), secret="s3cret")
        self.storage.put_bytes("exam-papers", "p1/exam.pdf", b"%PDF-1.4")

    def tearDown(self):
        self.tmp.cleanup()

    async def test_download(self):
        self.assertEqual(await self.storage.download("exam-papers", "p1/exam.pdf"), b"%PDF-1.4")
        with self.assertRaises(ObjectStorageError):
            await self.storage.download("exam-papers", "p1/missing.pdf")

    async def test_signed_url_verifies_until_expiry(self):
        url = await self.storage.get_signed_url("exam-papers", "p1/exam.pdf", 60)
        self.assertTrue(url.startswith("local://storage/exam-papers/p1/exam.pdf?"))
        self.assertTrue(self.storage.verify_signed_url(url))
        self.assertFalse(self.storage.verify_signed_url(url, now=time.time() + 120))

    async def test_tampered_url_rejected(self):
        url = await self.storage.get_signed_url("exam-papers", "p1/exam.pdf", 60)
        self.assertFalse(self.storage.verify_signed_url(url.replace("p1/exam.pdf", "p2/exam.pdf")))
        other = LocalFileStorageProvider(Path(self.tmp.name), secret="different")
        self.assertFalse(other.verify_signed_url(url))

    async def test_signing_missing_object_fails(self):
        with self.assertRaises(ObjectStorageError):
            await self.storage.get_signed_url("exam-papers", "p1/nope.pdf", 60)

    async def test_path_traversal_rejected(self):
        with self.assertRaises(ObjectStorageError):
            await self.storage.download("exam-papers", "../../etc/passwd")

    def test_default_secret_warns_at_startup(self):
        default = LocalFileStorageProvider(Path(self.tmp.name) / "default", secret="change-me")
        with patch.object(storage_provider, "logger") as logger:
            default.ensure_ready()
            self.storage.ensure_ready()
        self.assertTrue(default.uses_default_secret)
        self.assertFalse(self.storage.uses_default_secret)
        logger.warning.assert_called_once_with("signed_url_default_secret", hint="set SIGNED_URL_SECRET")


class _FakeBucket:
    def __init__(self, signed):
        self.signed = signed

    def create_signed_url(self, path, expires_in):
        return self.signed

    def download(self, path):
        raise RuntimeError("Object not found")


class _FakeStorageClient:
    def __init__(self, signed):
        self.bucket = _FakeBucket(signed)

    def from_(self, bucket):
        return self.bucket


class _FakeSupabaseClient:
    def __init__(self, signed):
        self.storage = _FakeStorageClient(signed)


class TestSupabaseStorage(unittest.IsolatedAsyncioTestCase):
    async def test_signed_url_key_variants(self):
        for key in ("signedURL", "signedUrl"):
            provider = SupabaseStorageProvider(_FakeSupabaseClient({key: "https://cdn/x?token=t"}))
            self.assertEqual(await provider.get_signed_url("exam-papers", "x.pdf", 60), "https://cdn/x?token=t")

    async def test_errors_are_wrapped(self):
        provider = SupabaseStorageProvider(_FakeSupabaseClient({}))
        with self.assertRaises(ObjectStorageError):
            await provider.get_signed_url("exam-papers", "x.pdf", 60)
        with self.assertRaises(ObjectStorageError):
            await provider.download("exam-papers", "x.pdf")


class TestPdfRendering(unittest.IsolatedAsyncioTestCase):
    def test_one_png_per_page(self):
        pages = render_pdf_pages(make_pdf(3), zoom=0.5)
        self.assertEqual(len(pages), 3)
        for page in pages:
            self.assertTrue(base64.b64decode(page).startswith(b"\x89PNG"))

    def test_empty_input(self):
        self.assertEqual(render_pdf_pages(b""), [])

    async def test_async_wrapper(self):
        self.assertEqual(len(await render_pdf_pages_async(make_pdf(2), zoom=0.5)), 2)

    async def test_page_count_without_rendering(self):
        self.assertEqual(count_pdf_pages(make_pdf(3)), 3)
        self.assertEqual(count_pdf_pages(b""), 0)
        self.assertEqual(await count_pdf_pages_async(make_pdf(2)), 2)


if __name__ == "__main__":
    unittest.main()
