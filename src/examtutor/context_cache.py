"""
Session-scoped cache of per-question context bundles.

A bundle holds the question's images (base64, the wire format of
`examPaperImages`), its OCR text and its marking scheme text. Bundles are
fetched once per question per viewing session; concurrent requests for the
same question share one in-flight fetch.
"""
from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass

import httpx

from .config import QUESTION_IMAGE_BUCKET, QUESTION_IMAGE_TIMEOUT_S
from .data_store import DataStore, DataStoreError
from .observability import get_logger
from .storage_provider import ObjectStorageError, ObjectStorageProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class ContextBundle:
    images: tuple[str, ...]
    marking_scheme_text: str = ""
    question_text: str = ""


def encode_image(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


class ContextCache:
    def __init__(
        self,
        store: DataStore,
        storage: ObjectStorageProvider,
        paper_id: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        image_bucket: str = QUESTION_IMAGE_BUCKET,
        image_timeout_s: float = QUESTION_IMAGE_TIMEOUT_S,
    ):
        self.store = store
        self.storage = storage
        self.paper_id = str(paper_id)
        self.image_bucket = image_bucket
        self.image_timeout_s = float(image_timeout_s)
        self._http_client = http_client
        self._bundles: dict[str, ContextBundle] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        # Number of fetches that actually went to the question store.
        self.fetch_count = 0

    def __len__(self) -> int:
        return len(self._bundles)

    def __contains__(self, question_ref: str) -> bool:
        return question_ref in self._bundles

    def get(self, question_ref: str | None) -> ContextBundle | None:
        if not question_ref:
            return None
        return self._bundles.get(question_ref)

    async def fetch_and_cache(self, question_ref: str | None) -> ContextBundle | None:
        """Returns the cached bundle, or fetches it; None means the caller must use the full document."""
        if not question_ref:
            return None
        cached = self._bundles.get(question_ref)
        if cached is not None:
            logger.info("context_cache_hit", paper_id=self.paper_id, question_ref=question_ref)
            return cached

        task = self._inflight.get(question_ref)
        if task is None:
            task = asyncio.create_task(self._fetch(question_ref))
            self._inflight[question_ref] = task
            task.add_done_callback(lambda _t, ref=question_ref: self._inflight.pop(ref, None))
        return await task

    def cancel_pending(self) -> int:
        """Cancels in-flight fetches; returns how many were cancelled."""
        pending = [task for task in self._inflight.values() if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def _fetch(self, question_ref: str) -> ContextBundle | None:
        self.fetch_count += 1
        try:
            record = await self.store.query_one(
                "exam_questions",
                {"exam_paper_id": self.paper_id, "question_number": question_ref},
            )
        except DataStoreError as exc:
            logger.warning(
                "context_fetch_failed",
                paper_id=self.paper_id,
                question_ref=question_ref,
                error=str(exc),
            )
            return None

        if not record:
            logger.info("context_question_missing", paper_id=self.paper_id, question_ref=question_ref)
            return None

        images = await self._load_images(record, question_ref)
        if not images:
            logger.warning("context_images_unavailable", paper_id=self.paper_id, question_ref=question_ref)
            return None

        bundle = ContextBundle(
            images=tuple(images),
            marking_scheme_text=str(record.get("marking_scheme_text") or ""),
            question_text=str(record.get("ocr_text") or ""),
        )
        self._bundles[question_ref] = bundle
        logger.info(
            "context_cached",
            paper_id=self.paper_id,
            question_ref=question_ref,
            images=len(bundle.images),
            has_marking_scheme_text=bool(bundle.marking_scheme_text),
        )
        return bundle

    async def _load_images(self, record: dict, question_ref: str) -> list[str]:
        paths = [p for p in (record.get("image_paths") or []) if p]
        if paths:
            images = []
            for index, path in enumerate(paths):
                try:
                    images.append(encode_image(await self.storage.download(self.image_bucket, path)))
                except ObjectStorageError as exc:
                    logger.warning(
                        "question_image_failed",
                        question_ref=question_ref,
                        index=index,
                        error=str(exc),
                    )
            return images

        urls = [u for u in (record.get("image_urls") or []) if u] or [record.get("image_url")]
        urls = [u for u in urls if u]
        if not urls:
            return []
        if self._http_client is not None:
            return await self._download_urls(self._http_client, urls, question_ref)
        async with httpx.AsyncClient(timeout=self.image_timeout_s) as client:
            return await self._download_urls(client, urls, question_ref)

    async def _download_urls(self, client: httpx.AsyncClient, urls: list[str], question_ref: str) -> list[str]:
        images = []
        for index, url in enumerate(urls):
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning(
                    "question_image_failed",
                    question_ref=question_ref,
                    index=index,
                    error=str(exc),
                )
                continue
            images.append(encode_image(response.content))
        return images
