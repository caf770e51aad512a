"""
Object storage abstraction for exam PDFs and question images.
Default implementation uses the local filesystem; the Supabase provider serves hosted buckets.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from pathlib import Path, PurePosixPath
from typing import Any, Protocol
from urllib.parse import parse_qs, quote, urlencode, urlparse

from .config import DEFAULT_SIGNED_URL_SECRET, SIGNED_URL_SECRET
from .observability import get_logger

logger = get_logger(__name__)


class ObjectStorageError(RuntimeError):
    """Raised when an object cannot be located or downloaded."""


class ObjectStorageProvider(Protocol):
    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        ...

    async def download(self, bucket: str, path: str) -> bytes:
        ...


def _safe_relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(str(path or "").lstrip("/"))
    if not relative.parts or any(part in {"..", "."} for part in relative.parts):
        raise ObjectStorageError(f"invalid object path: {path!r}")
    return relative


class LocalFileStorageProvider:
    """Buckets are directories under `root`; signed URLs carry an HMAC over bucket, path and expiry."""

    def __init__(self, root: Path, *, secret: str = SIGNED_URL_SECRET, base_url: str = "local://storage"):
        self._root = Path(root)
        self._secret = str(secret).encode("utf-8")
        self._base_url = base_url.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    @property
    def uses_default_secret(self) -> bool:
        return hmac.compare_digest(self._secret, DEFAULT_SIGNED_URL_SECRET.encode("utf-8"))

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)
        if self.uses_default_secret:
            logger.warning("signed_url_default_secret", hint="set SIGNED_URL_SECRET")

    def _object_path(self, bucket: str, path: str) -> Path:
        return self._root / _safe_relative(bucket) / _safe_relative(path)

    def put_bytes(self, bucket: str, path: str, payload: bytes) -> Path:
        destination = self._object_path(bucket, path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(payload)
        return destination

    def _signature(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        if not self._object_path(bucket, path).is_file():
            raise ObjectStorageError(f"object not found: {bucket}/{path}")
        expires = int(time.time()) + max(1, int(ttl_seconds))
        query = urlencode({"expires": expires, "signature": self._signature(bucket, path, expires)})
        return f"{self._base_url}/{quote(bucket)}/{quote(path)}?{query}"

    def verify_signed_url(self, url: str, *, now: float | None = None) -> bool:
        parsed = urlparse(url)
        prefix = urlparse(self._base_url).path.rstrip("/")
        relative = parsed.path[len(prefix):].lstrip("/") if parsed.path.startswith(prefix) else parsed.path.lstrip("/")
        bucket, _, path = relative.partition("/")
        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        if expires < int(now if now is not None else time.time()):
            return False
        return hmac.compare_digest(signature, self._signature(bucket, path, expires))

    async def download(self, bucket: str, path: str) -> bytes:
        target = self._object_path(bucket, path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise ObjectStorageError(f"cannot read {bucket}/{path}: {exc}") from exc


class SupabaseStorageProvider:
    def __init__(self, client: Any):
        self._client = client

    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        def _sign() -> str:
            result = self._client.storage.from_(bucket).create_signed_url(path, int(ttl_seconds))
            url = None
            if isinstance(result, dict):
                url = result.get("signedURL") or result.get("signedUrl")
            if not url:
                raise ObjectStorageError(f"no signed url for {bucket}/{path}")
            return url

        try:
            return await asyncio.to_thread(_sign)
        except ObjectStorageError:
            raise
        except Exception as exc:
            raise ObjectStorageError(str(exc)) from exc

    async def download(self, bucket: str, path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._client.storage.from_(bucket).download, path)
        except Exception as exc:
            raise ObjectStorageError(str(exc)) from exc
