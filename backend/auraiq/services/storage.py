"""
Object storage for chat media.

Images uploaded with a message, and images pulled out of office documents, are
written to a public Supabase Storage bucket so the model provider can fetch
them by URL. Callers only rely on ``put`` returning a fetchable address and on
``delete`` accepting the addresses ``put`` returned.
"""

import asyncio
import logging
import os
import re
from typing import Iterable, Optional
from urllib.parse import unquote, urlparse, urlunparse
from uuid import uuid4

from auraiq import config
from auraiq.db import supabase_admin

logger = logging.getLogger(__name__)


def _sanitize_filename(filename: str) -> str:
    """Replace spaces and special characters with underscores."""
    return re.sub(r"[^\w\-.]", "_", filename)


def _rewrite_public_url_host(public_url: str) -> str:
    """
    Replace the host in a storage URL with the externally reachable Supabase URL.

    Inside Docker the backend talks to Supabase through an internal host such as
    ``http://host.docker.internal:54321`` and Supabase embeds that host in every
    URL it returns. When ``SUPABASE_PUBLIC_URL`` is set, its scheme and host are
    swapped in so the model provider can reach the object. Unset means the URL
    is already public and is returned unchanged.
    """
    public_base = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_base:
        return public_url

    parsed_url = urlparse(public_url)
    parsed_base = urlparse(public_base)

    return urlunparse((
        parsed_base.scheme,
        parsed_base.netloc,
        parsed_url.path,
        parsed_url.params,
        parsed_url.query,
        parsed_url.fragment,
    ))


def storage_path_from_url(url_or_path: str, bucket: str) -> Optional[str]:
    """
    Return the in-bucket object path for a URL previously returned by ``put``.

    Accepts plain storage paths unchanged. Returns None for URLs that do not
    point into ``bucket``.

    Example: https://x.supabase.co/storage/v1/object/public/chat-media/abc-photo.png
             -> "abc-photo.png"
    """
    if not url_or_path.startswith("http"):
        return url_or_path

    path = unquote(urlparse(url_or_path).path)
    parts = path.split("/object/")
    if len(parts) < 2:
        return None

    # Drop the access segment ("public/" or "sign/") and the bucket name
    remainder = re.sub(r"^(public|sign)/", "", parts[1])
    prefix = f"{bucket}/"
    if not remainder.startswith(prefix):
        return None
    return remainder[len(prefix):] or None


class SupabaseObjectStore:
    """put/delete over one Supabase Storage bucket."""

    def __init__(self, client=None, bucket: str = config.STORAGE_BUCKET):
        self._client = client if client is not None else supabase_admin
        self.bucket = bucket

    def _require_client(self):
        if self._client is None:
            raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")
        return self._client

    def _put_sync(self, name: str, content: bytes, content_type: str) -> str:
        client = self._require_client()
        storage_path = f"{uuid4().hex}-{_sanitize_filename(name)}"

        try:
            client.storage.from_(self.bucket).upload(
                storage_path,
                content,
                {"content-type": content_type, "upsert": "false"},
            )
            public_url = client.storage.from_(self.bucket).get_public_url(storage_path)
        except Exception as e:
            raise Exception(f"Failed to upload {name} to storage: {str(e)}")

        return _rewrite_public_url_host(public_url)

    async def put(self, name: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Store ``content`` under a unique name and return its public URL.

        Raises:
            Exception: If the upload fails
        """
        return await asyncio.to_thread(self._put_sync, name, content, content_type)

    def _delete_sync(self, urls: list[str]) -> int:
        client = self._require_client()

        paths = []
        for url in urls:
            path = storage_path_from_url(url, self.bucket)
            if path is None:
                logger.warning(f"Skipping delete of object outside bucket {self.bucket!r}: {url}")
                continue
            paths.append(path)

        if not paths:
            return 0

        try:
            result = client.storage.from_(self.bucket).remove(paths)
        except Exception as e:
            raise Exception(f"Failed to delete objects from storage: {str(e)}")

        return len(result) if result else 0

    async def delete(self, urls: Iterable[str]) -> int:
        """
        Delete the objects behind ``urls``.

        Returns:
            Number of objects storage reported as deleted (missing files are not an error).
        """
        return await asyncio.to_thread(self._delete_sync, list(urls))

    def bucket_exists(self) -> bool:
        client = self._require_client()
        buckets = client.storage.list_buckets()
        return self.bucket in [b.name for b in buckets]


_default_store: Optional[SupabaseObjectStore] = None


def get_object_store() -> SupabaseObjectStore:
    """FastAPI dependency returning the process-wide object store."""
    global _default_store
    if _default_store is None:
        _default_store = SupabaseObjectStore()
    return _default_store
