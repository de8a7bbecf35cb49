"""
Blob-store backed cache for generated story backgrounds.

Generated images live in the storage bucket under ``{prefix}/{cache_key}.png``
and are served by public URL. Resolved URLs are also memoized in-process for
a short TTL so repeated lookups skip the bucket round-trip.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from src.utils.storage_manager import BlobStore

logger = logging.getLogger(__name__)


class ImageCache:
    def __init__(self, store: Optional[BlobStore], prefix: str = "story-backgrounds", url_ttl_seconds: int = 3600):
        self.blob_store = store
        self.prefix = prefix.strip("/")
        self.url_ttl_seconds = url_ttl_seconds
        self._url_memo: Dict[str, tuple[str, datetime]] = {}

    @property
    def enabled(self) -> bool:
        return self.blob_store is not None

    def path_for(self, key: str) -> str:
        return f"{self.prefix}/{key}.png"

    def _get_memo(self, path: str) -> Optional[str]:
        entry = self._url_memo.get(path)
        if entry is None:
            return None
        url, expiry = entry
        if datetime.utcnow() < expiry:
            return url
        del self._url_memo[path]
        return None

    def _set_memo(self, path: str, url: str) -> None:
        self._url_memo[path] = (url, datetime.utcnow() + timedelta(seconds=self.url_ttl_seconds))

    async def lookup(self, key: str) -> Optional[str]:
        """Return the public URL of a stored image, or None when not cached."""
        if not self.blob_store or not key:
            return None
        path = self.path_for(key)
        memo = self._get_memo(path)
        if memo:
            logger.debug(f"[image-cache] memo hit for {path}")
            return memo
        try:
            if not await self.blob_store.exists(path):
                logger.debug(f"[image-cache] miss for {path}")
                return None
            url = self.blob_store.public_url(path)
        except Exception as e:
            logger.warning(f"[image-cache] lookup failed for {path}: {e}")
            return None
        self._set_memo(path, url)
        logger.info(f"[image-cache] hit for {path}")
        return url

    async def store(self, key: str, data: bytes, content_type: str = "image/png") -> Optional[str]:
        """Upload (overwriting) and return the public URL, or None on failure."""
        if not self.blob_store:
            return None
        path = self.path_for(key)
        try:
            await self.blob_store.upload(path, data, content_type)
            url = self.blob_store.public_url(path)
        except Exception as e:
            logger.error(f"[image-cache] upload failed for {path}: {e}")
            return None
        self._set_memo(path, url)
        logger.info(f"[image-cache] stored {path}", extra={"bytes": len(data), "content_type": content_type})
        return url

    def clear(self) -> None:
        """Drop memoized URLs (the bucket is left untouched)."""
        self._url_memo = {}
