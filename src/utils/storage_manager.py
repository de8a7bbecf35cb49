import asyncio
import logging
from typing import Optional, Protocol

from firebase_admin import storage


class BlobStore(Protocol):
    """Minimal blob storage contract used by the image cache."""

    async def exists(self, path: str) -> bool: ...

    async def upload(self, path: str, data: bytes, content_type: str) -> None: ...

    def public_url(self, path: str) -> str: ...


class FirebaseBlobStore:
    """Firebase Storage bucket wrapper; uploads overwrite existing objects."""

    def __init__(self, bucket_name: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        try:
            # Requires initialize_firebase_admin() to have run
            self.bucket = storage.bucket(bucket_name)
            self.logger.info("Initialized Firebase Storage bucket", extra={"bucket": self.bucket.name})
        except Exception:
            self.logger.exception("Failed to initialize Firebase Storage bucket")
            raise

    async def exists(self, path: str) -> bool:
        loop = asyncio.get_running_loop()
        blob = self.bucket.blob(path)
        return await loop.run_in_executor(None, blob.exists)

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        loop = asyncio.get_running_loop()
        blob = self.bucket.blob(path)

        def _upload():
            blob.upload_from_string(data, content_type=content_type)
            blob.make_public()

        await loop.run_in_executor(None, _upload)

    def public_url(self, path: str) -> str:
        return self.bucket.blob(path).public_url
