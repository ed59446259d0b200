"""
Supabase Storage helpers for the pipeline.

Every object is stored under an owner-scoped key:
  {user_id}/{folder}/{epoch_ms}.{ext}

Folders used by the pipeline: original, original-back, enhanced, enhanced-back.
"""

import time
import asyncio
import logging
from typing import Optional

from supabase import Client

from .errors import UploadError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "3600"

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
}


def file_extension(filename: str, content_type: str) -> str:
    """Extension of the original filename, falling back to the mime type."""
    if "." in filename:
        ext = filename.rsplit(".", 1)[1].strip().lower()
        if ext:
            return ext
    return _MIME_EXTENSIONS.get(content_type, "bin")


def storage_key(
    owner_id: str,
    folder: str,
    filename: str,
    content_type: str = "",
    now_ms: Optional[int] = None,
) -> str:
    """Generate the storage key for an uploaded object."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{owner_id}/{folder}/{stamp}.{file_extension(filename, content_type)}"


class SupabaseStorage:
    def __init__(self, client: Client, bucket: str = "product-spins"):
        self._client = client
        self._bucket = bucket

    async def upload(
        self,
        data: bytes,
        owner_id: str,
        folder: str,
        filename: str = "image.jpg",
        content_type: str = "image/jpeg",
    ) -> str:
        """
        Upload bytes to the bucket and return the object's public URL.

        Raises:
            UploadError: on any backend failure or a missing public URL.
        """
        key = storage_key(owner_id, folder, filename, content_type)

        def _put() -> str:
            bucket = self._client.storage.from_(self._bucket)
            bucket.upload(
                key,
                data,
                {
                    "content-type": content_type,
                    "cache-control": CACHE_CONTROL,
                    "upsert": "false",
                },
            )
            return bucket.get_public_url(key)

        try:
            public_url = await asyncio.to_thread(_put)
        except Exception as e:
            logger.error(f"Storage upload failed for key={key}: {e}")
            raise UploadError(f"Storage upload failed: {e}") from e

        if not public_url:
            raise UploadError("Failed to get public URL for uploaded image.")

        logger.info(f"Uploaded to storage: {public_url}")
        return public_url
