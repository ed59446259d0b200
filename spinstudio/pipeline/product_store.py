"""
Product persistence: the final record of a finished spin job.

Rows are upserted with the job id as the conflict key, so saving the same
job twice never creates a duplicate product.
"""

import asyncio
import logging
from typing import Optional

from supabase import Client

from .errors import PersistenceError, ValidationError
from .models import ProductSpinJob

logger = logging.getLogger(__name__)


class ProductStore:
    def __init__(self, client: Client, table: str = "products"):
        self._client = client
        self._table = table

    async def save(self, job: ProductSpinJob) -> dict:
        """Upsert the job's product record and return the stored row."""
        missing = [
            name for name, value in (
                ("owner id", job.owner_id),
                ("original image URL", job.original_image_url),
                ("enhanced image URL", job.enhanced_image_url),
                ("video URL", job.video_url),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Cannot save product {job.id}: missing {', '.join(missing)}")

        record = job.to_record()

        def _upsert():
            return (
                self._client.table(self._table)
                .upsert(record, on_conflict="id")
                .execute()
            )

        try:
            result = await asyncio.to_thread(_upsert)
        except Exception as e:
            logger.error(f"[{job.id}] Product upsert failed: {e}")
            raise PersistenceError(f"Failed to save product: {e}") from e

        rows = result.data or []
        logger.info(f"[{job.id}] Product saved for user {job.owner_id}")
        return rows[0] if rows else record

    async def list_products(self, owner_id: str) -> list[dict]:
        """The owner's saved products, newest first."""
        def _query():
            return (
                self._client.table(self._table)
                .select("*")
                .eq("user_id", owner_id)
                .order("timestamp", desc=True)
                .execute()
            )

        try:
            result = await asyncio.to_thread(_query)
        except Exception as e:
            logger.error(f"Failed to list products for {owner_id}: {e}")
            raise PersistenceError(f"Failed to load products: {e}") from e
        return result.data or []

    async def get_product(self, owner_id: str, product_id: str) -> Optional[dict]:
        def _query():
            return (
                self._client.table(self._table)
                .select("*")
                .eq("id", product_id)
                .eq("user_id", owner_id)
                .limit(1)
                .execute()
            )

        try:
            result = await asyncio.to_thread(_query)
        except Exception as e:
            logger.error(f"Failed to load product {product_id}: {e}")
            raise PersistenceError(f"Failed to load product: {e}") from e

        rows = result.data or []
        return rows[0] if rows else None
