"""
Configuration resolution for the spin pipeline.

Environment variables provide the defaults; each owner may store their own
provider keys in the `user_api_keys` table. The two are merged once per job
start by `resolve_config`, which never mutates its inputs.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from supabase import create_client, Client

from .errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "product-spins"
DEFAULT_PRODUCTS_TABLE = "products"
DEFAULT_ENHANCE_MODEL = "gemini-2.5-flash-image"
DEFAULT_SPIN_MODEL = "fal-ai/3d-photo-spin"
API_KEYS_TABLE = "user_api_keys"


class PipelineConfig(BaseModel):
    google_api_key: str = ""
    fal_key: str = ""
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = DEFAULT_BUCKET
    products_table: str = DEFAULT_PRODUCTS_TABLE
    enhance_model: str = DEFAULT_ENHANCE_MODEL
    spin_model: str = DEFAULT_SPIN_MODEL
    spin_mode: str = "poll"  # poll | subscribe

    def missing_credentials(self) -> list[str]:
        missing = []
        if not self.google_api_key:
            missing.append("Google API key")
        if not self.fal_key:
            missing.append("FAL.ai key")
        if not self.supabase_url or not self.supabase_key:
            missing.append("Supabase URL and key")
        return missing


class ApiKeys(BaseModel):
    """Per-owner overrides as stored in `user_api_keys`."""
    google_api_key: str = ""
    fal_key: str = ""
    supabase_url: str = ""
    supabase_anon_key: str = ""

    def masked(self) -> "ApiKeys":
        def _mask(value: str) -> str:
            return value[:4] + "..." if value else ""

        return ApiKeys(
            google_api_key=_mask(self.google_api_key),
            fal_key=_mask(self.fal_key),
            supabase_url=self.supabase_url,
            supabase_anon_key=_mask(self.supabase_anon_key),
        )


def env_defaults() -> PipelineConfig:
    """Read the environment-level defaults."""
    return PipelineConfig(
        google_api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY", ""),
        fal_key=os.getenv("FAL_KEY", ""),
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        storage_bucket=os.getenv("SPIN_STORAGE_BUCKET", DEFAULT_BUCKET),
        products_table=os.getenv("SPIN_PRODUCTS_TABLE", DEFAULT_PRODUCTS_TABLE),
        enhance_model=os.getenv("GEMINI_IMAGE_MODEL", DEFAULT_ENHANCE_MODEL),
        spin_model=os.getenv("FAL_SPIN_MODEL", DEFAULT_SPIN_MODEL),
        spin_mode=os.getenv("SPIN_CLIENT_MODE", "poll"),
    )


def resolve_config(
    defaults: PipelineConfig,
    overrides: Optional[ApiKeys] = None,
) -> PipelineConfig:
    """Merge owner overrides onto the defaults. Non-empty overrides win."""
    if overrides is None:
        return defaults.model_copy()

    return defaults.model_copy(update={
        "google_api_key": overrides.google_api_key or defaults.google_api_key,
        "fal_key": overrides.fal_key or defaults.fal_key,
        "supabase_url": overrides.supabase_url or defaults.supabase_url,
        "supabase_key": overrides.supabase_anon_key or defaults.supabase_key,
    })


# ── Supabase Client ──────────────────────────────────────────────────────────

_clients: dict[tuple[str, str], Client] = {}


def get_supabase(url: str, key: str) -> Client:
    """Lazy-init one Supabase client per (url, key) pair."""
    if not url or not key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    client = _clients.get((url, key))
    if client is None:
        client = create_client(url, key)
        _clients[(url, key)] = client
    return client


# ── Stored API Keys ──────────────────────────────────────────────────────────

class ApiKeyRepository:
    """Owner-scoped provider keys in the `user_api_keys` table."""

    def __init__(self, client: Client, table: str = API_KEYS_TABLE):
        self._client = client
        self._table = table

    async def load(self, owner_id: str) -> Optional[ApiKeys]:
        def _query():
            return (
                self._client.table(self._table)
                .select("*")
                .eq("user_id", owner_id)
                .limit(1)
                .execute()
            )

        try:
            result = await asyncio.to_thread(_query)
        except Exception as e:
            logger.error(f"Failed to load API keys for {owner_id}: {e}")
            raise PersistenceError("Failed to load API keys.") from e

        rows = result.data or []
        if not rows:
            return None
        row = rows[0]
        return ApiKeys(
            google_api_key=row.get("google_api_key") or "",
            fal_key=row.get("fal_key") or "",
            supabase_url=row.get("supabase_url") or "",
            supabase_anon_key=row.get("supabase_anon_key") or "",
        )

    async def save(self, owner_id: str, keys: ApiKeys) -> ApiKeys:
        row = {
            "user_id": owner_id,
            **keys.model_dump(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        def _upsert():
            return (
                self._client.table(self._table)
                .upsert(row, on_conflict="user_id")
                .execute()
            )

        try:
            await asyncio.to_thread(_upsert)
        except Exception as e:
            logger.error(f"Failed to save API keys for {owner_id}: {e}")
            raise PersistenceError("Failed to save API keys.") from e

        logger.info(f"Saved API keys for {owner_id}")
        return keys
