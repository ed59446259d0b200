"""
FastAPI routes for the spin pipeline.

Pipeline Endpoints:
  POST /pipeline/start    — Validate input and start a job (runs in background)
  GET  /pipeline/status   — Current state, step statuses and job record
  POST /pipeline/reset    — Return the owner's pipeline to IDLE

Product Endpoints:
  GET  /products                  — Owner's saved products, newest first
  GET  /products/{id}/snippets    — Embed markup for a saved product

Settings Endpoints:
  GET  /settings/keys     — Owner's stored provider keys (masked)
  PUT  /settings/keys     — Store provider keys for the owner
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .config import ApiKeyRepository, ApiKeys, env_defaults, get_supabase
from .errors import AuthError, PersistenceError, PipelineBusyError, ValidationError
from .models import PipelineSnapshot, SnippetResponse, StartPipelineRequest
from .orchestrator import ServiceRegistry
from .product_store import ProductStore
from .snippets import all_snippets

logger = logging.getLogger(__name__)


# ── Dependencies ─────────────────────────────────────────────────────────────

_registry = ServiceRegistry()


def get_registry() -> ServiceRegistry:
    return _registry


def get_api_key_repository() -> ApiKeyRepository:
    config = env_defaults()
    return ApiKeyRepository(get_supabase(config.supabase_url, config.supabase_key))


def get_product_store() -> ProductStore:
    config = env_defaults()
    return ProductStore(
        get_supabase(config.supabase_url, config.supabase_key),
        config.products_table,
    )


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="You must be logged in.")
    return user_id


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline Router
# ═════════════════════════════════════════════════════════════════════════════

pipeline_router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@pipeline_router.post("/start", response_model=PipelineSnapshot)
async def start_pipeline(
    request: StartPipelineRequest,
    registry: ServiceRegistry = Depends(get_registry),
    keys: ApiKeyRepository = Depends(get_api_key_repository),
):
    """
    Start a spin job for the owner and return the initial snapshot.

    Errors:
      - 401: No owner identity
      - 409: A job is already running or has not been reset
      - 422: Invalid images, missing name or missing provider keys
    """
    user_id = _require_user(request.user_id)

    try:
        front = request.front_image.to_image()
        back = request.back_image.to_image() if request.back_image else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid image payload: {e}")

    try:
        overrides = await keys.load(user_id)
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    try:
        return registry.get(user_id).launch(front, back, request.name, user_id, overrides)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@pipeline_router.get("/status", response_model=PipelineSnapshot)
async def pipeline_status(
    user_id: str = Query(""),
    registry: ServiceRegistry = Depends(get_registry),
):
    return registry.snapshot(_require_user(user_id))


@pipeline_router.post("/reset", response_model=PipelineSnapshot)
async def reset_pipeline(
    user_id: str = Query(""),
    registry: ServiceRegistry = Depends(get_registry),
):
    return registry.reset(_require_user(user_id))


# ═════════════════════════════════════════════════════════════════════════════
# Product Router
# ═════════════════════════════════════════════════════════════════════════════

product_router = APIRouter(prefix="/products", tags=["products"])


@product_router.get("")
async def list_products(
    user_id: str = Query(""),
    store: ProductStore = Depends(get_product_store),
):
    try:
        return await store.list_products(_require_user(user_id))
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))


@product_router.get("/{product_id}/snippets", response_model=SnippetResponse)
async def product_snippets(
    product_id: str,
    user_id: str = Query(""),
    store: ProductStore = Depends(get_product_store),
):
    try:
        product = await store.get_product(_require_user(user_id), product_id)
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    video_url = product.get("videoUrl")
    if not video_url:
        raise HTTPException(status_code=409, detail="Product has no spin video yet")

    return SnippetResponse(
        product_id=product_id,
        video_url=video_url,
        snippets=all_snippets(video_url, product_id),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Settings Router
# ═════════════════════════════════════════════════════════════════════════════

settings_router = APIRouter(prefix="/settings", tags=["settings"])


@settings_router.get("/keys", response_model=ApiKeys)
async def get_keys(
    user_id: str = Query(""),
    keys: ApiKeyRepository = Depends(get_api_key_repository),
):
    try:
        stored = await keys.load(_require_user(user_id))
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return (stored or ApiKeys()).masked()


@settings_router.put("/keys", response_model=ApiKeys)
async def save_keys(
    payload: ApiKeys,
    user_id: str = Query(""),
    keys: ApiKeyRepository = Depends(get_api_key_repository),
):
    try:
        saved = await keys.save(_require_user(user_id), payload)
    except PersistenceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return saved.masked()
