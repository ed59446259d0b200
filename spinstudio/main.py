import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import ServiceAuthMiddleware
from .pipeline import pipeline_router, product_router, settings_router
from .pipeline.config import env_defaults

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Spin service starting up...")
    metrics.mark_started()
    yield
    logger.info("Spin service shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(ServiceAuthMiddleware)
app.include_router(pipeline_router)
app.include_router(product_router)
app.include_router(settings_router)


@app.get("/health")
def health_check():
    """Verify the service is running and default credentials are configured."""
    config = env_defaults()
    return {
        "status": "ok",
        "google_api_key_set": bool(config.google_api_key),
        "fal_key_set": bool(config.fal_key),
        "supabase_url_set": bool(config.supabase_url),
        "spin_mode": config.spin_mode,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all service metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("spinstudio.main:app", host="0.0.0.0", port=port, reload=True)
