"""
Product Spin Pipeline

Single-flight orchestration for one product at a time:
  Upload → Enhance (Gemini) → 360° Spin (fal.ai queue) → Save (Supabase)
"""

from .orchestrator import SpinPipelineService, PipelineClients, ServiceRegistry
from .routes import pipeline_router, product_router, settings_router
from .models import PipelineState, StepStatus, ProductSpinJob

__all__ = [
    "SpinPipelineService",
    "PipelineClients",
    "ServiceRegistry",
    "pipeline_router",
    "product_router",
    "settings_router",
    "PipelineState",
    "StepStatus",
    "ProductSpinJob",
]
