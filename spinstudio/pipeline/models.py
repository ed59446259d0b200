"""
Pydantic models and enums for the spin pipeline.
"""

import base64
import time
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


# ── Pipeline State ───────────────────────────────────────────────────────────

class PipelineState(str, Enum):
    IDLE = "IDLE"
    UPLOADING = "UPLOADING"
    ENHANCING = "ENHANCING"
    GENERATING_SPIN = "GENERATING_SPIN"
    SAVING = "SAVING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


TERMINAL_STATES = {PipelineState.COMPLETE, PipelineState.ERROR}


# ── Processing Steps ─────────────────────────────────────────────────────────

class StepStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class ProcessingStep(BaseModel):
    id: str
    label: str
    status: StepStatus = StepStatus.PENDING


STEP_LABELS = {
    "upload": "Uploading Images",
    "enhance": "AI Image Enhancement",
    "spin": "360° Geometry Generation",
    "save": "Saving Product Data",
}

DEFAULT_STEPS = ["upload", "enhance", "spin", "save"]


# ── Images ───────────────────────────────────────────────────────────────────

class ProductImage(BaseModel):
    """A product photo, either raw bytes to upload or an already-durable URL."""
    filename: str = "image.jpg"
    content_type: str = "image/jpeg"
    data: Optional[bytes] = None
    url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.data and not self.url

    @property
    def needs_upload(self) -> bool:
        return bool(self.data) and not self.url


class EnhancedImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode()}"

    @property
    def extension(self) -> str:
        return "png" if "png" in self.mime_type else "jpg"


# ── Job ──────────────────────────────────────────────────────────────────────

def _now_ms() -> int:
    return int(time.time() * 1000)


class ProductSpinJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = ""
    owner_id: str = ""
    front_image: Optional[ProductImage] = Field(default=None, exclude=True)
    back_image: Optional[ProductImage] = Field(default=None, exclude=True)
    original_image_url: Optional[str] = None
    original_back_image_url: Optional[str] = None
    enhanced_image_url: Optional[str] = None
    enhanced_back_image_url: Optional[str] = None
    video_url: Optional[str] = None
    created_at: int = Field(default_factory=_now_ms)

    def to_record(self) -> dict:
        """Row shape of the products table."""
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "name": self.name,
            "originalImageUrl": self.original_image_url,
            "enhancedImageUrl": self.enhanced_image_url,
            "enhancedBackImageUrl": self.enhanced_back_image_url,
            "videoUrl": self.video_url,
            "timestamp": self.created_at,
        }


class PipelineSnapshot(BaseModel):
    state: PipelineState = PipelineState.IDLE
    steps: list[ProcessingStep] = Field(default_factory=list)
    job: Optional[ProductSpinJob] = None
    error: Optional[str] = None
    progress: Optional[str] = None


# ── Spin Generation ──────────────────────────────────────────────────────────

class SpinRequest(BaseModel):
    image_url: str
    back_image_url: Optional[str] = None
    prompt: str
    duration: float = 3.0
    aspect_ratio: str = "1:1"
    spin_degrees: int = 360
    quality: str = "high"

    def to_payload(self) -> dict:
        payload = {
            "prompt": self.prompt,
            "image_url": self.image_url,
            "spin_degrees": self.spin_degrees,
            "duration": self.duration,
            "aspect_ratio": self.aspect_ratio,
            "quality": self.quality,
        }
        if self.back_image_url:
            payload["back_image_url"] = self.back_image_url
        return payload


class SpinProgress(BaseModel):
    status: str
    queue_position: Optional[int] = None
    logs: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        if self.queue_position is not None:
            return f"{self.status} (queue position {self.queue_position})"
        if self.logs:
            return f"{self.status}: {self.logs[-1]}"
        return self.status


# ── API Request Models ───────────────────────────────────────────────────────

class ImagePayload(BaseModel):
    """An image as sent over the API: base64 bytes or a public URL."""
    filename: str = "image.jpg"
    content_type: str = "image/jpeg"
    data_base64: Optional[str] = None
    url: Optional[str] = None

    def to_image(self) -> ProductImage:
        data = base64.b64decode(self.data_base64) if self.data_base64 else None
        return ProductImage(
            filename=self.filename,
            content_type=self.content_type,
            data=data,
            url=self.url,
        )


class StartPipelineRequest(BaseModel):
    user_id: str = ""
    name: str = Field(..., description="Product name")
    front_image: ImagePayload
    back_image: Optional[ImagePayload] = None


class SnippetResponse(BaseModel):
    product_id: str
    video_url: str
    snippets: dict[str, str]
