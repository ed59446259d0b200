import asyncio

import httpx
import pytest

from spinstudio import metrics
from spinstudio.pipeline.config import PipelineConfig
from spinstudio.pipeline.errors import EnhancementError, UploadError
from spinstudio.pipeline.models import EnhancedImage, ProductImage
from spinstudio.pipeline.orchestrator import PipelineClients, SpinPipelineService

CONFIG = PipelineConfig(
    google_api_key="g-key",
    fal_key="fal-key",
    supabase_url="https://sb.example.co",
    supabase_key="sb-key",
)

OWNER = "user-123"


# ── Fakes ────────────────────────────────────────────────────────────────────

class FakeStorage:
    def __init__(self, fail_folder=None):
        self.fail_folder = fail_folder
        self.uploads = []

    async def upload(self, data, owner_id, folder, filename="image.jpg", content_type="image/jpeg"):
        if folder == self.fail_folder:
            raise UploadError("Storage upload failed: bucket offline")
        self.uploads.append((folder, data))
        return f"https://cdn.example/{owner_id}/{folder}/{filename}"


class FakeEnhancer:
    def __init__(self, fail_on=None, delay=0):
        self.fail_on = fail_on
        self.delay = delay
        self.calls = []

    async def enhance(self, image, mime_type, label):
        self.calls.append((image, label))
        if self.delay:
            await asyncio.sleep(self.delay)
        if image == self.fail_on:
            raise EnhancementError("Model returned text instead of image: cannot edit")
        return EnhancedImage(data=b"enhanced:" + image, mime_type="image/png")


class FakeSpin:
    def __init__(self, video_url="https://x/v.mp4", error=None, gate=None):
        self.video_url = video_url
        self.error = error
        self.gate = gate
        self.started = asyncio.Event() if gate else None
        self.requests = []

    async def generate(self, request, on_progress=None):
        self.requests.append(request)
        if self.gate is not None:
            self.started.set()
            await self.gate.wait()
        if self.error:
            raise self.error
        return self.video_url


class FakeStore:
    def __init__(self, error=None):
        self.error = error
        self.saved = []

    async def save(self, job):
        if self.error:
            raise self.error
        self.saved.append(job.to_record())
        return job.to_record()


class FakeSleep:
    """Simulated clock: sleeping advances `now` instantly."""

    def __init__(self):
        self.now = 0.0
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        self.now += seconds


def make_clients(storage=None, enhancer=None, spin=None, store=None) -> PipelineClients:
    return PipelineClients(
        storage=storage or FakeStorage(),
        enhancer=enhancer or FakeEnhancer(),
        spin=spin or FakeSpin(),
        store=store or FakeStore(),
    )


def make_service(clients: PipelineClients, **kwargs) -> SpinPipelineService:
    return SpinPipelineService(CONFIG, clients_factory=lambda config: clients, **kwargs)


def fal_handler(poll_responses, calls, submit_response=None):
    """MockTransport handler for the fal queue: one submit, then scripted polls."""
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "POST":
            return httpx.Response(200, json=submit_response or {"request_id": "req-1"})
        polls = [c for c in calls if c.method == "GET"]
        return httpx.Response(200, json=poll_responses[len(polls) - 1])
    return handler


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def front_image():
    return ProductImage(filename="front.jpg", content_type="image/jpeg", data=b"front-bytes")


@pytest.fixture
def back_image():
    return ProductImage(filename="back.png", content_type="image/png", data=b"back-bytes")
