"""
Spin generation stage: 360° product video via the fal.ai queue API.

Two integration shapes share one submit-then-poll protocol:
  - PollingSpinClient:   polls the request endpoint until a terminal status.
  - SubscribeSpinClient: polls the status endpoint, streams progress, then
                         fetches the result once the request completes.

Both poll every POLL_INTERVAL seconds for at most MAX_POLL_ATTEMPTS attempts
and never retry past that budget.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import httpx

from .config import PipelineConfig
from .errors import GenerationError, GenerationTimeoutError, MalformedResponseError
from .models import SpinProgress, SpinRequest
from .transport import open_client

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FAL_QUEUE_BASE = "https://queue.fal.run"

POLL_INTERVAL = 2  # seconds
MAX_POLL_ATTEMPTS = 30  # 60 seconds max

ProgressCallback = Callable[[SpinProgress], None]
Sleep = Callable[[float], Awaitable[None]]


def build_spin_prompt(product_name: str) -> str:
    return (
        f"360-degree orbiting camera shot of the {product_name}, "
        "smooth turntable rotation around the product, "
        "professional studio lighting, solid seamless background, "
        "4k, sharp detail, preserve the exact shape and proportions of the product."
    )


class SpinGenerationClient(ABC):
    """Turns an enhanced product image into a spin video URL."""

    @abstractmethod
    async def generate(
        self,
        request: SpinRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Return the generated video URL or raise a GenerationError."""


class _FalQueueClient(SpinGenerationClient):
    def __init__(
        self,
        api_key: str,
        model: str = "fal-ai/3d-photo-spin",
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = POLL_INTERVAL,
        max_attempts: int = MAX_POLL_ATTEMPTS,
    ):
        self._api_key = api_key
        self._model = model.strip("/")
        self._http = http_client
        self._sleep = sleep
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Key {self._api_key}",
            "Content-Type": "application/json",
        }

    def request_url(self, request_id: str) -> str:
        return f"{FAL_QUEUE_BASE}/{self._model}/requests/{request_id}"

    async def generate(
        self,
        request: SpinRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        if not self._api_key:
            raise GenerationError("FAL.ai Key is required")

        async with open_client(self._http, timeout=30) as client:
            request_id = await self._submit(client, request)
            return await self._wait(client, request_id, on_progress)

    async def _submit(self, client: httpx.AsyncClient, request: SpinRequest) -> str:
        url = f"{FAL_QUEUE_BASE}/{self._model}"
        try:
            resp = await client.post(url, headers=self.headers, json=request.to_payload())
        except httpx.HTTPError as e:
            raise GenerationError(f"FAL.ai request failed: {e}") from e

        if resp.is_error:
            detail = _json_or_empty(resp).get("detail") or "FAL.ai request failed"
            raise GenerationError(str(detail))

        request_id = _json_or_raise(resp).get("request_id")
        if not request_id:
            raise MalformedResponseError("FAL.ai submission returned no request_id")

        logger.info(f"Spin generation submitted: request_id={request_id}")
        return request_id

    async def _get(self, client: httpx.AsyncClient, url: str, **kwargs) -> dict:
        try:
            resp = await client.get(url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise GenerationError(f"FAL.ai status check failed: {e}") from e
        if resp.is_error:
            raise GenerationError(f"FAL.ai status check failed with HTTP {resp.status_code}")
        return _json_or_raise(resp)

    async def _wait(
        self,
        client: httpx.AsyncClient,
        request_id: str,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        for attempt in range(self.max_attempts):
            await self._sleep(self.poll_interval)
            video_url = await self._check(client, request_id, attempt, on_progress)
            if video_url is not None:
                return video_url

        raise GenerationTimeoutError(
            f"Generation timed out after {self.max_attempts * self.poll_interval:g}s"
        )

    @abstractmethod
    async def _check(
        self,
        client: httpx.AsyncClient,
        request_id: str,
        attempt: int,
        on_progress: Optional[ProgressCallback],
    ) -> Optional[str]:
        """One poll. Return the video URL when done, None to keep polling."""


class PollingSpinClient(_FalQueueClient):
    """Fire-and-poll against the request endpoint."""

    async def _check(self, client, request_id, attempt, on_progress):
        data = await self._get(client, self.request_url(request_id))
        status = data.get("status", "")

        logger.info(f"Spin poll #{attempt + 1}: status={status}")

        if status == "COMPLETED":
            return _video_url(data)
        if status == "FAILED":
            raise GenerationError(data.get("error") or "Generation failed on FAL.ai")

        if on_progress:
            on_progress(SpinProgress(status=status or "UNKNOWN"))
        return None


class SubscribeSpinClient(_FalQueueClient):
    """
    Subscribe-style call: one blocking `generate` that streams queue position
    and log lines to `on_progress`, then fetches the finished result.
    """

    async def _check(self, client, request_id, attempt, on_progress):
        data = await self._get(
            client,
            f"{self.request_url(request_id)}/status",
            params={"logs": 1},
        )
        status = data.get("status", "")

        logger.info(f"Spin status #{attempt + 1}: status={status}")

        if status == "FAILED" or (status == "COMPLETED" and data.get("error")):
            raise GenerationError(data.get("error") or "Generation failed on FAL.ai")

        if on_progress:
            logs = [
                entry.get("message", "")
                for entry in data.get("logs") or []
                if isinstance(entry, dict)
            ]
            on_progress(SpinProgress(
                status=status or "UNKNOWN",
                queue_position=data.get("queue_position"),
                logs=[line for line in logs if line],
            ))

        if status != "COMPLETED":
            return None

        result = await self._get(client, self.request_url(request_id))
        return _video_url(result)


def spin_client_for(
    config: PipelineConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> SpinGenerationClient:
    """Pick the spin client implementation named by `config.spin_mode`."""
    if config.spin_mode == "subscribe":
        return SubscribeSpinClient(config.fal_key, config.spin_model, http_client=http_client)
    if config.spin_mode == "poll":
        return PollingSpinClient(config.fal_key, config.spin_model, http_client=http_client)
    raise ValueError(f"Unknown spin client mode: {config.spin_mode!r}")


# ── Helpers ──────────────────────────────────────────────────────────────────

def _video_url(data: dict) -> str:
    video = data.get("video")
    url = video.get("url") if isinstance(video, dict) else None
    if not url:
        logger.error(f"FAL response without video URL: {data}")
        raise MalformedResponseError("Video URL missing in completed response")
    return url


def _json_or_raise(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedResponseError("FAL.ai returned a non-JSON response") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("FAL.ai returned an unexpected response shape")
    return data


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
