"""
Enhancement stage: product photo cleanup via Gemini image generation (REST).

The model is asked for an e-commerce studio shot of the same product. When it
answers with text instead of an image, the request was not actionable and the
stage fails; this is never retried.
"""

import base64
import logging
from typing import Optional

import httpx

from .errors import EnhancementError, ValidationError
from .models import EnhancedImage
from .transport import open_client

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def build_enhance_prompt(product_name: str) -> str:
    return f"""You are an expert e-commerce photo editor.
I will provide an image of a product called "{product_name}".

Your task:
1. Identify the main product subject and generate a new version of this image where the product is perfectly centered.
2. The background must be pure white (hex #FFFFFF).
3. Remove any harsh shadows, dust, or noise.
4. Enhance sharpness and lighting to look like professional studio photography.
5. Maintain the exact geometry and perspective of the original product. Do not hallucinate new features.
"""


class GeminiEnhancer:
    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash-image",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120,
    ):
        self._api_key = api_key
        self._model = model
        self._http = http_client
        self._timeout = timeout

    @property
    def url(self) -> str:
        return f"{GEMINI_API_BASE}/models/{self._model}:generateContent"

    async def enhance(
        self,
        image: bytes,
        mime_type: str,
        label: str,
    ) -> EnhancedImage:
        """
        Enhance a single product photo.

        Args:
            image:     Raw image bytes.
            mime_type: Mime type of `image`.
            label:     Product name, used only to steer the prompt.

        Returns:
            The enhanced image as decoded bytes.
        """
        if not image:
            raise ValidationError("Image to enhance is empty.")
        if not self._api_key:
            raise EnhancementError("Google API key is required")

        request_body = {
            "contents": [
                {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type or "image/jpeg",
                                "data": base64.b64encode(image).decode("utf-8"),
                            }
                        },
                        {"text": build_enhance_prompt(label)},
                    ]
                }
            ],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }

        try:
            async with open_client(self._http, timeout=self._timeout) as client:
                response = await client.post(
                    self.url,
                    params={"key": self._api_key},
                    json=request_body,
                )
        except httpx.HTTPError as e:
            raise EnhancementError(f"Failed to reach Google AI: {e}") from e

        if response.status_code != 200:
            raise EnhancementError(
                f"Google AI error {response.status_code}: {response.text[:300]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise EnhancementError("Google AI returned a non-JSON response.") from e

        return _extract_image(result)


def _extract_image(result: dict) -> EnhancedImage:
    candidates = result.get("candidates") or []
    parts = candidates[0].get("content", {}).get("parts") if candidates else None
    if not parts:
        raise EnhancementError("No content generated")

    for part in parts:
        inline = part.get("inlineData")
        if inline and inline.get("data"):
            try:
                data = base64.b64decode(inline["data"])
            except ValueError as e:
                raise EnhancementError("Enhanced image data is not valid base64.") from e
            return EnhancedImage(data=data, mime_type=inline.get("mimeType", "image/png"))

    text = next((p["text"] for p in parts if p.get("text")), None)
    if text:
        logger.warning(f"Enhancement returned text instead of an image: {text[:200]}")
        raise EnhancementError(f"Model returned text instead of image: {text}")
    raise EnhancementError("Failed to generate enhanced image.")
