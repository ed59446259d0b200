"""
Shared httpx plumbing for the stage adapters.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx


@asynccontextmanager
async def open_client(
    client: Optional[httpx.AsyncClient],
    timeout: float = 30,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client as-is, or a short-lived one that is closed after use."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
        yield owned


async def download_image_bytes(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
) -> bytes:
    """Download an image from a public URL and return raw bytes."""
    async with open_client(client, timeout=30) as http:
        resp = await http.get(url)
        resp.raise_for_status()
        return resp.content
