from __future__ import annotations

import asyncio
from dataclasses import dataclass

import aiohttp

from clonebot.errors import ErrorKind, ImageFetchError

DEFAULT_CONTENT_TYPE = "image/png"


@dataclass(frozen=True)
class FetchedImage:
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


class ImageFetcher:
    def __init__(self, *, timeout_sec: float = 30.0) -> None:
        self.timeout_sec = timeout_sec

    async def fetch(self, url: str) -> FetchedImage:
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ImageFetchError(f"HTTP {response.status}", status=response.status)
                    data = await response.read()
                    content_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        except asyncio.TimeoutError as exc:
            raise ImageFetchError(f"Timed out fetching image after {self.timeout_sec:.0f}s", kind=ErrorKind.TIMEOUT) from exc
        except aiohttp.ClientConnectionError as exc:
            raise ImageFetchError(f"Connection error fetching image: {exc}", kind=ErrorKind.CONNECTION_RESET) from exc
        if not data:
            raise ImageFetchError("Empty image body")
        return FetchedImage(data=data, content_type=content_type or DEFAULT_CONTENT_TYPE)
