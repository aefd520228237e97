"""
Download handles returned by the consumption paths.

A handle owns an already opened blob stream plus a cleanup callback. The
callback runs exactly once: after the stream is drained, after it fails, or
when the handle is closed without being read at all.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote

from quickdrop_client.exceptions import StateConflictError

logger = logging.getLogger(__name__)

_URI_COMPONENT_SAFE = "-_.!~*'()"
_UNSAFE_FALLBACK = re.compile(r'["\r\n\\]|[^\x20-\x7e]')


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def build_content_disposition(file_name: str, default: str = "quickdrop") -> str:
    fallback = _UNSAFE_FALLBACK.sub("_", file_name)[:255] or default
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{encode_uri_component(file_name)}"


class PayloadDownload:
    def __init__(
        self,
        *,
        label: str,
        file_name: str,
        content_type: str,
        size: Optional[int],
        stream: AsyncIterator[bytes],
        on_finish: Callable[[], Awaitable[None]],
    ):
        self.label = label
        self.file_name = file_name
        self.content_type = content_type
        self.size = size
        self._stream = stream
        self._on_finish = on_finish
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._started or self._closed:
            raise StateConflictError("Download stream already used")
        self._started = True
        try:
            async for chunk in self._stream:
                yield chunk
        except Exception as e:
            logger.error(f"Failed to stream payload for {self.label}: {e}")
            raise
        finally:
            # cleanup должен отработать и при отмене (клиент оборвал соединение)
            await asyncio.shield(self.aclose())

    async def read_all(self) -> bytes:
        return b"".join([chunk async for chunk in self.iter_bytes()])

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._stream, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            await self._on_finish()

    def headers(self, filename_header: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": self.content_type,
            "Content-Disposition": build_content_disposition(self.file_name),
            "Cache-Control": "no-store",
        }
        if self.size is not None:
            headers["Content-Length"] = str(self.size)
        if filename_header:
            headers[filename_header] = encode_uri_component(self.file_name)
        return headers
