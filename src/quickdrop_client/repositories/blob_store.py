from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, runtime_checkable

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class BlobMetadata:
    content_type: Optional[str]
    size: Optional[int]


@runtime_checkable
class BlobStore(Protocol):
    """
    Path-addressable binary storage used for drop payloads.

    Missing objects raise BlobNotFoundError; every other failure is a
    BlobStoreError. delete() with ignore_not_found=True is idempotent.
    """

    @property
    def location(self) -> str: ...

    async def check_connection(self) -> None: ...

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> None: ...

    async def open_read_stream(self, path: str, chunk_size: int = 64 * 1024) -> "BlobReadStream": ...

    async def stat(self, path: str) -> BlobMetadata: ...

    async def delete(self, path: str, ignore_not_found: bool = True) -> None: ...


class BlobReadStream:
    """
    Async iterator over an already opened object.

    aclose() releases the underlying handle even when iteration never
    started, so an unread download does not leak a file or HTTP connection.
    """

    def __init__(self, chunks: AsyncIterator[bytes], release: Callable[[], Awaitable[None]]):
        self._chunks = chunks
        self._release = release
        self._released = False

    def __aiter__(self) -> "BlobReadStream":
        return self

    async def __anext__(self) -> bytes:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._chunks.aclose()
        finally:
            await self._release()
