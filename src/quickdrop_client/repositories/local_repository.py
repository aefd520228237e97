"""
Blob store on the local filesystem.

Used for development and tests; layout under `root` mirrors object keys.
"""

import logging
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os

from quickdrop_client.config import LocalStorageConfig
from quickdrop_client.exceptions import BlobNotFoundError, BlobStoreError
from quickdrop_client.repositories.blob_store import BlobMetadata, BlobReadStream

logger = logging.getLogger(__name__)


class LocalDiskRepository:
    def __init__(self, settings: LocalStorageConfig):
        self._root = Path(settings.root).resolve()

    @property
    def location(self) -> str:
        return f"local directory '{self._root}'"

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if target != self._root and self._root not in target.parents:
            raise BlobStoreError(f"Path '{path}' escapes storage root")
        return target

    async def check_connection(self):
        try:
            await aiofiles.os.makedirs(self._root, exist_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Storage root {self._root} unavailable: {e}") from e

    async def put(self, path: str, data: bytes, content_type: str | None = None):
        target = self._resolve(path)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(data)
        except OSError as e:
            logger.error(f"LocalDisk PUT failed for {path}: {e}")
            raise BlobStoreError(str(e)) from e

    async def stat(self, path: str) -> BlobMetadata:
        """Только размер: content type на диске не хранится, его знает запись drop'а."""
        target = self._resolve(path)
        try:
            st = await aiofiles.os.stat(target)
        except FileNotFoundError as e:
            raise BlobNotFoundError(f"Object '{path}' not found") from e
        except OSError as e:
            raise BlobStoreError(str(e)) from e
        return BlobMetadata(content_type=None, size=st.st_size)

    async def open_read_stream(self, path: str, chunk_size: int = 64 * 1024) -> BlobReadStream:
        target = self._resolve(path)
        try:
            handle = await aiofiles.open(target, "rb")
        except FileNotFoundError as e:
            raise BlobNotFoundError(f"Object '{path}' not found") from e
        except OSError as e:
            raise BlobStoreError(str(e)) from e

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                while True:
                    chunk = await handle.read(chunk_size)
                    if not chunk:
                        return
                    yield chunk
            except OSError as e:
                raise BlobStoreError(f"Stream for '{path}' broke: {e}") from e

        return BlobReadStream(_chunks(), handle.close)

    async def delete(self, path: str, ignore_not_found: bool = True):
        target = self._resolve(path)
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError as e:
            if not ignore_not_found:
                raise BlobNotFoundError(f"Object '{path}' not found") from e
            return
        except OSError as e:
            logger.error(f"LocalDisk DELETE failed for {path}: {e}")
            raise BlobStoreError(str(e)) from e
        # пустые каталоги quickdrop/<token>/ не копим; непустой каталог просто остаётся
        if target.parent != self._root:
            try:
                await aiofiles.os.rmdir(target.parent)
            except OSError as e:
                logger.debug(f"Kept directory {target.parent}: {e}")

    async def list_all(self, prefix: str | None = None) -> list[str]:
        base = self._resolve(prefix) if prefix else self._root
        if not base.exists():
            return []
        return sorted(
            p.relative_to(self._root).as_posix() for p in base.rglob("*") if p.is_file()
        )
