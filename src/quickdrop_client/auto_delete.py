import logging
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Optional

from quickdrop_client.clock import Clock, SystemClock
from quickdrop_client.config import DropConfig
from quickdrop_client.downloads import PayloadDownload
from quickdrop_client.exceptions import (
    AlreadyConsumedError,
    BlobNotFoundError,
    BlobStoreError,
    ExpiredError,
    FileNotFoundInCatalogError,
    InvalidInputError,
)
from quickdrop_client.models.catalog import AutoDeleteTicket, CatalogFileCreate, CatalogFileInDB
from quickdrop_client.repositories.blob_store import BlobStore, DEFAULT_CONTENT_TYPE
from quickdrop_client.repositories.pg_repositoryCatalog import CatalogRepository
from quickdrop_client.tokens import format_auto_delete_token, generate_token, parse_auto_delete_token

logger = logging.getLogger(__name__)


class AutoDeleteService:
    """
    Одноразовая выдача файла каталога с флагом delete_after_download.
    Строка каталога остаётся (soft-delete), blob удаляется после выдачи.
    """

    def __init__(
        self,
        catalog_repo: CatalogRepository,
        blob_store: BlobStore,
        settings: Optional[DropConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.catalog = catalog_repo
        self.blobs = blob_store
        self.settings = settings or DropConfig()
        self.clock = clock or SystemClock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.auto_delete_ttl_seconds)

    async def register_file(self, data: CatalogFileCreate) -> CatalogFileInDB:
        return await self.catalog.add(data, now=self.clock.now())

    async def issue_token(self, file_id: str) -> AutoDeleteTicket:
        now = self.clock.now()
        row = await self.catalog.issue_token(
            file_id,
            now=now,
            reusable_after=now - self.ttl,
            mint=lambda: generate_token(self.settings.token_bytes),
        )
        logger.info(f"Auto-delete token for file {file_id} issued at {row.auto_delete_issued_at.isoformat()}")
        return AutoDeleteTicket(
            file_id=file_id,
            token=format_auto_delete_token(file_id, row.auto_delete_token),
            issued_at=row.auto_delete_issued_at,
            expires_at=row.auto_delete_issued_at + self.ttl,
        )

    async def consume_raw_token(self, raw: str) -> PayloadDownload:
        parsed = parse_auto_delete_token(raw or "")
        if parsed is None:
            raise InvalidInputError("Invalid token.")
        return await self.consume_token(*parsed)

    async def consume_token(self, file_id: str, secret: str) -> PayloadDownload:
        now = self.clock.now()
        row = await self.catalog.get(file_id)
        if row is None:
            raise FileNotFoundInCatalogError("File not found.")
        if not row.delete_after_download:
            raise FileNotFoundInCatalogError("Token is not valid.")
        if row.deleted_at is not None or row.auto_delete_consumed_at is not None:
            raise AlreadyConsumedError("File is no longer available.")
        if not row.auto_delete_token or row.auto_delete_token != secret:
            raise FileNotFoundInCatalogError("Token has been consumed.")
        if row.auto_delete_issued_at is not None and now - row.auto_delete_issued_at > self.ttl:
            raise ExpiredError("Token has expired.")

        try:
            meta = await self.blobs.stat(row.storage_path)
        except BlobNotFoundError as e:
            logger.error(f"Auto-delete file missing at {row.storage_path}")
            raise FileNotFoundInCatalogError("File missing.") from e

        await self.catalog.mark_consumed(file_id, secret, now_fn=self.clock.now, ttl=self.ttl)
        logger.info(f"Auto-delete file {file_id} consumed")

        storage_path = row.storage_path

        async def _delete_blob():
            try:
                await self.blobs.delete(storage_path, ignore_not_found=True)
            except BlobStoreError as e:
                logger.error(f"Failed to delete auto-deleted storage object {storage_path}: {e}")

        try:
            stream = await self.blobs.open_read_stream(storage_path, self.settings.stream_chunk_size)
        except BlobStoreError as e:
            await _delete_blob()
            raise FileNotFoundInCatalogError("File missing.") from e

        return PayloadDownload(
            label=f"auto-delete file {file_id}",
            file_name=PurePosixPath(storage_path).name or f"{file_id}.bin",
            content_type=meta.content_type or row.content_type or DEFAULT_CONTENT_TYPE,
            size=meta.size,
            stream=stream,
            on_finish=_delete_blob,
        )
