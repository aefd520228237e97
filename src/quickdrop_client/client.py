import logging
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from quickdrop_client.auto_delete import AutoDeleteService
from quickdrop_client.db.base import Base
from quickdrop_client.downloads import PayloadDownload
from quickdrop_client.engine import DropLifecycleEngine
from quickdrop_client.exceptions import BlobStoreError, DatabaseError
from quickdrop_client.models import (
    ActivationResult,
    AutoDeleteTicket,
    CatalogFileCreate,
    CatalogFileInDB,
    DropStatusView,
    DropTicket,
    SweepReport,
)
from quickdrop_client.reaper import Reaper
from quickdrop_client.repositories.blob_store import BlobStore

logger = logging.getLogger(__name__)


class DropClient:
    """
    Единая точка доступа: движок drop'ов, auto-delete, Reaper и жизненный цикл
    подключений. Собирается один раз через create_drop_client().
    """

    def __init__(
        self,
        engine: AsyncEngine,
        lifecycle: DropLifecycleEngine,
        auto_delete: AutoDeleteService,
        reaper: Reaper,
        blob_store: BlobStore,
    ):
        self._engine = engine
        self.lifecycle = lifecycle
        self.auto_delete = auto_delete
        self.reaper = reaper
        self.blobs = blob_store

    async def init_storage(self):
        """Создаёт таблицы и бакет/каталог. Замена миграциям для dev и тестов."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await self.blobs.check_connection()

    async def check_connections(self) -> dict[str, str]:
        statuses = {}

        try:
            await self.lifecycle.drops.check_connection()
            statuses["database"] = "ok"
        except DatabaseError as e:
            statuses["database"] = f"failed: {e}"

        try:
            await self.blobs.check_connection()
            statuses["blob_store"] = "ok"
        except BlobStoreError as e:
            statuses["blob_store"] = f"failed: {e}"

        return statuses

    async def aclose(self):
        await self.reaper.stop()
        await self._engine.dispose()

    # ――― QuickDrop ――― #

    async def create_drop(
        self, file_name: str, size_bytes: int, content_type: Optional[str] = None, principal: str = "unknown"
    ) -> DropTicket:
        return await self.lifecycle.create_drop(file_name, size_bytes, content_type, principal)

    async def upload_payload(self, token: str, data: bytes):
        return await self.lifecycle.upload_payload(token, data)

    async def upload_payload_stream(
        self, token: str, chunks: AsyncIterator[bytes], declared_length: Optional[int] = None
    ):
        return await self.lifecycle.upload_payload_stream(token, chunks, declared_length)

    async def activate_drop(self, token: str) -> ActivationResult:
        return await self.lifecycle.activate_drop(token)

    async def consume_drop(self, token: str) -> PayloadDownload:
        return await self.lifecycle.consume_drop(token)

    async def get_drop_status(self, token: str) -> DropStatusView:
        return await self.lifecycle.get_drop_status(token)

    async def sweep(self, limit: Optional[int] = None) -> SweepReport:
        return await self.reaper.sweep(limit)

    # ――― auto-delete ――― #

    async def register_catalog_file(self, data: CatalogFileCreate) -> CatalogFileInDB:
        return await self.auto_delete.register_file(data)

    async def issue_auto_delete_token(self, file_id: str) -> AutoDeleteTicket:
        return await self.auto_delete.issue_token(file_id)

    async def consume_auto_delete_token(self, raw_token: str) -> PayloadDownload:
        return await self.auto_delete.consume_raw_token(raw_token)
