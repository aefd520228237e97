import logging
import math
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from quickdrop_client.clock import Clock, SystemClock
from quickdrop_client.config import DropConfig
from quickdrop_client.db.drop_orm import DropORM, DropStatus
from quickdrop_client.downloads import PayloadDownload
from quickdrop_client.exceptions import (
    AllocationExhaustedError,
    BlobStoreError,
    DatabaseError,
    DropNotFoundError,
    InvalidInputError,
    PayloadUnavailableError,
    RateLimitedError,
    StateConflictError,
)
from quickdrop_client.models.drop import ActivationResult, DropInDB, DropStatusView, DropTicket
from quickdrop_client.rate_limit import RateLimiter
from quickdrop_client.repositories.blob_store import BlobStore, DEFAULT_CONTENT_TYPE
from quickdrop_client.repositories.pg_repositoryDrop import DropRepository
from quickdrop_client.tokens import build_storage_path, generate_token, hash_principal

logger = logging.getLogger(__name__)

MAX_CONTENT_TYPE_LENGTH = 255
SHARE_PATH_PREFIX = "/quickdrop"


class DropLifecycleEngine:
    """
    pending -> active -> consumed | expired, плюс удаление записи и payload.

    Собственного разделяемого состояния нет: всё, что касается гонок,
    решается условными UPDATE в DropRepository.
    """

    def __init__(
        self,
        drop_repo: DropRepository,
        blob_store: BlobStore,
        rate_limiter: Optional[RateLimiter] = None,
        settings: Optional[DropConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.drops = drop_repo
        self.blobs = blob_store
        self.rate_limiter = rate_limiter
        self.settings = settings or DropConfig()
        self.clock = clock or SystemClock()

    @property
    def active_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.active_ttl_seconds)

    # ――― create ――― #

    def _validate_create(self, file_name, size_bytes, content_type) -> tuple[str, int, str]:
        name = str(file_name or "").strip()
        if not name:
            raise InvalidInputError("fileName is required")

        try:
            size = float(size_bytes) if size_bytes is not None else 0.0
        except (TypeError, ValueError):
            size = 0.0
        if not math.isfinite(size) or size <= 0 or size != int(size):
            raise InvalidInputError("sizeBytes must be provided")
        if size > self.settings.max_size_bytes:
            limit_mb = self.settings.max_size_bytes // (1024 * 1024)
            raise InvalidInputError(f"File exceeds {limit_mb}MB QuickDrop limit")

        ctype = content_type.strip()[:MAX_CONTENT_TYPE_LENGTH] if isinstance(content_type, str) else ""
        return name, int(size), ctype or DEFAULT_CONTENT_TYPE

    async def create_drop(
        self,
        file_name: str,
        size_bytes: int,
        content_type: str | None = None,
        principal: str = "unknown",
    ) -> DropTicket:
        name, size, ctype = self._validate_create(file_name, size_bytes, content_type)

        if self.rate_limiter is not None and not await self.rate_limiter.allow(principal):
            logger.info("QuickDrop creation denied by rate limiter")
            raise RateLimitedError("Too many QuickDrop initialisations. Try again later.")

        for attempt in range(1, self.settings.allocation_attempts + 1):
            token = generate_token(self.settings.token_bytes)
            if await self.drops.exists(token):
                continue
            storage_path = build_storage_path(token, name)
            drop = DropORM(
                token=token,
                file_name=name,
                size_bytes=size,
                content_type=ctype,
                storage_path=storage_path,
                status=DropStatus.pending.value,
                created_at=self.clock.now(),
                expires_at=None,
                consumed_at=None,
                created_by=hash_principal(principal),
            )
            if await self.drops.insert_pending(drop):
                logger.info(f"QuickDrop {token[:6]}... created ({size} bytes, attempt {attempt})")
                return DropTicket(token=token, storage_path=storage_path)

        logger.error(
            f"Token allocation exhausted after {self.settings.allocation_attempts} attempts; "
            "token entropy is suspect"
        )
        raise AllocationExhaustedError("Unable to allocate token")

    async def _pending_for_upload(self, token: str) -> DropInDB:
        drop = await self.drops.get(token)
        if drop is None:
            raise DropNotFoundError("Not found")
        if drop.status != DropStatus.pending.value:
            raise StateConflictError("QuickDrop no longer accepts uploads")
        return drop

    @staticmethod
    def _too_large(drop: DropInDB) -> InvalidInputError:
        return InvalidInputError(f"Payload is larger than the declared {drop.size_bytes} bytes")

    async def _store_payload(self, drop: DropInDB, data: bytes) -> DropInDB:
        if not data:
            raise InvalidInputError("Payload is empty")
        if len(data) > drop.size_bytes:
            raise self._too_large(drop)

        await self.blobs.put(drop.storage_path, data, content_type=drop.content_type)
        logger.info(f"QuickDrop {drop.token[:6]}... payload uploaded ({len(data)} bytes)")
        return drop

    async def upload_payload(self, token: str, data: bytes) -> DropInDB:
        drop = await self._pending_for_upload(token)
        return await self._store_payload(drop, data)

    async def upload_payload_stream(
        self,
        token: str,
        chunks: AsyncIterator[bytes],
        declared_length: Optional[int] = None,
    ) -> DropInDB:
        """
        Загрузка из потока (тело HTTP-запроса). В памяти держим не больше
        объявленного sizeBytes: лишние байты обрывают чтение сразу.
        """
        drop = await self._pending_for_upload(token)
        if declared_length is not None and declared_length > drop.size_bytes:
            raise self._too_large(drop)

        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            if len(buffer) > drop.size_bytes:
                raise self._too_large(drop)
        return await self._store_payload(drop, bytes(buffer))

    # ――― activate ――― #

    async def activate_drop(self, token: str) -> ActivationResult:
        drop = await self.drops.activate(token, now_fn=self.clock.now, ttl=self.active_ttl)
        remaining = max(0, int((drop.expires_at - self.clock.now()).total_seconds() * 1000))
        logger.info(f"QuickDrop {token[:6]}... activated, expires at {drop.expires_at.isoformat()}")
        return ActivationResult(
            token=token,
            share_path=f"{SHARE_PATH_PREFIX}/{token}",
            expires_at=drop.expires_at,
            expires_in_ms=remaining,
        )

    # ――― consume ――― #

    async def consume_drop(self, token: str) -> PayloadDownload:
        """
        Атомарно забирает drop и открывает поток payload.

        Поток читается вне транзакции. Запись и blob удаляются, когда поток
        дочитан, упал или handle закрыт, так что consumed-запись не повисает.
        """
        drop = await self.drops.claim_for_consumption(token, now_fn=self.clock.now)
        logger.info(f"QuickDrop {token[:6]}... consumed")

        async def _cleanup():
            await self.discard(drop.token, drop.storage_path)

        content_type = drop.content_type or DEFAULT_CONTENT_TYPE
        size: Optional[int] = drop.size_bytes
        try:
            meta = await self.blobs.stat(drop.storage_path)
            if meta.content_type and meta.content_type.strip():
                content_type = meta.content_type
            if meta.size is not None:
                size = meta.size
        except BlobStoreError as e:
            logger.warning(f"Unable to read metadata for QuickDrop payload {drop.storage_path}: {e}")

        try:
            stream = await self.blobs.open_read_stream(drop.storage_path, self.settings.stream_chunk_size)
        except BlobStoreError as e:
            logger.error(f"Failed to open QuickDrop payload for {token[:6]}...: {e}")
            await _cleanup()
            raise PayloadUnavailableError("Download unavailable") from e

        return PayloadDownload(
            label=f"QuickDrop {token[:6]}...",
            file_name=drop.file_name or f"quickdrop-{token}",
            content_type=content_type,
            size=size,
            stream=stream,
            on_finish=_cleanup,
        )

    # ――― status ――― #

    @staticmethod
    def derive_status(drop: DropInDB, now: datetime) -> str:
        if drop.status == DropStatus.consumed.value:
            return DropStatus.consumed.value
        if drop.status == DropStatus.expired.value:
            return DropStatus.expired.value
        if drop.expires_at is not None and drop.expires_at <= now:
            return DropStatus.expired.value
        return drop.status

    async def get_drop_status(self, token: str) -> DropStatusView:
        drop = await self.drops.get(token)
        if drop is None:
            raise DropNotFoundError("Not found")

        now = self.clock.now()
        status = self.derive_status(drop, now)
        terminal = status in (DropStatus.expired.value, DropStatus.consumed.value)
        remaining_ms = 0
        if drop.expires_at is not None and not terminal:
            remaining_ms = max(0, int((drop.expires_at - now).total_seconds() * 1000))

        view = DropStatusView(
            status=status,
            file_name=drop.file_name,
            size_bytes=drop.size_bytes,
            expires_at=drop.expires_at,
            remaining_ms=remaining_ms,
        )
        if terminal:
            # lazy GC: не ждём Reaper'а
            await self.discard(drop.token, drop.storage_path)
        return view

    # ――― cleanup ――― #

    async def discard(self, token: str, storage_path: Optional[str]) -> bool:
        """
        Сначала blob, потом запись. Ошибки только логируются: запись, которую
        не удалось удалить, подберёт Reaper. True, если удалено всё.
        """
        ok = True
        if storage_path:
            try:
                await self.blobs.delete(storage_path, ignore_not_found=True)
            except BlobStoreError as e:
                ok = False
                logger.error(f"Failed to delete QuickDrop payload at {storage_path}: {e}")
        try:
            await self.drops.delete(token)
        except DatabaseError as e:
            ok = False
            logger.error(f"Failed to delete QuickDrop record for {token[:6]}...: {e}")
        return ok
