import logging
from io import BytesIO
from typing import AsyncIterator

import urllib3
from minio import Minio
from minio.error import S3Error

from quickdrop_client.config import MinioConfig
from quickdrop_client.exceptions import BlobNotFoundError, MinioError
from quickdrop_client.repositories.blob_store import BlobMetadata, BlobReadStream, DEFAULT_CONTENT_TYPE
from quickdrop_client.utils.minio_async import iterate_io_bound, run_io_bound

logger = logging.getLogger(__name__)
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "ResourceNotFound", "NoSuchBucket"}


def _translate(e: S3Error, object_name: str) -> MinioError:
    if e.code in _MISSING_CODES:
        return BlobNotFoundError(f"Object '{object_name}' not found")
    return MinioError(str(e))


class MinioRepository:
    def __init__(self, settings: MinioConfig):
        http_client = None
        if settings.secure:
            http_client = urllib3.PoolManager(
                cert_reqs='CERT_NONE',
            )
        self._client = Minio(
            endpoint=settings.endpoint,
            access_key=settings.accesskey,
            secret_key=settings.secretkey,
            secure=settings.secure,
            http_client=http_client
        )
        self._bucket = settings.bucket
        self._bucket_ready = False

    @property
    def location(self) -> str:
        return f"minio bucket '{self._bucket}'"

    async def _ensure_bucket(self):
        if self._bucket_ready:
            return
        try:
            exists = await run_io_bound(self._client.bucket_exists, self._bucket)
            if not exists:
                await run_io_bound(self._client.make_bucket, self._bucket)
                logger.info(f"Created MinIO bucket: {self._bucket}")
        except S3Error as e:
            raise MinioError(str(e)) from e
        self._bucket_ready = True

    async def check_connection(self):
        """Проверяет соединение с MinIO и наличие бакета."""
        logger.debug(f"Checking MinIO connection and bucket '{self._bucket}' existence...")
        try:
            await self._ensure_bucket()
            logger.debug("MinIO connection and bucket presence confirmed.")
        except MinioError as e:
            logger.error(f"MinIO connection failed: {e}")
            raise
        except urllib3.exceptions.HTTPError as e:
            logger.error(f"MinIO connection failed: {e}")
            raise MinioError(str(e)) from e

    async def put(self, path: str, data: bytes, content_type: str | None = None):
        await self._ensure_bucket()
        try:
            await run_io_bound(
                self._client.put_object,
                self._bucket,
                path,
                BytesIO(data),
                len(data),
                content_type=content_type or DEFAULT_CONTENT_TYPE,
            )
        except S3Error as e:
            raise _translate(e, path) from e

    async def stat(self, path: str) -> BlobMetadata:
        try:
            obj = await run_io_bound(self._client.stat_object, self._bucket, path)
        except S3Error as e:
            raise _translate(e, path) from e
        return BlobMetadata(content_type=obj.content_type, size=obj.size)

    async def open_read_stream(self, path: str, chunk_size: int = 64 * 1024) -> BlobReadStream:
        """Открывает объект сразу (ошибки летят здесь), читает лениво."""
        try:
            resp = await run_io_bound(self._client.get_object, self._bucket, path)
        except S3Error as e:
            raise _translate(e, path) from e

        async def _chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in iterate_io_bound(resp.stream(chunk_size)):
                    yield chunk
            except urllib3.exceptions.HTTPError as e:
                raise MinioError(f"Stream for '{path}' broke: {e}") from e

        async def _release():
            resp.close()
            resp.release_conn()

        return BlobReadStream(_chunks(), _release)

    async def list_all(self, prefix: str | None = None, recursive: bool = True) -> list[str]:
        def _collect():
            return [
                obj.object_name
                for obj in self._client.list_objects(
                    self._bucket, prefix=prefix, recursive=recursive
                )
            ]

        try:
            return await run_io_bound(_collect)
        except S3Error as e:
            raise _translate(e, prefix or "") from e

    async def delete(self, path: str, ignore_not_found: bool = True):
        # S3 DELETE на отсутствующий ключ и так no-op, stat нужен только для строгого режима
        if not ignore_not_found:
            await self.stat(path)
        try:
            await run_io_bound(self._client.remove_object, self._bucket, path)
        except S3Error as e:
            err = _translate(e, path)
            if ignore_not_found and isinstance(err, BlobNotFoundError):
                return
            raise err from e
