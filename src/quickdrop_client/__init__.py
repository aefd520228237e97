# Файл: src/quickdrop_client/__init__.py

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .auto_delete import AutoDeleteService
from .client import DropClient
from .clock import Clock, ManualClock, SystemClock
from .config import get_settings, DropClientConfig, DropConfig, PostgresConfig, MinioConfig, LocalStorageConfig
from .downloads import PayloadDownload
from .engine import DropLifecycleEngine
from .rate_limit import RateLimiter
from .reaper import Reaper
from .repositories.blob_store import BlobStore
from .repositories.local_repository import LocalDiskRepository
from .repositories.minio_repository import MinioRepository
from .repositories.pg_repositoryCatalog import CatalogRepository
from .repositories.pg_repositoryDrop import DropRepository
from .repositories.pg_repositoryRateLimit import RateLimitRepository

from .exceptions import *


def _build_engine(config: DropClientConfig):
    pg = config.postgres
    if pg.is_postgres:
        return create_async_engine(
            pg.get_pg_dsn(),
            pool_size=pg.pool_size,
            max_overflow=pg.max_overflow,
            pool_timeout=pg.pool_timeout,
            pool_recycle=pg.pool_recycle,
            pool_pre_ping=pg.pool_pre_ping,
            connect_args={
                "server_settings": {
                    "application_name": pg.application_name
                }
            }
        )
    # SQLite: ждём писателя вместо мгновенного "database is locked"
    engine = create_async_engine(pg.get_pg_dsn(), connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        # write-lock берётся сразу, конкурирующие транзакции ждут busy timeout
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _build_blob_store(config: DropClientConfig) -> BlobStore:
    if config.blob_backend == "local":
        return LocalDiskRepository(config.local)
    return MinioRepository(config.minio)


def create_drop_client(
    config: Optional[DropClientConfig] = None,
    clock: Optional[Clock] = None,
    blob_store: Optional[BlobStore] = None,
) -> DropClient:
    """
    Фабричная функция для создания и конфигурации DropClient.

    :param config: Единый объект с настройками.
                   Если не предоставлен, используются переменные окружения.
    :param clock: Источник времени (ManualClock в тестах).
    :param blob_store: Готовое хранилище payload'ов вместо собранного из конфига.
    """
    if config is None:
        config = get_settings().to_client_config()
    clock = clock or SystemClock()

    engine = _build_engine(config)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    blobs = blob_store or _build_blob_store(config)

    rate_limiter = RateLimiter(RateLimitRepository(session_factory), config.drops, clock)
    lifecycle = DropLifecycleEngine(
        drop_repo=DropRepository(session_factory),
        blob_store=blobs,
        rate_limiter=rate_limiter,
        settings=config.drops,
        clock=clock,
    )
    auto_delete = AutoDeleteService(CatalogRepository(session_factory), blobs, config.drops, clock)
    reaper = Reaper(lifecycle, config.drops, clock)

    return DropClient(
        engine=engine,
        lifecycle=lifecycle,
        auto_delete=auto_delete,
        reaper=reaper,
        blob_store=blobs,
    )


__all__ = [
    "DropClient", "create_drop_client",
    "DropClientConfig", "DropConfig", "PostgresConfig", "MinioConfig", "LocalStorageConfig",
    "DropLifecycleEngine", "AutoDeleteService", "Reaper", "RateLimiter", "PayloadDownload",
    "Clock", "SystemClock", "ManualClock",
    "DropClientError", "InvalidInputError", "NotFoundError", "DropNotFoundError",
    "StateConflictError", "GoneError", "ExpiredError", "AlreadyConsumedError",
    "RateLimitedError", "AllocationExhaustedError", "StorageUnavailableError",
    "DatabaseError", "BlobStoreError", "MinioError",
]
