# Файл: src/quickdrop_client/config.py

from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# --- 1. Record store (PostgreSQL, либо любой DSN для SQLAlchemy) ---
class PostgresConfig(BaseModel):
    user: str = "postgres"
    password: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    db: str = "quickdrop"

    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    application_name: str = "quickdrop_client"

    # e.g. "sqlite+aiosqlite:///./quickdrop.db" for local runs and tests
    dsn: Optional[str] = None

    def get_pg_dsn(self) -> str:
        """Собирает DSN для SQLAlchemy из полей этого объекта."""
        if self.dsn:
            return self.dsn
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"

    @property
    def is_postgres(self) -> bool:
        return self.get_pg_dsn().startswith("postgresql")


# --- 2. Blob store ---
class MinioConfig(BaseModel):
    endpoint: str = "localhost:9000"
    accesskey: str = "minioadmin"
    secretkey: str = "minioadmin"
    bucket: str = "quickdrop"
    secure: bool = False


class LocalStorageConfig(BaseModel):
    root: str = "quickdrop-data"


# --- 3. Lifecycle knobs ---
class DropConfig(BaseModel):
    active_ttl_seconds: int = Field(60, description="Active window after activation")
    pending_ttl_seconds: int = Field(600, description="How long an un-activated drop may linger")
    cleanup_grace_seconds: int = 15
    consumed_grace_seconds: int = 600
    max_size_bytes: int = 25 * 1024 * 1024
    allocation_attempts: int = 5
    token_bytes: int = 32

    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 5
    rate_limit_fail_open: bool = True

    auto_delete_ttl_seconds: int = 600

    reaper_enabled: bool = True
    reaper_interval_seconds: float = 30.0
    reaper_batch_size: int = 50

    stream_chunk_size: int = 64 * 1024


# --- 4. Главный объект для явной передачи конфигурации ---
class DropClientConfig(BaseModel):
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    minio: MinioConfig = Field(default_factory=MinioConfig)
    local: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    drops: DropConfig = Field(default_factory=DropConfig)
    blob_backend: Literal["minio", "local"] = "minio"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    minio: MinioConfig = Field(default_factory=MinioConfig)
    local: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    drops: DropConfig = Field(default_factory=DropConfig)
    blob_backend: Literal["minio", "local"] = "minio"

    def to_client_config(self) -> DropClientConfig:
        return DropClientConfig(
            postgres=self.postgres,
            minio=self.minio,
            local=self.local,
            drops=self.drops,
            blob_backend=self.blob_backend,
        )


_cached_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Возвращает синглтон-экземпляр настроек, создавая его при первом вызове.
    Это предотвращает ошибки валидации при импорте.
    """
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = Settings()
    return _cached_settings


def reset_settings() -> None:
    global _cached_settings
    _cached_settings = None
