from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, String, text
from sqlalchemy.orm import Mapped, mapped_column

from quickdrop_client.db.base import Base, CreatedAt, OptionalTimestamp
from quickdrop_client.models.catalog import CatalogFileInDB


class CatalogFileORM(Base):
    """
    Долгоживущая запись каталога. Здесь нужна только ради флага
    delete_after_download и пары auto_delete_token / auto_delete_issued_at.
    """

    __tablename__ = "catalog_files"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(2048), nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False, default="application/octet-stream")
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    delete_after_download: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    auto_delete_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    auto_delete_issued_at: Mapped[OptionalTimestamp]
    auto_delete_consumed_at: Mapped[OptionalTimestamp]
    deleted_at: Mapped[OptionalTimestamp]

    created_at: Mapped[CreatedAt]
    updated_at: Mapped[CreatedAt]
    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def to_pydantic(self) -> CatalogFileInDB:
        return CatalogFileInDB.model_validate(self)

    def is_consumed(self) -> bool:
        return self.deleted_at is not None or self.auto_delete_consumed_at is not None

    def token_issued_before(self, cutoff: datetime) -> bool:
        return self.auto_delete_issued_at is not None and self.auto_delete_issued_at < cutoff
