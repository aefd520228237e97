import enum
from typing import Optional

from sqlalchemy import BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from quickdrop_client.db.base import Base, CreatedAt, OptionalTimestamp
from quickdrop_client.models.drop import DropInDB


class DropStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    consumed = "consumed"
    expired = "expired"


class DropORM(Base):
    __tablename__ = "quickdrop_drops"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)  # он же capability
    file_name: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(2048), nullable=False, unique=True)

    # plain string column: SQLite has no enum type and the values never change
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DropStatus.pending.value)

    created_at: Mapped[CreatedAt]
    expires_at: Mapped[OptionalTimestamp]
    consumed_at: Mapped[OptionalTimestamp]
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_quickdrop_drops_expires_at", "expires_at"),
        Index("idx_quickdrop_drops_status_created", "status", "created_at"),
    )

    def to_pydantic(self) -> DropInDB:
        return DropInDB.model_validate(self)
