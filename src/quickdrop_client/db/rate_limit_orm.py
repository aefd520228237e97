from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from quickdrop_client.db.base import Base, CreatedAt


class RateLimitORM(Base):
    """Fixed-window counter, one row per hashed principal."""

    __tablename__ = "quickdrop_rate_limits"

    principal_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_start: Mapped[CreatedAt]
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[CreatedAt]
