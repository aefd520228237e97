# quickdrop_client/db/__init__.py

from .base import Base, UTCDateTime

from .drop_orm import DropORM, DropStatus
from .rate_limit_orm import RateLimitORM
from .catalog_orm import CatalogFileORM


__all__ = [
    "Base",
    "UTCDateTime",
    "DropORM",
    "DropStatus",
    "RateLimitORM",
    "CatalogFileORM",
]
