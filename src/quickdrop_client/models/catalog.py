from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CatalogFileCreate(BaseModel):
    id: str
    title: str
    storage_path: str
    content_type: str = "application/octet-stream"
    size_bytes: Optional[int] = None
    delete_after_download: bool = False


class CatalogFileInDB(CatalogFileCreate):
    model_config = ConfigDict(from_attributes=True)

    auto_delete_token: Optional[str] = None
    auto_delete_issued_at: Optional[datetime] = None
    auto_delete_consumed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    updated_by: Optional[str] = None


class AutoDeleteTicket(BaseModel):
    file_id: str
    token: str
    issued_at: datetime
    expires_at: datetime
