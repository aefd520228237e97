from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DropCreate(BaseModel):
    """Тело POST /drops. Всё Optional: проверки делает движок, а не FastAPI."""

    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(None, alias="fileName")
    size_bytes: Optional[float] = Field(None, alias="sizeBytes")
    content_type: Optional[str] = Field(None, alias="contentType")


class DropInDB(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    token: str
    file_name: str
    size_bytes: int
    content_type: str
    storage_path: str
    status: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    created_by: Optional[str] = None


class DropTicket(BaseModel):
    token: str
    storage_path: str


class ActivationResult(BaseModel):
    token: str
    share_path: str
    expires_at: datetime
    expires_in_ms: int


class DropStatusView(BaseModel):
    status: str
    file_name: str
    size_bytes: int
    expires_at: Optional[datetime] = None
    remaining_ms: int = 0

    def to_wire(self) -> dict:
        return {
            "status": self.status,
            "fileName": self.file_name,
            "sizeBytes": self.size_bytes,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "remainingMs": self.remaining_ms,
        }


class SweepReport(BaseModel):
    examined: int = 0
    reclaimed: int = 0
    failed: int = 0
    tokens: list[str] = Field(default_factory=list)
