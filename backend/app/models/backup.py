from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


class BackupRecord(SQLModel, table=True):
    """A full JSON snapshot of the backed-up collections."""
    __tablename__ = "backup_records"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    filename: str
    data: str = Field(sa_column=Column(Text, nullable=False))  # JSON snapshot, encrypted fields stay encrypted
    size: int = Field(default=0)
    backup_type: str = Field(default="MANUAL", index=True)  # "AUTO" | "MANUAL"
    created_by: str = Field(default="system")
    stats: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)


# --- Pydantic response schemas ---

class BackupRecordRead(BaseModel):
    id: str
    filename: str
    size: int
    backup_type: str
    created_by: str
    stats: dict[str, int]
    created_at: datetime

    model_config = {"from_attributes": True}


class BackupRestoreResponse(BaseModel):
    success: bool
    filename: str
    stats: dict[str, int]


class BackupStatusResponse(BaseModel):
    """Overall backup health for the /api/backups/status endpoint."""
    last_backup_at: datetime | None
    last_auto_backup_at: datetime | None
    total_backups: int
    total_size_bytes: int
    frequency: str


class BackupPayload(BaseModel):
    """Shape of an uploaded backup file."""
    timestamp: str | None = None
    version: str = "1.0"
    stats: dict[str, Any] | None = None
    collections: dict[str, list[dict[str, Any]]]
