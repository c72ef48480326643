"""Audit trail of sensitive actions."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    AUTH_FAILURE = "AUTH_FAILURE"
    EXPORT = "EXPORT"
    IMPORT = "IMPORT"
    BACKUP_DOWNLOAD = "BACKUP_DOWNLOAD"
    BACKUP_RESTORE = "BACKUP_RESTORE"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    user_name: str
    user_email: str = Field(index=True)
    action: str = Field(index=True)
    resource: str = Field(index=True)  # "CLIENT", "TASK", "BACKUP", ...
    resource_id: str | None = Field(default=None)
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    ip_address: str = Field(default="unknown")
    user_agent: str = Field(default="unknown")
    severity: str = Field(default=AuditSeverity.INFO.value, index=True)
    status: str = Field(default=AuditStatus.SUCCESS.value)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)


# --- Pydantic schemas ---

class AuditLogRead(BaseModel):
    id: str
    user_id: str
    user_name: str
    user_email: str
    action: str
    resource: str
    resource_id: str | None
    details: dict[str, Any] | None
    ip_address: str
    user_agent: str
    severity: str
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditLogPage(BaseModel):
    items: list[AuditLogRead]
    total: int
    limit: int
    offset: int
