"""Document store tables: one row per record, plus blind-index entries."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Document(SQLModel, table=True):
    __tablename__ = "documents"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    collection: str = Field(index=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BlindIndexEntry(SQLModel, table=True):
    """Mirror of a document's ``<field>Hash`` value for indexed equality lookup."""
    __tablename__ = "blind_index_entries"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    document_id: str = Field(foreign_key="documents.id", index=True)
    collection: str = Field(index=True)
    field: str
    token_hmac: str = Field(index=True)  # HMAC-SHA256 hex digest of normalized plaintext


# --- Pydantic schemas ---

class RecordRead(BaseModel):
    id: str
    collection: str
    data: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    undecryptable: list[str]  # Sensitive fields whose stored value could not be decrypted

    model_config = {"from_attributes": True}
