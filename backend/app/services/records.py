"""Record store: the persistence adapter around the document table.

Every write goes through ``FieldEncryptionEngine.apply_on_write`` and every
read through ``apply_on_read``; nothing above this layer sees ciphertext
unless a value could not be decrypted, in which case the field is named in
``StoredRecord.undecryptable``.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlmodel import Session, col, func, select

from app.models.document import BlindIndexEntry, Document
from app.models.registry import CollectionSpec, get_collection
from app.services.encryption import (
    FieldEncryptionEngine,
    delete_path,
    get_path,
    hash_field_name,
)

logger = logging.getLogger(__name__)

# Keys used for document metadata in exported (wire form) documents
META_KEYS = ("_id", "createdAt", "updatedAt")


class InvalidRecordError(Exception):
    """Raised when a sensitive field holds a value that cannot be encrypted."""


@dataclass
class StoredRecord:
    id: str
    collection: str
    data: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    undecryptable: list[str] = field(default_factory=list)


class RecordStore:
    """CRUD over the document table with transparent field encryption."""

    def __init__(self, session: Session, engine: FieldEncryptionEngine) -> None:
        self._session = session
        self._engine = engine

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_record(self, spec: CollectionSpec, doc: Document) -> StoredRecord:
        data = copy.deepcopy(doc.data)
        self._engine.apply_on_read(data, spec.sensitive_fields)
        undecryptable = self._engine.undecryptable_fields(data, spec.sensitive_fields)
        if undecryptable:
            logger.warning(
                "Document %s in %s has undecryptable fields: %s",
                doc.id, spec.name, ", ".join(undecryptable),
            )
        return StoredRecord(
            id=doc.id,
            collection=doc.collection,
            data=data,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
            undecryptable=undecryptable,
        )

    def _prepare(
        self, spec: CollectionSpec, data: dict[str, Any], *, keep_hashes: bool = False
    ) -> dict[str, Any]:
        """Copy incoming data, strip metadata keys and encrypt it.

        Blind-index hashes are only ever derived from the field's own
        plaintext; incoming ``<field>Hash`` values are dropped unless
        ``keep_hashes`` is set, and even then only next to a field that is
        already ciphertext (restoring stored documents).
        """
        prepared = {k: v for k, v in copy.deepcopy(data).items() if k not in META_KEYS}
        for path in spec.sensitive_fields:
            found, value = get_path(prepared, path)
            if found and value is not None and not isinstance(value, str):
                raise InvalidRecordError(
                    f"Field {path!r} of {spec.name!r} must be a string, "
                    f"got {type(value).__name__}"
                )
        for path in spec.blind_index_fields:
            if keep_hashes:
                found, value = get_path(prepared, path)
                if found and (
                    self._engine.is_encrypted(value) or self._engine.is_legacy_encrypted(value)
                ):
                    continue
            delete_path(prepared, hash_field_name(path))
        return dict(
            self._engine.apply_on_write(
                prepared, spec.sensitive_fields, spec.blind_index_fields
            )
        )

    def _clear_stale_hashes(self, spec: CollectionSpec, data: dict[str, Any]) -> None:
        """Drop ``<field>Hash`` for blind-indexed fields that are now empty."""
        for path in spec.blind_index_fields:
            found, value = get_path(data, path)
            if not found or value is None or value == "":
                delete_path(data, hash_field_name(path))

    def _drop_index(self, document_id: str) -> None:
        entries = self._session.exec(
            select(BlindIndexEntry).where(BlindIndexEntry.document_id == document_id)
        ).all()
        for entry in entries:
            self._session.delete(entry)

    def _sync_index(self, spec: CollectionSpec, doc: Document) -> None:
        self._drop_index(doc.id)
        for path in spec.blind_index_fields:
            found, token = get_path(doc.data, hash_field_name(path))
            if found and isinstance(token, str) and token:
                self._session.add(
                    BlindIndexEntry(
                        document_id=doc.id,
                        collection=spec.name,
                        field=path,
                        token_hmac=token,
                    )
                )

    def _get_doc(self, spec: CollectionSpec, record_id: str) -> Document | None:
        doc = self._session.get(Document, record_id)
        if doc is None or doc.collection != spec.name:
            return None
        return doc

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, collection: str, data: dict[str, Any]) -> StoredRecord:
        spec = get_collection(collection)
        doc = Document(collection=spec.name, data=self._prepare(spec, data))
        self._session.add(doc)
        self._session.flush()
        self._sync_index(spec, doc)
        self._session.commit()
        self._session.refresh(doc)
        return self._to_record(spec, doc)

    def get(self, collection: str, record_id: str) -> StoredRecord | None:
        spec = get_collection(collection)
        doc = self._get_doc(spec, record_id)
        return self._to_record(spec, doc) if doc is not None else None

    def list_records(self, collection: str, limit: int = 100, offset: int = 0) -> list[StoredRecord]:
        spec = get_collection(collection)
        docs = self._session.exec(
            select(Document)
            .where(Document.collection == spec.name)
            .order_by(col(Document.created_at))
            .offset(offset)
            .limit(limit)
        ).all()
        return [self._to_record(spec, d) for d in docs]

    def count(self, collection: str) -> int:
        spec = get_collection(collection)
        return self._session.exec(
            select(func.count()).select_from(Document).where(Document.collection == spec.name)
        ).one()

    def update(
        self, collection: str, record_id: str, patch: dict[str, Any]
    ) -> StoredRecord | None:
        """Merge a partial update. Only plaintext values in the patch are re-encrypted."""
        spec = get_collection(collection)
        doc = self._get_doc(spec, record_id)
        if doc is None:
            return None

        prepared = self._prepare(spec, patch)
        merged = copy.deepcopy(doc.data)
        # A patched field invalidates its old hash; plaintext gets a new one
        for path in spec.blind_index_fields:
            if get_path(patch, path)[0]:
                delete_path(merged, hash_field_name(path))
        merged.update(prepared)
        self._clear_stale_hashes(spec, merged)

        # Reassign so the JSON column is flagged dirty
        doc.data = merged
        doc.updated_at = datetime.now(timezone.utc)
        self._session.add(doc)
        self._sync_index(spec, doc)
        self._session.commit()
        self._session.refresh(doc)
        return self._to_record(spec, doc)

    def delete(self, collection: str, record_id: str) -> bool:
        spec = get_collection(collection)
        doc = self._get_doc(spec, record_id)
        if doc is None:
            return False
        self._drop_index(doc.id)
        self._session.flush()
        self._session.delete(doc)
        self._session.commit()
        return True

    def find_by_blind_index(
        self, collection: str, field_name: str, value: str
    ) -> list[StoredRecord]:
        """Equality lookup on an encrypted field, case and whitespace insensitive."""
        spec = get_collection(collection)
        if field_name not in spec.blind_index_fields:
            raise ValueError(
                f"Field {field_name!r} of {spec.name!r} has no blind index. "
                f"Searchable: {list(spec.blind_index_fields)}"
            )
        token = self._engine.compute_blind_index(value)
        if not token:
            return []
        docs = self._session.exec(
            select(Document)
            .join(BlindIndexEntry, col(BlindIndexEntry.document_id) == col(Document.id))
            .where(
                BlindIndexEntry.collection == spec.name,
                BlindIndexEntry.field == field_name,
                BlindIndexEntry.token_hmac == token,
            )
            .order_by(col(Document.created_at))
        ).all()
        return [self._to_record(spec, d) for d in docs]

    # ------------------------------------------------------------------
    # Bulk (backup/restore)
    # ------------------------------------------------------------------

    def export_collection(self, collection: str) -> list[dict[str, Any]]:
        """All documents in stored form; encrypted fields stay encrypted."""
        spec = get_collection(collection)
        docs = self._session.exec(
            select(Document)
            .where(Document.collection == spec.name)
            .order_by(col(Document.created_at))
        ).all()
        return [
            {
                "_id": d.id,
                **copy.deepcopy(d.data),
                "createdAt": _as_utc(d.created_at).isoformat(),
                "updatedAt": _as_utc(d.updated_at).isoformat(),
            }
            for d in docs
        ]

    def replace_collection(
        self, collection: str, docs: list[dict[str, Any]], *, commit: bool = True
    ) -> int:
        """Delete every document of a collection and insert ``docs`` instead.

        ``docs`` are in wire form (as produced by export_collection). Plaintext
        sensitive values are encrypted on the way in.
        """
        spec = get_collection(collection)
        existing = self._session.exec(
            select(Document).where(Document.collection == spec.name)
        ).all()
        for old in existing:
            self._drop_index(old.id)
        self._session.flush()
        for old in existing:
            self._session.delete(old)
        self._session.flush()

        inserted = 0
        for raw in docs:
            now = datetime.now(timezone.utc)
            doc = Document(
                collection=spec.name,
                data=self._prepare(spec, raw, keep_hashes=True),
                created_at=_parse_timestamp(raw.get("createdAt")) or now,
                updated_at=_parse_timestamp(raw.get("updatedAt")) or now,
            )
            if isinstance(raw.get("_id"), str) and raw["_id"]:
                doc.id = raw["_id"]
            self._session.add(doc)
            self._session.flush()
            self._sync_index(spec, doc)
            inserted += 1

        if commit:
            self._session.commit()
        logger.info("Replaced collection %s with %d document(s)", spec.name, inserted)
        return inserted

    def iter_raw(self, collection: str) -> list[Document]:
        """Raw Document rows, for maintenance jobs that rewrite stored values."""
        spec = get_collection(collection)
        return list(
            self._session.exec(
                select(Document).where(Document.collection == spec.name)
            ).all()
        )

    def save_raw(self, collection: str, doc: Document) -> None:
        """Persist a Document whose data was rewritten in stored form."""
        spec = get_collection(collection)
        doc.updated_at = datetime.now(timezone.utc)
        self._session.add(doc)
        self._sync_index(spec, doc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return _as_utc(parsed)
