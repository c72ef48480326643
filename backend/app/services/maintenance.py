"""Encryption maintenance over stored documents.

Finds sensitive fields that are not in a healthy v1-envelope state and,
on request, repairs what can be repaired:

- legacy ``iv:tag:ciphertext`` values are re-encrypted as v1 envelopes,
- plaintext left in a sensitive field is encrypted,
- missing blind indexes are back-filled from decryptable values,
- numbers and booleans in a sensitive field are encrypted as their JSON text.

Values that cannot be decrypted, and objects or lists sitting in a sensitive
field, are only reported, never deleted.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass, field

from sqlmodel import Session

from app.models.registry import COLLECTIONS, CollectionSpec, get_collection
from app.services.encryption import (
    DecryptionError,
    FieldEncryptionEngine,
    get_path,
    hash_field_name,
    set_path,
)
from app.services.records import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class CollectionReport:
    collection: str
    documents: int = 0
    undecryptable: dict[str, list[str]] = field(default_factory=dict)  # doc id -> fields left as they are
    legacy: int = 0
    plaintext: int = 0
    non_string: int = 0
    missing_hashes: int = 0
    reencrypted: int = 0
    encrypted: int = 0
    hashes_backfilled: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EncryptionMaintenance:
    def __init__(self, session: Session, engine: FieldEncryptionEngine) -> None:
        self._session = session
        self._engine = engine
        self._store = RecordStore(session, engine)

    def _plaintext_of(self, value: str) -> str | None:
        """Best-effort plaintext for a stored value, None if unreadable."""
        if self._engine.is_encrypted(value):
            try:
                return self._engine.decrypt_strict(value)
            except DecryptionError:
                return None
        if self._engine.is_legacy_encrypted(value):
            try:
                return self._engine.decrypt_legacy(value)
            except DecryptionError:
                return None
        return value

    def _process(self, spec: CollectionSpec, repair: bool) -> CollectionReport:
        report = CollectionReport(collection=spec.name)
        docs = self._store.iter_raw(spec.name)
        report.documents = len(docs)

        for doc in docs:
            data = copy.deepcopy(doc.data)
            changed = False
            bad_fields: list[str] = []

            for path in spec.sensitive_fields:
                found, value = get_path(data, path)
                if not found or value is None or value == "":
                    continue

                if not isinstance(value, str):
                    report.non_string += 1
                    if isinstance(value, (dict, list)):
                        # Structured values need a manual decision
                        bad_fields.append(path)
                        continue
                    # Scalars are stored as their JSON text, e.g. 5551234 -> "5551234"
                    value = json.dumps(value)

                plaintext = self._plaintext_of(value)
                if plaintext is None:
                    bad_fields.append(path)
                    continue

                if path in spec.blind_index_fields:
                    hash_path = hash_field_name(path)
                    has_hash, current = get_path(data, hash_path)
                    digest = self._engine.compute_blind_index(plaintext)
                    if digest and (not has_hash or not current):
                        report.missing_hashes += 1
                        if repair:
                            set_path(data, hash_path, digest)
                            report.hashes_backfilled += 1
                            changed = True

                if self._engine.is_legacy_encrypted(value):
                    report.legacy += 1
                    if repair:
                        set_path(data, path, self._engine.encrypt(plaintext))
                        report.reencrypted += 1
                        changed = True
                elif not self._engine.is_encrypted(value):
                    report.plaintext += 1
                    if repair:
                        set_path(data, path, self._engine.encrypt(plaintext))
                        report.encrypted += 1
                        changed = True

            if bad_fields:
                report.undecryptable[doc.id] = bad_fields
            if changed:
                doc.data = data
                self._store.save_raw(spec.name, doc)

        if repair:
            self._session.commit()
            logger.info(
                "Encryption repair on %s: %d re-encrypted, %d encrypted, %d hashes back-filled, %d undecryptable",
                spec.name,
                report.reencrypted,
                report.encrypted,
                report.hashes_backfilled,
                len(report.undecryptable),
            )
        return report

    def _targets(self, collection: str | None) -> list[CollectionSpec]:
        if collection is not None:
            return [get_collection(collection)]
        return [spec for spec in COLLECTIONS.values() if spec.sensitive_fields]

    def scan(self, collection: str | None = None) -> list[CollectionReport]:
        return [self._process(spec, repair=False) for spec in self._targets(collection)]

    def repair(self, collection: str | None = None) -> list[CollectionReport]:
        return [self._process(spec, repair=True) for spec in self._targets(collection)]
