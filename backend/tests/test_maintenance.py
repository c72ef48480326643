"""Tests for encryption maintenance (backend/app/services/maintenance.py)."""

from __future__ import annotations

import hashlib
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlmodel import Session

from app.models.document import Document
from app.models.registry import UnknownCollectionError
from app.services.encryption import FieldEncryptionEngine
from app.services.maintenance import EncryptionMaintenance
from app.services.records import RecordStore

SECRET = "test-encrypt-key-secret"


def _legacy(key: bytes, plaintext: str) -> str:
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode(), None)
    return f"{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"


def _raw_doc(session: Session, collection: str, data: dict) -> Document:
    """Insert a document bypassing the encryption layer."""
    doc = Document(collection=collection, data=data)
    session.add(doc)
    session.commit()
    session.refresh(doc)
    return doc


@pytest.fixture(name="maintenance")
def maintenance_fixture(session, field_encryption) -> EncryptionMaintenance:
    return EncryptionMaintenance(session, field_encryption)


class TestScan:
    def test_healthy_collection(self, maintenance: EncryptionMaintenance, store: RecordStore) -> None:
        store.create("clients", {"name": "Acme", "email": "a@acme.com"})
        (report,) = maintenance.scan("clients")
        assert report.documents == 1
        assert report.undecryptable == {}
        assert report.legacy == report.plaintext == report.missing_hashes == 0

    def test_reports_problems_without_changing_data(
        self, maintenance: EncryptionMaintenance, session: Session
    ) -> None:
        legacy = _legacy(hashlib.sha256(SECRET.encode()).digest(), "legacy name")
        foreign = FieldEncryptionEngine("another").encrypt("lost")
        doc = _raw_doc(session, "clients", {"name": legacy, "email": "plain@x.com", "notes": foreign})

        (report,) = maintenance.scan("clients")

        assert report.legacy == 1
        assert report.plaintext == 1
        assert report.missing_hashes == 2  # name and email
        assert report.undecryptable == {doc.id: ["notes"]}
        session.refresh(doc)
        assert doc.data["name"] == legacy

    def test_default_targets_collections_with_sensitive_fields(
        self, maintenance: EncryptionMaintenance
    ) -> None:
        names = {r.collection for r in maintenance.scan()}
        assert names == {"clients", "tasks", "users"}

    def test_unknown_collection(self, maintenance: EncryptionMaintenance) -> None:
        with pytest.raises(UnknownCollectionError):
            maintenance.scan("invoices")


class TestRepair:
    def test_reencrypts_legacy_and_plaintext(
        self,
        maintenance: EncryptionMaintenance,
        session: Session,
        store: RecordStore,
        field_encryption: FieldEncryptionEngine,
    ) -> None:
        legacy = _legacy(hashlib.sha256(SECRET.encode()).digest(), "Legacy Name")
        doc = _raw_doc(session, "clients", {"name": legacy, "email": "Plain@X.com"})

        (report,) = maintenance.repair("clients")

        assert report.reencrypted == 1
        assert report.encrypted == 1
        assert report.hashes_backfilled == 2
        session.refresh(doc)
        assert field_encryption.is_encrypted(doc.data["name"])
        assert field_encryption.is_encrypted(doc.data["email"])

        record = store.get("clients", doc.id)
        assert record.data["name"] == "Legacy Name"
        assert record.data["email"] == "Plain@X.com"
        assert [r.id for r in store.find_by_blind_index("clients", "email", "plain@x.com")] == [doc.id]
        assert [r.id for r in store.find_by_blind_index("clients", "name", "legacy name")] == [doc.id]

    def test_backfills_hash_for_envelope(
        self,
        maintenance: EncryptionMaintenance,
        session: Session,
        store: RecordStore,
        field_encryption: FieldEncryptionEngine,
    ) -> None:
        doc = _raw_doc(session, "users", {"email": field_encryption.encrypt("hash@me.com")})
        (report,) = maintenance.repair("users")
        assert report.hashes_backfilled == 1
        assert report.encrypted == 0
        assert [r.id for r in store.find_by_blind_index("users", "email", "HASH@me.com")] == [doc.id]

    def test_undecryptable_kept(
        self, maintenance: EncryptionMaintenance, session: Session
    ) -> None:
        foreign = FieldEncryptionEngine("another").encrypt("lost")
        doc = _raw_doc(session, "tasks", {"title": foreign})
        (report,) = maintenance.repair("tasks")
        assert report.undecryptable == {doc.id: ["title"]}
        session.refresh(doc)
        assert doc.data["title"] == foreign

    def test_idempotent(self, maintenance: EncryptionMaintenance, session: Session) -> None:
        _raw_doc(session, "users", {"email": "again@x.com"})
        maintenance.repair("users")
        (second,) = maintenance.repair("users")
        assert second.encrypted == second.reencrypted == second.hashes_backfilled == 0


class TestNonStringValues:
    def test_scan_reports_non_string_values(
        self, maintenance: EncryptionMaintenance, session: Session
    ) -> None:
        doc = _raw_doc(session, "clients", {"phone": 5551234, "notes": {"ssn": "123-45-6789"}})
        (report,) = maintenance.scan("clients")
        assert report.non_string == 2
        assert report.undecryptable == {doc.id: ["notes"]}

    def test_repair_encrypts_scalars_and_keeps_structured(
        self,
        maintenance: EncryptionMaintenance,
        session: Session,
        store: RecordStore,
        field_encryption: FieldEncryptionEngine,
    ) -> None:
        doc = _raw_doc(session, "clients", {"phone": 5551234, "notes": {"ssn": "123-45-6789"}})

        (report,) = maintenance.repair("clients")

        assert report.encrypted == 1
        session.refresh(doc)
        assert field_encryption.is_encrypted(doc.data["phone"])
        assert doc.data["notes"] == {"ssn": "123-45-6789"}
        assert store.get("clients", doc.id).data["phone"] == "5551234"
        assert [r.id for r in store.find_by_blind_index("clients", "phone", "5551234")] == [doc.id]
