from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.config import Settings
from app.models.audit import AuditAction
from app.models.backup import (
    BackupPayload,
    BackupRecord,
    BackupRecordRead,
    BackupRestoreResponse,
    BackupStatusResponse,
)
from app.models.document import Document
from app.models.registry import backed_up_collections
from app.services.audit import SYSTEM_ACTOR, Actor, AuditService
from app.services.encryption import FieldEncryptionEngine, get_path
from app.services.records import InvalidRecordError, RecordStore

BACKUP_FORMAT_VERSION = "1.0"
BACKUP_RESOURCE = "BACKUP"


class BackupNotFoundError(Exception):
    """Raised when a backup id does not exist."""


class BackupFormatError(Exception):
    """Raised when backup content is not a valid snapshot."""


class BackupService:
    """Full JSON snapshots of the backed-up collections with replace-all restore.

    Snapshots hold documents in stored form, so encrypted fields stay
    encrypted inside the backup and restore never needs to decrypt.
    """

    def __init__(self, settings: Settings, engine: FieldEncryptionEngine) -> None:
        self._settings = settings
        self._engine = engine
        self._log = logging.getLogger(__name__)
        self._log.info("BackupService initialized")

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_history(self, db: Session, limit: int = 50) -> list[BackupRecordRead]:
        """Return backups ordered by created_at desc."""
        records = db.exec(
            select(BackupRecord)
            .order_by(col(BackupRecord.created_at).desc())
            .limit(limit)
        ).all()
        return [BackupRecordRead.model_validate(r) for r in records]

    def get_backup(self, db: Session, backup_id: str) -> BackupRecord:
        record = db.get(BackupRecord, backup_id)
        if record is None:
            raise BackupNotFoundError(f"Backup {backup_id} not found")
        return record

    def get_status(self, db: Session) -> BackupStatusResponse:
        records = db.exec(
            select(BackupRecord).order_by(col(BackupRecord.created_at).desc())
        ).all()
        last_auto = next((r for r in records if r.backup_type == "AUTO"), None)
        return BackupStatusResponse(
            last_backup_at=records[0].created_at if records else None,
            last_auto_backup_at=last_auto.created_at if last_auto else None,
            total_backups=len(records),
            total_size_bytes=sum(r.size for r in records),
            frequency=self._settings.backup_frequency,
        )

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def build_snapshot(self, db: Session) -> dict[str, Any]:
        """Collect every backed-up collection in stored (encrypted) form."""
        store = RecordStore(db, self._engine)
        collections: dict[str, list[dict[str, Any]]] = {}
        for spec in backed_up_collections():
            collections[spec.name] = store.export_collection(spec.name)
        stats = {name: len(docs) for name, docs in collections.items()}
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": BACKUP_FORMAT_VERSION,
            "stats": stats,
            "collections": collections,
        }

    def create_backup(
        self,
        db: Session,
        actor: Actor = SYSTEM_ACTOR,
        backup_type: str = "MANUAL",
    ) -> BackupRecord:
        snapshot = self.build_snapshot(db)
        data = json.dumps(snapshot)
        now = datetime.now(timezone.utc)
        filename = (
            f"backup-{backup_type.lower()}-{now.strftime('%Y-%m-%d')}_{now.strftime('%H-%M-%S')}.json"
        )
        record = BackupRecord(
            filename=filename,
            data=data,
            size=len(data.encode("utf-8")),
            backup_type=backup_type,
            created_by=actor.user_id,
            stats=snapshot["stats"],
            created_at=now,
        )
        db.add(record)
        db.commit()
        db.refresh(record)

        AuditService(db).log(
            AuditAction.CREATE,
            BACKUP_RESOURCE,
            actor=actor,
            resource_id=record.id,
            details={
                "type": backup_type,
                "size": record.size,
                "filename": filename,
                "stats": record.stats,
            },
        )
        self._log.info("Backup created: %s (%d bytes)", filename, record.size)
        return record

    def _parse(self, raw: str | bytes) -> BackupPayload:
        try:
            content = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BackupFormatError(f"Backup data is not valid JSON: {exc}") from exc
        try:
            return BackupPayload.model_validate(content)
        except ValidationError as exc:
            raise BackupFormatError(f"Backup data has an invalid structure: {exc}") from exc

    def _validate_documents(self, db: Session, payload: BackupPayload) -> None:
        """Reject snapshots that restore_backup could not apply cleanly."""
        specs = {spec.name: spec for spec in backed_up_collections()}
        unknown = set(payload.collections) - set(specs)
        if unknown:
            raise BackupFormatError(
                f"Backup contains unsupported collections: {sorted(unknown)}"
            )

        seen: set[str] = set()
        for name, docs in payload.collections.items():
            spec = specs[name]
            for raw in docs:
                doc_id = raw.get("_id")
                if isinstance(doc_id, str) and doc_id:
                    if doc_id in seen:
                        raise BackupFormatError(f"Backup contains duplicate _id {doc_id!r}")
                    seen.add(doc_id)
                for path in spec.sensitive_fields:
                    found, value = get_path(raw, path)
                    if found and value is not None and not isinstance(value, str):
                        raise BackupFormatError(
                            f"Field {path!r} of a {name!r} document must be a string"
                        )

        if seen:
            # Ids in collections that a restore leaves in place cannot be reused
            taken = db.exec(
                select(Document.id).where(
                    col(Document.id).in_(list(seen)),
                    col(Document.collection).not_in(list(specs)),
                )
            ).all()
            if taken:
                raise BackupFormatError(
                    f"Backup _id values are already used by other records: {sorted(taken)}"
                )

    def restore_backup(
        self, db: Session, backup_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> BackupRestoreResponse:
        """Replace every backed-up collection with the snapshot's content.

        All collections are swapped in one transaction; collections missing
        from the snapshot end up empty.
        """
        record = self.get_backup(db, backup_id)
        payload = self._parse(record.data)
        self._validate_documents(db, payload)
        filename = record.filename

        store = RecordStore(db, self._engine)
        stats: dict[str, int] = {}
        try:
            for spec in backed_up_collections():
                docs = payload.collections.get(spec.name, [])
                stats[spec.name] = store.replace_collection(spec.name, docs, commit=False)
            db.commit()
        except (IntegrityError, InvalidRecordError) as exc:
            db.rollback()
            self._log.warning("Restore of backup %s rejected; nothing was changed: %s", filename, exc)
            raise BackupFormatError(f"Backup cannot be restored: {exc}") from exc
        except Exception:
            db.rollback()
            self._log.exception("Restore of backup %s failed; nothing was changed", filename)
            raise

        AuditService(db).log(
            AuditAction.BACKUP_RESTORE,
            BACKUP_RESOURCE,
            actor=actor,
            resource_id=backup_id,
            details={"filename": filename, "stats": stats},
        )
        self._log.info("Backup restored: %s", filename)
        return BackupRestoreResponse(success=True, filename=filename, stats=stats)

    def import_backup(
        self,
        db: Session,
        raw: str | bytes,
        filename: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BackupRecord:
        """Store an uploaded snapshot file as a MANUAL backup after validating it."""
        payload = self._parse(raw)
        self._validate_documents(db, payload)
        data = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        stats = {name: len(docs) for name, docs in payload.collections.items()}
        record = BackupRecord(
            filename=filename,
            data=data,
            size=len(data.encode("utf-8")),
            backup_type="MANUAL",
            created_by=actor.user_id,
            stats=stats,
        )
        db.add(record)
        db.commit()
        db.refresh(record)

        AuditService(db).log(
            AuditAction.IMPORT,
            BACKUP_RESOURCE,
            actor=actor,
            resource_id=record.id,
            details={"filename": filename, "size": record.size, "stats": stats},
        )
        return record

    def delete_backup(self, db: Session, backup_id: str, actor: Actor = SYSTEM_ACTOR) -> None:
        record = self.get_backup(db, backup_id)
        filename = record.filename
        db.delete(record)
        db.commit()
        AuditService(db).log(
            AuditAction.DELETE,
            BACKUP_RESOURCE,
            actor=actor,
            resource_id=backup_id,
            details={"filename": filename},
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_old_backups(self, db: Session) -> int:
        """Remove AUTO backups older than the retention window."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=self._settings.backup_retention_days)
        old = db.exec(
            select(BackupRecord).where(
                BackupRecord.backup_type == "AUTO",
                BackupRecord.created_at < cutoff,
            )
        ).all()
        for record in old:
            db.delete(record)
        db.commit()
        if old:
            self._log.info("Removed %d AUTO backup(s) older than %d days", len(old), self._settings.backup_retention_days)
        return len(old)

    def enforce_max_backups(self, db: Session) -> int:
        """Keep only the newest BACKUP_MAX_COUNT backups."""
        excess = db.exec(
            select(BackupRecord)
            .order_by(col(BackupRecord.created_at).desc())
            .offset(self._settings.backup_max_count)
        ).all()
        for record in excess:
            db.delete(record)
        db.commit()
        if excess:
            self._log.info("Removed %d backup(s) above the cap of %d", len(excess), self._settings.backup_max_count)
        return len(excess)

    def check_and_trigger_auto_backup(self, db: Session, frequency: str | None = None) -> bool:
        """Create an AUTO backup if one is due. Returns True if one was created.

        ``daily`` creates at most one AUTO backup per UTC day, ``every_login``
        always creates one, ``disabled`` never does. Retention runs afterwards
        either way.

        This service has no login of its own, so under ``every_login`` each
        pass of the lifespan scheduler (application start, then every 24 h)
        produces a backup.
        """
        frequency = frequency or self._settings.backup_frequency
        if frequency == "disabled":
            self._log.info("Automatic backup disabled")
            return False

        created = False
        if frequency == "every_login":
            self.create_backup(db, backup_type="AUTO")
            created = True
        else:
            today_start = datetime.now(timezone.utc).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            existing = db.exec(
                select(BackupRecord).where(
                    BackupRecord.backup_type == "AUTO",
                    BackupRecord.created_at >= today_start,
                )
            ).first()
            if existing is None:
                self.create_backup(db, backup_type="AUTO")
                created = True
            else:
                self._log.info("Today's automatic backup already exists: %s", existing.filename)

        try:
            self.cleanup_old_backups(db)
            self.enforce_max_backups(db)
        except Exception:
            self._log.exception("Backup retention cleanup failed")
            db.rollback()
        return created
