from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response
from sqlmodel import Session

from app.config import get_settings
from app.db import get_session
from app.dependencies import get_actor, get_backup_service, require_auth
from app.models.audit import AuditAction
from app.models.backup import BackupRecordRead, BackupRestoreResponse, BackupStatusResponse
from app.services.audit import Actor, AuditService
from app.services.backup import BACKUP_RESOURCE, BackupFormatError, BackupNotFoundError, BackupService

router = APIRouter(prefix="/api/backups", tags=["backups"])


@router.get("", response_model=list[BackupRecordRead])
async def list_backups(
    _token: str = Depends(require_auth),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> list[BackupRecordRead]:
    """Return backups, newest first."""
    return service.get_history(db)


@router.get("/status", response_model=BackupStatusResponse)
async def backup_status(
    _token: str = Depends(require_auth),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> BackupStatusResponse:
    return service.get_status(db)


@router.post("", response_model=BackupRecordRead, status_code=201)
async def create_backup(
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> BackupRecordRead:
    """Take a manual snapshot of every backed-up collection."""
    record = service.create_backup(db, actor=actor, backup_type="MANUAL")
    return BackupRecordRead.model_validate(record)


@router.post("/upload", response_model=BackupRecordRead, status_code=201)
async def upload_backup(
    file: UploadFile = File(...),
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> BackupRecordRead:
    """Store an uploaded backup file so it can be restored later."""
    max_bytes = get_settings().max_upload_size_mb * 1024 * 1024
    raw = await file.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(status_code=413, detail="Backup file too large")
    filename = file.filename or "uploaded-backup.json"
    if not filename.endswith(".json"):
        raise HTTPException(status_code=400, detail="Backup file must be a .json file")
    try:
        record = service.import_backup(db, raw, filename, actor=actor)
    except BackupFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return BackupRecordRead.model_validate(record)


@router.get("/{backup_id}", response_model=BackupRecordRead)
async def get_backup(
    backup_id: str,
    _token: str = Depends(require_auth),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> BackupRecordRead:
    try:
        record = service.get_backup(db, backup_id)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    return BackupRecordRead.model_validate(record)


@router.get("/{backup_id}/download")
async def download_backup(
    backup_id: str,
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> Response:
    try:
        record = service.get_backup(db, backup_id)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    AuditService(db).log(
        AuditAction.BACKUP_DOWNLOAD,
        BACKUP_RESOURCE,
        actor=actor,
        resource_id=backup_id,
        details={"filename": record.filename, "size": record.size},
    )
    return Response(
        content=record.data,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{record.filename}"'},
    )


@router.post("/{backup_id}/restore", response_model=BackupRestoreResponse)
async def restore_backup(
    backup_id: str,
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> BackupRestoreResponse:
    """Replace all backed-up collections with the backup's content."""
    try:
        return service.restore_backup(db, backup_id, actor=actor)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
    except BackupFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.delete("/{backup_id}", status_code=204)
async def delete_backup(
    backup_id: str,
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_session),
    service: BackupService = Depends(get_backup_service),
) -> None:
    try:
        service.delete_backup(db, backup_id, actor=actor)
    except BackupNotFoundError:
        raise HTTPException(status_code=404, detail="Backup not found")
