from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_actor, get_audit_service, get_maintenance, require_auth
from app.models.audit import AuditAction
from app.models.registry import UnknownCollectionError
from app.services.audit import Actor, AuditService
from app.services.maintenance import EncryptionMaintenance

router = APIRouter(prefix="/api/maintenance/encryption", tags=["maintenance"])


@router.get("")
async def scan_encryption(
    collection: str | None = None,
    _token: str = Depends(require_auth),
    maintenance: EncryptionMaintenance = Depends(get_maintenance),
) -> dict:
    """Report legacy, plaintext and undecryptable sensitive values."""
    try:
        reports = maintenance.scan(collection)
    except UnknownCollectionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"collections": [r.to_dict() for r in reports]}


@router.post("/repair")
async def repair_encryption(
    collection: str | None = None,
    _token: str = Depends(require_auth),
    actor: Actor = Depends(get_actor),
    maintenance: EncryptionMaintenance = Depends(get_maintenance),
    audit: AuditService = Depends(get_audit_service),
) -> dict:
    """Re-encrypt legacy values, encrypt stray plaintext, back-fill blind indexes."""
    try:
        reports = maintenance.repair(collection)
    except UnknownCollectionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    audit.log(
        AuditAction.UPDATE,
        "ENCRYPTION",
        actor=actor,
        details={
            r.collection: {
                "reencrypted": r.reencrypted,
                "encrypted": r.encrypted,
                "hashesBackfilled": r.hashes_backfilled,
                "undecryptable": len(r.undecryptable),
            }
            for r in reports
        },
    )
    return {"collections": [r.to_dict() for r in reports]}
