from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from app.dependencies import get_actor, get_audit_service, get_record_store, require_auth
from app.models.audit import AuditAction
from app.models.document import RecordRead
from app.models.registry import CollectionSpec, UnknownCollectionError, get_collection
from app.services.audit import Actor, AuditService
from app.services.records import InvalidRecordError, RecordStore, StoredRecord

router = APIRouter(prefix="/api/records", tags=["records"])


def _collection(collection: str) -> CollectionSpec:
    try:
        return get_collection(collection)
    except UnknownCollectionError:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")


def _read(record: StoredRecord) -> RecordRead:
    return RecordRead.model_validate(record)


@router.get("/{collection}", response_model=list[RecordRead])
async def list_records(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    store: RecordStore = Depends(get_record_store),
) -> list[RecordRead]:
    return [_read(r) for r in store.list_records(spec.name, limit=limit, offset=offset)]


@router.get("/{collection}/lookup", response_model=list[RecordRead])
async def lookup_records(
    field: str = Query(..., min_length=1),
    value: str = Query(..., min_length=1),
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    store: RecordStore = Depends(get_record_store),
) -> list[RecordRead]:
    """Exact-match search on an encrypted field via its blind index."""
    try:
        records = store.find_by_blind_index(spec.name, field, value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [_read(r) for r in records]


@router.post("/{collection}", response_model=RecordRead, status_code=201)
async def create_record(
    data: dict[str, Any] = Body(...),
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    actor: Actor = Depends(get_actor),
    store: RecordStore = Depends(get_record_store),
    audit: AuditService = Depends(get_audit_service),
) -> RecordRead:
    try:
        record = store.create(spec.name, data)
    except InvalidRecordError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    audit.log(
        AuditAction.CREATE,
        spec.resource,
        actor=actor,
        resource_id=record.id,
        details={"fields": sorted(data.keys())},
    )
    return _read(record)


@router.get("/{collection}/{record_id}", response_model=RecordRead)
async def get_record(
    record_id: str,
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    actor: Actor = Depends(get_actor),
    store: RecordStore = Depends(get_record_store),
    audit: AuditService = Depends(get_audit_service),
) -> RecordRead:
    record = store.get(spec.name, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    if spec.sensitive_fields:
        audit.log(AuditAction.READ, spec.resource, actor=actor, resource_id=record_id)
    return _read(record)


@router.patch("/{collection}/{record_id}", response_model=RecordRead)
async def update_record(
    record_id: str,
    patch: dict[str, Any] = Body(...),
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    actor: Actor = Depends(get_actor),
    store: RecordStore = Depends(get_record_store),
    audit: AuditService = Depends(get_audit_service),
) -> RecordRead:
    try:
        record = store.update(spec.name, record_id, patch)
    except InvalidRecordError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    audit.log(
        AuditAction.UPDATE,
        spec.resource,
        actor=actor,
        resource_id=record_id,
        details={"fields": sorted(patch.keys())},
    )
    return _read(record)


@router.delete("/{collection}/{record_id}", status_code=204)
async def delete_record(
    record_id: str,
    _token: str = Depends(require_auth),
    spec: CollectionSpec = Depends(_collection),
    actor: Actor = Depends(get_actor),
    store: RecordStore = Depends(get_record_store),
    audit: AuditService = Depends(get_audit_service),
) -> None:
    if not store.delete(spec.name, record_id):
        raise HTTPException(status_code=404, detail="Record not found")
    audit.log(AuditAction.DELETE, spec.resource, actor=actor, resource_id=record_id)
