from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_audit_service, require_auth
from app.models.audit import AuditLogPage
from app.services.audit import AuditService

router = APIRouter(prefix="/api/audit-logs", tags=["audit"])


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action: str | None = None,
    resource: str | None = None,
    severity: str | None = None,
    user_id: str | None = None,
    _token: str = Depends(require_auth),
    service: AuditService = Depends(get_audit_service),
) -> AuditLogPage:
    """Audit entries, newest first."""
    return service.list_entries(
        limit=limit,
        offset=offset,
        action=action,
        resource=resource,
        severity=severity,
        user_id=user_id,
    )
