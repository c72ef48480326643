"""FastAPI dependency injection for auth, caller identity and services."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from app.config import get_settings
from app.db import get_session
from app.services.audit import Actor, AuditService
from app.services.backup import BackupService
from app.services.encryption import FieldEncryptionEngine
from app.services.maintenance import EncryptionMaintenance
from app.services.records import RecordStore

_bearer_scheme = HTTPBearer(auto_error=False)


def get_actor(request: Request) -> Actor:
    """Caller identity for audit entries, taken from request headers."""
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = (
        forwarded.split(",")[0].strip()
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else None)
        or "unknown"
    )
    return Actor(
        user_id=request.headers.get("x-actor-id") or "api",
        user_name=request.headers.get("x-actor-name") or "API client",
        user_email=request.headers.get("x-actor-email") or "api@internal",
        ip_address=ip,
        user_agent=request.headers.get("user-agent") or "unknown",
    )


def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
) -> str:
    """Validate the shared API bearer token.

    Raises HTTPException 401 if the token is missing, wrong, or if no
    token is configured at all. Every rejection is audited as AUTH_FAILURE.
    """
    expected = get_settings().api_token
    if credentials is None or not expected:
        reason = "Not authenticated"
    elif not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        reason = "Invalid token"
    else:
        return credentials.credentials

    AuditService(session).log_auth_failure(
        "API",
        reason,
        actor=actor,
        attempted_action=f"{request.method} {request.url.path}",
    )
    raise HTTPException(status_code=401, detail=reason)


def get_field_encryption(request: Request) -> FieldEncryptionEngine:
    """Inject the FieldEncryptionEngine built at startup."""
    engine = getattr(request.app.state, "field_encryption", None)
    if engine is None:
        raise HTTPException(
            status_code=503,
            detail="Field encryption unavailable",
        )
    return engine


def get_record_store(
    session: Session = Depends(get_session),
    engine: FieldEncryptionEngine = Depends(get_field_encryption),
) -> RecordStore:
    return RecordStore(session, engine)


def get_audit_service(session: Session = Depends(get_session)) -> AuditService:
    return AuditService(session)


def get_maintenance(
    session: Session = Depends(get_session),
    engine: FieldEncryptionEngine = Depends(get_field_encryption),
) -> EncryptionMaintenance:
    return EncryptionMaintenance(session, engine)


def get_backup_service(request: Request) -> BackupService:
    """Inject the BackupService singleton from app state."""
    svc = getattr(request.app.state, "backup_service", None)
    if svc is None:
        raise HTTPException(
            status_code=503,
            detail="Backup service unavailable",
        )
    return svc
