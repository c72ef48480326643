"""Audit log writer.

Records who did what, when, from where. Writing an audit entry must never
break the operation being audited, so failures are logged and swallowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlmodel import Session, col, func, select

from app.models.audit import (
    AuditAction,
    AuditLog,
    AuditLogPage,
    AuditLogRead,
    AuditSeverity,
    AuditStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Actor:
    """Caller identity attached to every audit entry."""

    user_id: str = "system"
    user_name: str = "System"
    user_email: str = "system@internal"
    ip_address: str = "unknown"
    user_agent: str = "unknown"


SYSTEM_ACTOR = Actor()


def default_severity(action: AuditAction, status: AuditStatus) -> AuditSeverity:
    """Failures are at least WARN; destructive or bulk actions are WARN."""
    if status == AuditStatus.FAILURE:
        if action in (AuditAction.LOGIN_FAILED, AuditAction.AUTH_FAILURE):
            return AuditSeverity.CRITICAL
        return AuditSeverity.WARN
    if action in (
        AuditAction.DELETE,
        AuditAction.BACKUP_DOWNLOAD,
        AuditAction.BACKUP_RESTORE,
        AuditAction.IMPORT,
    ):
        return AuditSeverity.WARN
    return AuditSeverity.INFO


class AuditService:
    def __init__(self, session: Session) -> None:
        self._session = session

    def log(
        self,
        action: AuditAction,
        resource: str,
        actor: Actor = SYSTEM_ACTOR,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        severity: AuditSeverity | None = None,
        status: AuditStatus = AuditStatus.SUCCESS,
    ) -> AuditLog | None:
        """Persist an audit entry. Returns None if it could not be written."""
        severity = severity or default_severity(action, status)
        try:
            entry = AuditLog(
                user_id=actor.user_id,
                user_name=actor.user_name,
                user_email=actor.user_email,
                action=action.value,
                resource=resource,
                resource_id=resource_id,
                details=details,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                severity=severity.value,
                status=status.value,
            )
            self._session.add(entry)
            self._session.commit()
            self._session.refresh(entry)
        except Exception:
            logger.exception("Failed to write audit log for %s on %s", action.value, resource)
            self._session.rollback()
            return None

        log_fn = logger.warning if severity != AuditSeverity.INFO else logger.info
        log_fn(
            "AUDIT %s %s on %s%s by %s [%s]",
            severity.value,
            action.value,
            resource,
            f" ({resource_id})" if resource_id else "",
            actor.user_email,
            status.value,
        )
        return entry

    def log_auth_failure(
        self,
        resource: str,
        reason: str,
        actor: Actor = SYSTEM_ACTOR,
        resource_id: str | None = None,
        attempted_action: str | None = None,
    ) -> AuditLog | None:
        return self.log(
            AuditAction.AUTH_FAILURE,
            resource,
            actor=actor,
            resource_id=resource_id,
            details={"reason": reason, "attemptedAction": attempted_action},
            severity=AuditSeverity.CRITICAL,
            status=AuditStatus.FAILURE,
        )

    def list_entries(
        self,
        limit: int = 50,
        offset: int = 0,
        action: str | None = None,
        resource: str | None = None,
        severity: str | None = None,
        user_id: str | None = None,
    ) -> AuditLogPage:
        """Newest-first page of audit entries with optional filters."""
        conditions = []
        if action:
            conditions.append(AuditLog.action == action)
        if resource:
            conditions.append(AuditLog.resource == resource)
        if severity:
            conditions.append(AuditLog.severity == severity)
        if user_id:
            conditions.append(AuditLog.user_id == user_id)

        total = self._session.exec(
            select(func.count()).select_from(AuditLog).where(*conditions)
        ).one()
        rows = self._session.exec(
            select(AuditLog)
            .where(*conditions)
            .order_by(col(AuditLog.created_at).desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return AuditLogPage(
            items=[AuditLogRead.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=offset,
        )
