"""Tests for the audit log writer (backend/app/services/audit.py)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlmodel import Session, select

from app.models.audit import AuditAction, AuditLog, AuditSeverity, AuditStatus
from app.services.audit import (
    Actor,
    AuditService,
    default_severity,
)


class TestDefaultSeverity:
    @pytest.mark.parametrize(
        ("action", "status", "expected"),
        [
            (AuditAction.LOGIN_FAILED, AuditStatus.FAILURE, AuditSeverity.CRITICAL),
            (AuditAction.AUTH_FAILURE, AuditStatus.FAILURE, AuditSeverity.CRITICAL),
            (AuditAction.UPDATE, AuditStatus.FAILURE, AuditSeverity.WARN),
            (AuditAction.DELETE, AuditStatus.SUCCESS, AuditSeverity.WARN),
            (AuditAction.BACKUP_RESTORE, AuditStatus.SUCCESS, AuditSeverity.WARN),
            (AuditAction.BACKUP_DOWNLOAD, AuditStatus.SUCCESS, AuditSeverity.WARN),
            (AuditAction.IMPORT, AuditStatus.SUCCESS, AuditSeverity.WARN),
            (AuditAction.CREATE, AuditStatus.SUCCESS, AuditSeverity.INFO),
            (AuditAction.READ, AuditStatus.SUCCESS, AuditSeverity.INFO),
        ],
    )
    def test_mapping(self, action, status, expected) -> None:
        assert default_severity(action, status) == expected


class TestAuditService:
    def test_log_persists_entry(self, session: Session) -> None:
        actor = Actor(
            user_id="u1",
            user_name="Ana",
            user_email="ana@agency.io",
            ip_address="10.0.0.1",
            user_agent="pytest",
        )
        entry = AuditService(session).log(
            AuditAction.DELETE, "CLIENT", actor=actor, resource_id="c1", details={"k": "v"}
        )

        assert entry is not None
        stored = session.exec(select(AuditLog)).one()
        assert stored.user_id == "u1"
        assert stored.user_email == "ana@agency.io"
        assert stored.action == "DELETE"
        assert stored.resource == "CLIENT"
        assert stored.resource_id == "c1"
        assert stored.details == {"k": "v"}
        assert stored.ip_address == "10.0.0.1"
        assert stored.severity == "WARN"
        assert stored.status == "SUCCESS"

    def test_defaults_to_system_actor(self, session: Session) -> None:
        entry = AuditService(session).log(AuditAction.CREATE, "BACKUP")
        assert entry.user_id == "system"
        assert entry.user_email == "system@internal"

    def test_auth_failure(self, session: Session) -> None:
        entry = AuditService(session).log_auth_failure("TASK", "not allowed", attempted_action="delete")
        assert entry.action == "AUTH_FAILURE"
        assert entry.severity == "CRITICAL"
        assert entry.status == "FAILURE"
        assert entry.details == {"reason": "not allowed", "attemptedAction": "delete"}

    def test_write_failure_never_propagates(self) -> None:
        """A broken audit sink must not break the audited operation."""
        broken = MagicMock(spec=Session)
        broken.commit.side_effect = RuntimeError("disk full")
        assert AuditService(broken).log(AuditAction.CREATE, "TASK") is None
        broken.rollback.assert_called_once()

    def test_list_entries_filters_and_orders(self, session: Session) -> None:
        service = AuditService(session)
        service.log(AuditAction.CREATE, "TASK", resource_id="1")
        service.log(AuditAction.DELETE, "TASK", resource_id="2")
        service.log(AuditAction.CREATE, "CLIENT", resource_id="3")

        page = service.list_entries()
        assert page.total == 3
        assert [e.resource_id for e in page.items] == ["3", "2", "1"]

        tasks = service.list_entries(resource="TASK")
        assert tasks.total == 2

        creates = service.list_entries(action="CREATE", resource="TASK")
        assert [e.resource_id for e in creates.items] == ["1"]

        warn = service.list_entries(severity="WARN")
        assert [e.resource_id for e in warn.items] == ["2"]

    def test_list_entries_paginates(self, session: Session) -> None:
        service = AuditService(session)
        for i in range(5):
            service.log(AuditAction.READ, "TASK", resource_id=str(i))
        page = service.list_entries(limit=2, offset=1)
        assert page.total == 5
        assert len(page.items) == 2
        assert page.limit == 2
        assert page.offset == 1
