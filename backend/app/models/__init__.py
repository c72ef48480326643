from __future__ import annotations

from app.models.document import BlindIndexEntry, Document  # noqa: F401
from app.models.audit import AuditLog  # noqa: F401
from app.models.backup import BackupRecord  # noqa: F401
