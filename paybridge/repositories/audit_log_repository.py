"""Repository for AuditLog CRUD operations."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.audit_log import AuditLog
from paybridge.models.shared import generate_uuid


class AuditLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        resource_type: str,
        resource_id: UUID,
        action: str,
        changes: dict[str, Any],
        actor_type: str,
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLog:
        audit_log = AuditLog(
            id=generate_uuid(),
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            changes=changes,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata_=metadata,
        )
        self.db.add(audit_log)
        self.db.commit()
        self.db.refresh(audit_log)
        return audit_log
