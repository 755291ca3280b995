"""Audit service for recording payment state changes."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.repositories.audit_log_repository import AuditLogRepository

RESOURCE_PAYMENT = "payment"


class AuditService:
    """Service for recording audit trail entries."""

    def __init__(self, db: Session):
        self.repo = AuditLogRepository(db)

    def log_status_change(
        self,
        resource_type: str,
        resource_id: UUID,
        old_status: str,
        new_status: str,
        actor_type: str = "system",
        actor_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a status change event."""
        self.repo.create(
            resource_type=resource_type,
            resource_id=resource_id,
            action="status_changed",
            changes={"status": {"old": old_status, "new": new_status}},
            actor_type=actor_type,
            actor_id=actor_id,
            metadata=metadata,
        )

    def log_ignored_outcome(
        self,
        payment_id: UUID,
        current_status: str,
        attempted_status: str,
        source: str,
        raw_payload: Any = None,
    ) -> None:
        """Record an outcome that arrived after the payment had already settled."""
        self.repo.create(
            resource_type=RESOURCE_PAYMENT,
            resource_id=payment_id,
            action="outcome_ignored",
            changes={"status": {"current": current_status, "attempted": attempted_status}},
            actor_type=source,
            metadata={"raw_payload": raw_payload},
        )
