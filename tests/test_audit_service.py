"""Tests for AuditLogRepository and AuditService."""

from uuid import uuid4

import pytest

from paybridge.models.audit_log import AuditLog
from paybridge.repositories.audit_log_repository import AuditLogRepository
from paybridge.services.audit_service import RESOURCE_PAYMENT, AuditService


@pytest.fixture
def repo(db_session):
    """Create an AuditLogRepository instance."""
    return AuditLogRepository(db_session)


@pytest.fixture
def service(db_session):
    """Create an AuditService instance."""
    return AuditService(db_session)


def logs_for(db_session, resource_type, resource_id):
    return (
        db_session.query(AuditLog)
        .filter(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
        .all()
    )


# ---------------------------------------------------------------------------
# Repository tests
# ---------------------------------------------------------------------------


class TestAuditLogRepository:
    def test_create(self, repo, db_session):
        resource_id = uuid4()
        repo.create(
            resource_type="payment",
            resource_id=resource_id,
            action="status_changed",
            changes={"status": {"old": "pending", "new": "failed"}},
            actor_type="sweep",
        )
        repo.create(
            resource_type="payment",
            resource_id=uuid4(),
            action="status_changed",
            changes={},
            actor_type="webhook",
        )

        logs = logs_for(db_session, "payment", resource_id)

        assert len(logs) == 1
        assert logs[0].actor_type == "sweep"
        assert logs[0].actor_id is None
        assert logs[0].metadata_ is None


# ---------------------------------------------------------------------------
# Service tests
# ---------------------------------------------------------------------------


class TestAuditService:
    def test_log_status_change(self, service, db_session):
        payment_id = uuid4()
        service.log_status_change(
            resource_type=RESOURCE_PAYMENT,
            resource_id=payment_id,
            old_status="pending",
            new_status="completed",
            actor_type="webhook",
            metadata={"transaction_id": "NLJ7RT61SV"},
        )

        (log,) = logs_for(db_session, RESOURCE_PAYMENT, payment_id)
        assert log.action == "status_changed"
        assert log.changes == {"status": {"old": "pending", "new": "completed"}}
        assert log.metadata_ == {"transaction_id": "NLJ7RT61SV"}

    def test_log_status_change_defaults_to_system_actor(self, service, db_session):
        payment_id = uuid4()
        service.log_status_change(RESOURCE_PAYMENT, payment_id, "pending", "failed")

        (log,) = logs_for(db_session, RESOURCE_PAYMENT, payment_id)
        assert log.actor_type == "system"

    def test_log_ignored_outcome(self, service, db_session):
        payment_id = uuid4()
        payload = {"Body": {"stkCallback": {"ResultCode": 0}}}
        service.log_ignored_outcome(
            payment_id=payment_id,
            current_status="failed",
            attempted_status="completed",
            source="webhook",
            raw_payload=payload,
        )

        (log,) = logs_for(db_session, RESOURCE_PAYMENT, payment_id)
        assert log.action == "outcome_ignored"
        assert log.changes == {"status": {"current": "failed", "attempted": "completed"}}
        assert log.actor_type == "webhook"
        assert log.metadata_ == {"raw_payload": payload}
