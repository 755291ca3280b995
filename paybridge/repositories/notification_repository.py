"""Repository for Notification CRUD operations."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.notification import Notification, NotificationStatus
from paybridge.models.shared import generate_uuid, utc_now


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        recipient_id: UUID,
        category: str,
        subject: str,
        message: str,
        actions: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            id=generate_uuid(),
            recipient_id=recipient_id,
            category=category,
            subject=subject,
            message=message,
            actions=actions or [],
            context=context,
            notification_metadata=metadata,
            status=NotificationStatus.PENDING.value,
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def mark_sent(self, notification: Notification) -> Notification:
        notification.status = NotificationStatus.SENT.value  # type: ignore[assignment]
        notification.sent_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(notification)
        return notification
