"""Notification model for actionable in-app notifications."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, String, func

from paybridge.core.database import Base
from paybridge.models.shared import UUIDType, generate_uuid


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


class Notification(Base):
    """Notification model - in-app notifications delivered to a client."""

    __tablename__ = "notifications"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    recipient_id = Column(
        UUIDType,
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(50), nullable=False, index=True)
    subject = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    actions = Column(JSON, nullable=False, default=list)
    context = Column(JSON, nullable=True)
    notification_metadata = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
