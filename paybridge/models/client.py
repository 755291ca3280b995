"""Client model - the payer an invoice is issued to."""

from sqlalchemy import Boolean, Column, DateTime, String, func

from paybridge.core.database import Base
from paybridge.models.shared import UUIDType, generate_uuid


class Client(Base):
    __tablename__ = "clients"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(20), nullable=True)

    # Notification preferences
    in_app_notifications = Column(Boolean, nullable=False, default=True)

    last_payment_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
