import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, func

from paybridge.core.database import Base
from paybridge.models.shared import Money, UUIDType


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    invoice_number = Column(String(50), unique=True, index=True, nullable=False)
    client_id = Column(
        UUIDType, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value, index=True)

    # Amounts; paid_amount only ever grows, through completed payments
    total_amount = Column(Money, nullable=False, default=0)
    paid_amount = Column(Money, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="KES")

    due_date = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
