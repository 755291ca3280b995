"""Payment model for tracking invoice payment attempts."""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text, func

from paybridge.core.database import Base
from paybridge.models.shared import Money, UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    """Payment status enum. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value})


class PaymentMethod(str, Enum):
    """Supported payment processors."""

    MPESA = "mpesa"  # Mobile-money STK push (Safaricom Daraja)
    PAYSTACK = "paystack"  # Card/bank hosted checkout


class Payment(Base):
    """Payment model - one attempt to settle (part of) an invoice."""

    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    payment_number = Column(String(20), unique=True, index=True, nullable=False)
    invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    client_id = Column(
        UUIDType, ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Payment details
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    method = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # Processor correlation ids, one namespace per method
    mpesa_merchant_request_id = Column(String(100), nullable=True)
    mpesa_checkout_request_id = Column(String(100), nullable=True, unique=True, index=True)
    paystack_reference = Column(String(100), nullable=True, unique=True, index=True)
    authorization_url = Column(Text, nullable=True)

    # Settlement details, populated on completion
    transaction_id = Column(String(100), nullable=True, index=True)
    reference = Column(String(255), nullable=True)

    # Last callback/query body received, kept for audit
    raw_payload = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    notes = Column(String(500), nullable=True)

    # Timestamps
    payment_date = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def processor_refs(self) -> dict[str, dict[str, Any]]:
        """Correlation ids grouped by processor."""
        refs: dict[str, dict[str, Any]] = {}
        if self.mpesa_checkout_request_id or self.mpesa_merchant_request_id:
            refs["mpesa"] = {
                "merchant_request_id": self.mpesa_merchant_request_id,
                "checkout_request_id": self.mpesa_checkout_request_id,
            }
        if self.paystack_reference:
            refs["paystack"] = {
                "reference": self.paystack_reference,
                "authorization_url": self.authorization_url,
            }
        return refs

    @property
    def correlation_id(self) -> str | None:
        """The id the processor will quote back on callback or query."""
        if self.method == PaymentMethod.MPESA.value:
            return self.mpesa_checkout_request_id  # type: ignore[return-value]
        return self.paystack_reference  # type: ignore[return-value]
