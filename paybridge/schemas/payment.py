"""Payment schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from paybridge.models.payment import PaymentMethod


class PaymentInitiate(BaseModel):
    """Schema for initiating a processor charge against an invoice."""

    invoice_id: UUID
    method: PaymentMethod
    amount: Decimal = Field(..., description="Amount to charge, at most the invoice balance")
    payer_phone: str | None = Field(default=None, description="Required for M-Pesa")
    payer_email: str | None = Field(default=None, description="Required for Paystack")
    callback_url: str | None = Field(default=None, description="Override the default callback")


class PaymentInitiateResponse(BaseModel):
    """Schema returned once a charge has been handed to the processor."""

    payment_id: UUID
    payment_number: str
    status: str
    processor_correlation: dict[str, Any]


class PaymentUpdate(BaseModel):
    """Administrative fields that stay editable after a payment settles.

    The processor reference is written only by a settling transition.
    """

    model_config = ConfigDict(extra="forbid")

    notes: str | None = Field(default=None, max_length=500)


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_number: str
    invoice_id: UUID
    client_id: UUID
    amount: Decimal
    currency: str
    method: str
    status: str
    processor_refs: dict[str, dict[str, Any]]
    transaction_id: str | None = None
    reference: str | None = None
    failure_reason: str | None = None
    notes: str | None = None
    payment_date: datetime | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class PaymentReceiptResponse(BaseModel):
    """Receipt for a completed payment."""

    payment_id: UUID
    payment_number: str
    invoice_id: UUID
    invoice_number: str
    amount: Decimal
    currency: str
    method: str
    transaction_id: str | None = None
    paid_at: datetime | None = None
    invoice_status: str
    invoice_balance: Decimal


class ProcessorStatusResponse(BaseModel):
    """Result of polling a processor for a payment's status."""

    status: str
    processor_state: str
    result_code: str | None = None
    result_desc: str | None = None
    payment_id: UUID
    invoice_id: UUID
    applied: bool
    raw: dict[str, Any] | None = None
