"""Payment repository for data access."""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.payment import Payment, PaymentMethod, PaymentStatus
from paybridge.models.shared import utc_now
from paybridge.repositories.payment_sequence_repository import PaymentSequenceRepository
from paybridge.schemas.payment import PaymentUpdate


def format_payment_number(year: int, sequence: int) -> str:
    return f"PAY-{year}-{sequence:04d}"


class PaymentRepository:
    """Repository for Payment model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: UUID) -> Payment | None:
        """Get a payment by ID."""
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def get_by_mpesa_checkout_request_id(self, checkout_request_id: str) -> Payment | None:
        """Get a payment by its STK push CheckoutRequestID."""
        return (
            self.db.query(Payment)
            .filter(Payment.mpesa_checkout_request_id == checkout_request_id)
            .first()
        )

    def get_by_paystack_reference(self, reference: str) -> Payment | None:
        """Get a payment by its Paystack transaction reference."""
        return self.db.query(Payment).filter(Payment.paystack_reference == reference).first()

    def get_by_correlation_id(self, method: PaymentMethod, correlation_id: str) -> Payment | None:
        if method == PaymentMethod.MPESA:
            return self.get_by_mpesa_checkout_request_id(correlation_id)
        return self.get_by_paystack_reference(correlation_id)

    def create(
        self,
        invoice_id: UUID,
        client_id: UUID,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
    ) -> Payment:
        """Create a pending payment with the next number for the current year."""
        year = utc_now().year
        sequence = PaymentSequenceRepository(self.db).next_value(year)

        payment = Payment(
            payment_number=format_payment_number(year, sequence),
            invoice_id=invoice_id,
            client_id=client_id,
            amount=amount,
            currency=currency,
            method=method.value,
            status=PaymentStatus.PENDING.value,
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)
        return payment

    def set_processor_refs(
        self,
        payment_id: UUID,
        mpesa_merchant_request_id: str | None = None,
        mpesa_checkout_request_id: str | None = None,
        paystack_reference: str | None = None,
        authorization_url: str | None = None,
    ) -> Payment | None:
        """Store the correlation ids returned by the processor."""
        payment = self.get_by_id(payment_id)
        if not payment:
            return None

        if mpesa_merchant_request_id:
            payment.mpesa_merchant_request_id = mpesa_merchant_request_id  # type: ignore[assignment]
        if mpesa_checkout_request_id:
            payment.mpesa_checkout_request_id = mpesa_checkout_request_id  # type: ignore[assignment]
        if paystack_reference:
            payment.paystack_reference = paystack_reference  # type: ignore[assignment]
        if authorization_url:
            payment.authorization_url = authorization_url  # type: ignore[assignment]

        self.db.commit()
        self.db.refresh(payment)
        return payment

    def transition(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        raw_payload: dict[str, Any] | None = None,
        transaction_id: str | None = None,
        reference: str | None = None,
        failure_reason: str | None = None,
        commit: bool = True,
    ) -> bool:
        """Move a pending payment to a terminal status.

        A single conditional UPDATE (``WHERE status = 'pending'``), so of two
        racing transitions exactly one matches a row. Returns True if this
        call performed the transition.
        """
        values: dict[Any, Any] = {
            Payment.status: status.value,
            Payment.updated_at: utc_now(),
        }
        if raw_payload is not None:
            values[Payment.raw_payload] = raw_payload
        if transaction_id:
            values[Payment.transaction_id] = transaction_id
        if reference:
            values[Payment.reference] = reference
        if failure_reason:
            values[Payment.failure_reason] = failure_reason
        if status == PaymentStatus.COMPLETED:
            values[Payment.completed_at] = utc_now()

        updated = (
            self.db.query(Payment)
            .filter(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .update(values, synchronize_session="fetch")
        )
        if commit:
            self.db.commit()
        return bool(updated)

    def update(self, payment_id: UUID, data: PaymentUpdate) -> Payment | None:
        """Update administrative fields on a payment."""
        payment = self.get_by_id(payment_id)
        if not payment:
            return None

        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(payment, key, value)

        self.db.commit()
        self.db.refresh(payment)
        return payment

    def get_stale_pending(self, created_before: datetime, limit: int = 100) -> list[Payment]:
        """Pending payments the processor knows about, older than the cutoff."""
        return (
            self.db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < created_before,
                (Payment.mpesa_checkout_request_id.isnot(None))
                | (Payment.paystack_reference.isnot(None)),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
            .all()
        )

    def get_uncorrelated_pending(self, created_before: datetime, limit: int = 100) -> list[Payment]:
        """Pending payments whose processor request never returned an id."""
        return (
            self.db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < created_before,
                Payment.mpesa_checkout_request_id.is_(None),
                Payment.paystack_reference.is_(None),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
            .all()
        )

    def delete(self, payment_id: UUID) -> bool:
        """Delete a payment (completed payments cannot be deleted)."""
        payment = self.get_by_id(payment_id)
        if not payment:
            return False
        if payment.status == PaymentStatus.COMPLETED.value:
            raise ValueError("Completed payments cannot be deleted")

        self.db.delete(payment)
        self.db.commit()
        return True
