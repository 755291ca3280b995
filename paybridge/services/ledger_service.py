"""Invoice ledger: apply a completed payment's amount to its invoice."""

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.invoice import Invoice, InvoiceStatus
from paybridge.models.shared import utc_now
from paybridge.repositories.invoice_repository import InvoiceRepository

logger = logging.getLogger(__name__)


def classify_invoice_status(total_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    """``paid`` once nothing is owed, ``partially_paid`` otherwise."""
    balance = Decimal(str(total_amount)) - Decimal(str(paid_amount))
    if balance <= 0:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIALLY_PAID


class LedgerService:
    """Applies completed payments to invoices.

    ``apply_payment`` has no idempotency check of its own: calling it twice for
    one payment credits the invoice twice. The orchestrator's conditional
    payment transition guarantees it runs at most once per payment. It also
    does not commit, so the credit lands in the same transaction as that
    transition.
    """

    def __init__(self, db: Session):
        self.db = db
        self.invoice_repo = InvoiceRepository(db)

    def apply_payment(self, invoice_id: UUID, amount: Decimal) -> Invoice | None:
        invoice = self.invoice_repo.increment_paid_amount(invoice_id, amount)
        if invoice is None:
            logger.error("Cannot credit %s to missing invoice %s", amount, invoice_id)
            return None

        status = classify_invoice_status(
            Decimal(str(invoice.total_amount)), Decimal(str(invoice.paid_amount))
        )
        paid_at = utc_now() if status == InvoiceStatus.PAID else None
        self.invoice_repo.set_status(invoice_id, status.value, paid_at=paid_at, commit=False)
        self.db.refresh(invoice)

        logger.info(
            "Invoice %s credited %s: paid_amount=%s status=%s",
            invoice.invoice_number,
            amount,
            invoice.paid_amount,
            status.value,
        )
        return invoice
