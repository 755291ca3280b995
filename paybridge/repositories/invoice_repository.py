from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.models.invoice import Invoice


class InvoiceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, invoice_id: UUID) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def increment_paid_amount(self, invoice_id: UUID, amount: Decimal) -> Invoice | None:
        """Atomically add ``amount`` to the invoice's paid amount.

        Does not commit: the row stays locked by the surrounding transaction
        until the caller commits, so the returned values are current.
        """
        updated = (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id)
            .update(
                {Invoice.paid_amount: Invoice.paid_amount + amount},
                synchronize_session=False,
            )
        )
        if not updated:
            return None
        invoice = self.get_by_id(invoice_id)
        if invoice is not None:
            self.db.refresh(invoice)
        return invoice

    def set_status(
        self,
        invoice_id: UUID,
        status: str,
        paid_at: datetime | None = None,
        commit: bool = True,
    ) -> None:
        values: dict[object, object] = {Invoice.status: status}
        if paid_at is not None:
            values[Invoice.paid_at] = paid_at
        self.db.query(Invoice).filter(Invoice.id == invoice_id).update(
            values, synchronize_session="fetch"
        )
        if commit:
            self.db.commit()
