"""Tests for the invoice ledger update."""

import uuid
from decimal import Decimal

import pytest

from paybridge.models.invoice import InvoiceStatus
from paybridge.services.ledger_service import LedgerService, classify_invoice_status


class TestClassifyInvoiceStatus:
    @pytest.mark.parametrize(
        ("total", "paid", "expected"),
        [
            ("100", "40", InvoiceStatus.PARTIALLY_PAID),
            ("100", "100", InvoiceStatus.PAID),
            ("100", "100.01", InvoiceStatus.PAID),
            ("100", "0.01", InvoiceStatus.PARTIALLY_PAID),
        ],
    )
    def test_classification(self, total, paid, expected):
        assert classify_invoice_status(Decimal(total), Decimal(paid)) == expected


class TestLedgerService:
    def test_partial_then_full_payment(self, db_session, invoice):
        ledger = LedgerService(db_session)

        updated = ledger.apply_payment(invoice.id, Decimal("40"))
        db_session.commit()
        assert updated.paid_amount == Decimal("40.00")
        assert updated.status == InvoiceStatus.PARTIALLY_PAID.value
        assert updated.paid_at is None

        updated = ledger.apply_payment(invoice.id, Decimal("60"))
        db_session.commit()
        assert updated.paid_amount == Decimal("100.00")
        assert updated.status == InvoiceStatus.PAID.value
        assert updated.paid_at is not None

    def test_does_not_commit(self, db_session, invoice):
        LedgerService(db_session).apply_payment(invoice.id, Decimal("40"))
        db_session.rollback()

        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.status == InvoiceStatus.SENT.value

    def test_has_no_idempotency_check_of_its_own(self, db_session, invoice):
        ledger = LedgerService(db_session)
        ledger.apply_payment(invoice.id, Decimal("30"))
        ledger.apply_payment(invoice.id, Decimal("30"))
        db_session.commit()

        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("60.00")

    def test_missing_invoice(self, db_session):
        assert LedgerService(db_session).apply_payment(uuid.uuid4(), Decimal("10")) is None
