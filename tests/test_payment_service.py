"""Tests for the payment orchestrator: initiate, apply outcome, poll and sweep."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from paybridge.models.audit_log import AuditLog
from paybridge.models.client import Client
from paybridge.models.invoice import InvoiceStatus
from paybridge.models.notification import Notification, NotificationStatus
from paybridge.models.payment import Payment, PaymentMethod, PaymentStatus
from paybridge.repositories.payment_repository import PaymentRepository
from paybridge.schemas.payment import PaymentInitiate
from paybridge.services.event_broadcaster import EventBroadcaster
from paybridge.services.payment_provider import (
    ChargeResult,
    ProcessorError,
    ProcessorState,
    StatusResult,
)
from paybridge.services.payment_providers.mpesa import MpesaProvider
from paybridge.services.payment_providers.paystack import PaystackProvider
from paybridge.services.payment_service import (
    ABANDONED_REASON,
    ClientNotFoundError,
    InvoiceAlreadyPaidError,
    InvoiceNotFoundError,
    OutcomeStatus,
    PaymentNotFoundError,
    PaymentService,
    PaymentValidationError,
)

CHECKOUT_ID = "ws_CO_191220191020363925"
FACTORY = "paybridge.services.payment_service.get_payment_provider"


def mpesa_stub(charge_result=None, charge_error=None, status=None) -> MagicMock:
    """Provider double with real M-Pesa callback parsing."""
    provider = MagicMock()
    provider.charge = AsyncMock(
        return_value=charge_result
        or ChargeResult(
            correlation_id=CHECKOUT_ID,
            merchant_request_id="29115-34620561-1",
            raw={"ResponseCode": "0"},
        ),
        side_effect=charge_error,
    )
    provider.query_status = AsyncMock(return_value=status)
    provider.parse_callback.side_effect = MpesaProvider().parse_callback
    return provider


def paystack_stub(status=None) -> MagicMock:
    provider = MagicMock()
    provider.charge = AsyncMock(
        return_value=ChargeResult(
            correlation_id="INV-1-abc",
            authorization_url="https://checkout.paystack.com/abc",
            raw={"status": True},
        )
    )
    provider.query_status = AsyncMock(return_value=status)
    provider.parse_callback.side_effect = PaystackProvider().parse_callback
    return provider


def stk_success(checkout_id=CHECKOUT_ID, amount=40):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_id,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }


def stk_failure(checkout_id=CHECKOUT_ID):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_id,
                "ResultCode": 1032,
                "ResultDesc": "Request cancelled by user",
            }
        }
    }


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(db_session, events):
    broadcaster = EventBroadcaster()
    broadcaster.subscribe(lambda event, payload, room: events.append((event, payload, room)))
    return PaymentService(db_session, broadcaster=broadcaster)


def make_pending(db_session, invoice, amount="40.00", method=PaymentMethod.MPESA, ref=CHECKOUT_ID):
    repo = PaymentRepository(db_session)
    payment = repo.create(
        invoice_id=invoice.id,
        client_id=invoice.client_id,
        amount=Decimal(amount),
        currency="KES",
        method=method,
    )
    if ref is None:
        return payment
    if method == PaymentMethod.MPESA:
        return repo.set_processor_refs(payment.id, mpesa_checkout_request_id=ref)
    return repo.set_processor_refs(payment.id, paystack_reference=ref)


def event_names(events):
    return [name for name, _, _ in events]


class TestInitiate:
    @pytest.mark.asyncio
    async def test_mpesa_initiate(self, service, db_session, invoice, events):
        provider = mpesa_stub()
        with patch(FACTORY, return_value=provider):
            payment = await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("40"),
                    payer_phone="0712345678",
                )
            )

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount == Decimal("40.00")
        assert payment.payment_number.startswith("PAY-")
        assert payment.processor_refs["mpesa"] == {
            "merchant_request_id": "29115-34620561-1",
            "checkout_request_id": CHECKOUT_ID,
        }

        kwargs = provider.charge.await_args.kwargs
        assert kwargs["payer_identifier"] == "254712345678"
        assert kwargs["invoice_reference"] == invoice.invoice_number
        assert kwargs["callback_url"].endswith("/v1/payments/webhooks/mobile-money")

        assert event_names(events) == ["payment.updated"]
        _, payload, room = events[0]
        assert payload["status"] == "pending"
        assert room == f"client_{invoice.client_id}"

        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_paystack_initiate_with_callback_override(self, service, invoice):
        provider = paystack_stub()
        with patch(FACTORY, return_value=provider):
            payment = await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.PAYSTACK,
                    amount=Decimal("100"),
                    payer_email="payer@example.com",
                    callback_url="https://shop.example.com/done",
                )
            )

        assert payment.paystack_reference == "INV-1-abc"
        assert payment.authorization_url == "https://checkout.paystack.com/abc"
        assert provider.charge.await_args.kwargs["callback_url"] == "https://shop.example.com/done"

    @pytest.mark.asyncio
    async def test_amount_above_balance_is_rejected(self, service, db_session, invoice):
        provider = mpesa_stub()
        with patch(FACTORY, return_value=provider), pytest.raises(
            PaymentValidationError, match="exceeds the invoice balance"
        ):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("150"),
                    payer_phone="0712345678",
                )
            )

        provider.charge.assert_not_awaited()
        assert db_session.query(Payment).count() == 0

    @pytest.mark.asyncio
    async def test_amount_equal_to_balance_is_accepted(self, service, invoice):
        with patch(FACTORY, return_value=mpesa_stub()):
            payment = await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("100"),
                    payer_phone="0712345678",
                )
            )
        assert payment.amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_balance_accounts_for_earlier_payments(self, service, db_session, invoice):
        invoice.paid_amount = Decimal("70")
        invoice.status = InvoiceStatus.PARTIALLY_PAID.value
        db_session.commit()

        with patch(FACTORY, return_value=mpesa_stub()), pytest.raises(PaymentValidationError):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("31"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_non_positive_amount(self, service, invoice, amount):
        with patch(FACTORY, return_value=mpesa_stub()), pytest.raises(
            PaymentValidationError, match="greater than zero"
        ):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal(amount),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    async def test_fractional_mpesa_amount_below_one_unit(self, service, invoice):
        with patch(FACTORY, return_value=mpesa_stub()), pytest.raises(
            PaymentValidationError, match="at least 1 whole unit"
        ):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("0.40"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "phone", "email", "message"),
        [
            (PaymentMethod.MPESA, None, None, "payer_phone is required"),
            (PaymentMethod.MPESA, "071234", None, "Invalid Kenyan phone format"),
            (PaymentMethod.PAYSTACK, "0712345678", None, "payer_email is required"),
            (PaymentMethod.PAYSTACK, None, "not-an-email", "not a valid email"),
        ],
    )
    async def test_missing_or_invalid_contact(
        self, service, db_session, invoice, method, phone, email, message
    ):
        with patch(FACTORY, return_value=mpesa_stub()), pytest.raises(
            PaymentValidationError, match=message
        ):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=method,
                    amount=Decimal("10"),
                    payer_phone=phone,
                    payer_email=email,
                )
            )
        assert db_session.query(Payment).count() == 0

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, service):
        with pytest.raises(InvoiceNotFoundError):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=uuid.uuid4(),
                    method=PaymentMethod.MPESA,
                    amount=Decimal("10"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    async def test_unknown_client(self, service, db_session, invoice):
        service.client_repo.get_by_id = MagicMock(return_value=None)

        with pytest.raises(ClientNotFoundError):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("10"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    async def test_paid_invoice(self, service, db_session, invoice):
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_amount = invoice.total_amount
        db_session.commit()

        with pytest.raises(InvoiceAlreadyPaidError):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("10"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    async def test_cancelled_invoice(self, service, db_session, invoice):
        invoice.status = InvoiceStatus.CANCELLED.value
        db_session.commit()

        with pytest.raises(PaymentValidationError, match="cancelled"):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("10"),
                    payer_phone="0712345678",
                )
            )

    @pytest.mark.asyncio
    async def test_processor_failure_leaves_payment_pending(
        self, service, db_session, invoice, events
    ):
        provider = mpesa_stub(charge_error=ProcessorError("M-Pesa request failed", 503, "busy"))
        with patch(FACTORY, return_value=provider), pytest.raises(ProcessorError):
            await service.initiate(
                PaymentInitiate(
                    invoice_id=invoice.id,
                    method=PaymentMethod.MPESA,
                    amount=Decimal("10"),
                    payer_phone="0712345678",
                )
            )

        payment = db_session.query(Payment).one()
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.correlation_id is None
        assert events == []


class TestApplyOutcome:
    @pytest.mark.asyncio
    async def test_unresolvable_correlation_id_is_a_no_op(self, service, db_session, invoice):
        payment = make_pending(db_session, invoice)

        result = await service.apply_outcome(PaymentMethod.MPESA, "ws_CO_unknown", True)

        assert result.status == OutcomeStatus.NOT_FOUND
        db_session.refresh(payment)
        db_session.refresh(invoice)
        assert payment.status == PaymentStatus.PENDING.value
        assert invoice.paid_amount == Decimal("0.00")
        assert db_session.query(AuditLog).count() == 0

    @pytest.mark.asyncio
    async def test_success_credits_invoice(self, service, db_session, invoice, events):
        payment = make_pending(db_session, invoice, amount="40.00")

        result = await service.apply_outcome(
            PaymentMethod.MPESA,
            CHECKOUT_ID,
            True,
            raw_payload={"source": "test"},
            transaction_id="NLJ7RT61SV",
        )

        assert result.applied
        assert result.payment.status == PaymentStatus.COMPLETED.value
        assert result.payment.transaction_id == "NLJ7RT61SV"
        assert result.payment.reference == "NLJ7RT61SV"
        assert result.payment.raw_payload == {"source": "test"}
        assert result.payment.completed_at is not None
        assert result.invoice.paid_amount == Decimal("40.00")
        assert result.invoice.status == InvoiceStatus.PARTIALLY_PAID.value

        client = db_session.query(Client).filter(Client.id == invoice.client_id).one()
        assert client.last_payment_at is not None

        assert event_names(events) == ["payment.updated", "invoice.updated", "notification"]

        notification = db_session.query(Notification).one()
        assert notification.subject == "Payment Successful"
        assert notification.status == NotificationStatus.SENT.value
        assert [a["id"] for a in notification.actions] == ["view_invoice", "download_receipt"]
        assert notification.notification_metadata["paymentId"] == str(payment.id)

        audit = db_session.query(AuditLog).one()
        assert audit.action == "status_changed"
        assert audit.changes == {"status": {"old": "pending", "new": "completed"}}

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, service, db_session, invoice):
        make_pending(db_session, invoice, amount="40.00", ref="ws_CO_first")
        make_pending(db_session, invoice, amount="60.00", ref="ws_CO_second")

        first = await service.apply_outcome(PaymentMethod.MPESA, "ws_CO_first", True)
        assert first.invoice.paid_amount == Decimal("40.00")
        assert first.invoice.status == InvoiceStatus.PARTIALLY_PAID.value

        second = await service.apply_outcome(PaymentMethod.MPESA, "ws_CO_second", True)
        assert second.invoice.paid_amount == Decimal("100.00")
        assert second.invoice.status == InvoiceStatus.PAID.value
        assert second.invoice.paid_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_success_credits_once(self, service, db_session, invoice):
        make_pending(db_session, invoice, amount="40.00")

        first = await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)
        second = await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)

        assert first.status == OutcomeStatus.APPLIED
        assert second.status == OutcomeStatus.IGNORED
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")
        assert db_session.query(Notification).count() == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_invoice_untouched(self, service, db_session, invoice, events):
        make_pending(db_session, invoice)

        result = await service.apply_outcome(
            PaymentMethod.MPESA, CHECKOUT_ID, False, failure_reason="Request cancelled by user"
        )

        assert result.applied
        assert result.payment.status == PaymentStatus.FAILED.value
        assert result.payment.failure_reason == "Request cancelled by user"
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.status == InvoiceStatus.SENT.value
        assert event_names(events) == ["payment.updated", "notification"]

        notification = db_session.query(Notification).one()
        assert notification.subject == "Payment Failed"
        assert [a["id"] for a in notification.actions] == ["retry_payment", "view_invoice"]

    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_ignored(self, service, db_session, invoice):
        payment = make_pending(db_session, invoice)
        await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, False)

        result = await service.apply_outcome(
            PaymentMethod.MPESA, CHECKOUT_ID, True, raw_payload={"late": True}
        )

        assert result.status == OutcomeStatus.IGNORED
        db_session.refresh(payment)
        db_session.refresh(invoice)
        assert payment.status == PaymentStatus.FAILED.value
        assert invoice.paid_amount == Decimal("0.00")

        ignored = db_session.query(AuditLog).filter(AuditLog.action == "outcome_ignored").one()
        assert ignored.changes == {"status": {"current": "failed", "attempted": "completed"}}
        assert ignored.metadata_ == {"raw_payload": {"late": True}}

    @pytest.mark.asyncio
    async def test_lost_race_is_ignored(self, service, db_session, invoice):
        make_pending(db_session, invoice)
        service.payment_repo.transition = MagicMock(return_value=False)

        result = await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)

        assert result.status == OutcomeStatus.IGNORED
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_propagate(self, service, db_session, invoice):
        make_pending(db_session, invoice)

        with patch.object(
            service.notifications,
            "notify_payment_succeeded",
            AsyncMock(side_effect=RuntimeError("socket down")),
        ):
            result = await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)

        assert result.applied
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_propagate(self, db_session, invoice):
        broadcaster = EventBroadcaster()

        def broken(event, payload, room):
            raise RuntimeError("listener exploded")

        broadcaster.subscribe(broken)
        make_pending(db_session, invoice)

        result = await PaymentService(db_session, broadcaster=broadcaster).apply_outcome(
            PaymentMethod.MPESA, CHECKOUT_ID, True
        )
        assert result.applied

    @pytest.mark.asyncio
    async def test_notifications_disabled(
        self, service, db_session, invoice, client_record, events
    ):
        client_record.in_app_notifications = False
        db_session.commit()
        make_pending(db_session, invoice)

        await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)

        assert db_session.query(Notification).count() == 0
        assert "notification" not in event_names(events)


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_mpesa_success_callback(self, service, db_session, invoice, events):
        make_pending(db_session, invoice)

        with patch(FACTORY, return_value=mpesa_stub()):
            parsed, outcome = await service.handle_callback(PaymentMethod.MPESA, stk_success())

        assert parsed.valid and parsed.success
        assert outcome.applied
        assert outcome.payment.transaction_id == "NLJ7RT61SV"
        assert outcome.payment.raw_payload == stk_success()
        assert events[0][0] == "callback.received"
        assert events[0][1]["resultCode"] == "0"

    @pytest.mark.asyncio
    async def test_mpesa_cancelled_callback(self, service, db_session, invoice):
        make_pending(db_session, invoice)

        with patch(FACTORY, return_value=mpesa_stub()):
            _, outcome = await service.handle_callback(PaymentMethod.MPESA, stk_failure())

        assert outcome.payment.status == PaymentStatus.FAILED.value
        assert outcome.payment.failure_reason == "Request cancelled by user"

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, service, db_session, invoice):
        make_pending(db_session, invoice)

        with patch(FACTORY, return_value=mpesa_stub()):
            await service.handle_callback(PaymentMethod.MPESA, stk_success())
            _, outcome = await service.handle_callback(PaymentMethod.MPESA, stk_success())

        assert outcome.status == OutcomeStatus.IGNORED
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_malformed_callback_changes_nothing(self, service, db_session, invoice, events):
        payment = make_pending(db_session, invoice)

        with patch(FACTORY, return_value=mpesa_stub()):
            parsed, outcome = await service.handle_callback(PaymentMethod.MPESA, {"Body": {}})

        assert parsed.valid is False
        assert outcome is None
        assert events == []
        db_session.refresh(payment)
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_paystack_charge_success(self, service, db_session, invoice):
        make_pending(db_session, invoice, method=PaymentMethod.PAYSTACK, ref="INV-1-abc")
        payload = {
            "event": "charge.success",
            "data": {"id": 302961, "status": "success", "reference": "INV-1-abc", "amount": 4000},
        }

        with patch(FACTORY, return_value=paystack_stub()):
            _, outcome = await service.handle_callback(PaymentMethod.PAYSTACK, payload)

        assert outcome.applied
        assert outcome.payment.transaction_id == "302961"
        assert outcome.invoice.paid_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_paystack_pending_events_then_success(self, service, db_session, invoice):
        payment = make_pending(db_session, invoice, method=PaymentMethod.PAYSTACK, ref="INV-1-abc")
        interim = [
            {"event": "charge.pending", "data": {"status": "ongoing", "reference": "INV-1-abc"}},
            {"data": {"status": "pending", "reference": "INV-1-abc"}},
            {"event": "transfer.success", "data": {"status": "success", "reference": "INV-1-abc"}},
        ]

        with patch(FACTORY, return_value=paystack_stub()):
            for payload in interim:
                _, outcome = await service.handle_callback(PaymentMethod.PAYSTACK, payload)
                assert outcome.status == OutcomeStatus.NO_CHANGE
                db_session.refresh(payment)
                assert payment.status == PaymentStatus.PENDING.value

            _, outcome = await service.handle_callback(
                PaymentMethod.PAYSTACK,
                {
                    "event": "charge.success",
                    "data": {
                        "id": 1,
                        "status": "success",
                        "reference": "INV-1-abc",
                        "amount": 4000,
                    },
                },
            )

        assert outcome.applied
        assert outcome.payment.status == PaymentStatus.COMPLETED.value
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")
        assert db_session.query(AuditLog).count() == 1


class TestQueryAndReconcile:
    @pytest.mark.asyncio
    async def test_processor_success_completes_payment(self, service, db_session, invoice):
        make_pending(db_session, invoice)
        status = StatusResult(
            ok=True, state=ProcessorState.SUCCEEDED, result_code="0", raw={"ResultCode": "0"}
        )

        with patch(FACTORY, return_value=mpesa_stub(status=status)):
            result = await service.query_and_reconcile(PaymentMethod.MPESA, CHECKOUT_ID)

        assert result.applied
        assert result.payment.status == PaymentStatus.COMPLETED.value
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")
        audit = db_session.query(AuditLog).one()
        assert audit.actor_type == "poll"

    @pytest.mark.asyncio
    async def test_processor_failure_fails_payment(self, service, db_session, invoice):
        make_pending(db_session, invoice)
        status = StatusResult(
            ok=True,
            state=ProcessorState.FAILED,
            result_code="1037",
            result_desc="DS timeout user cannot be reached",
        )

        with patch(FACTORY, return_value=mpesa_stub(status=status)):
            result = await service.query_and_reconcile(PaymentMethod.MPESA, CHECKOUT_ID)

        assert result.applied
        assert result.payment.status == PaymentStatus.FAILED.value
        assert result.payment.failure_reason == "DS timeout user cannot be reached"

    @pytest.mark.asyncio
    async def test_still_processing_changes_nothing(self, service, db_session, invoice):
        payment = make_pending(db_session, invoice)
        status = StatusResult(ok=True, state=ProcessorState.PROCESSING)

        with patch(FACTORY, return_value=mpesa_stub(status=status)):
            result = await service.query_and_reconcile(PaymentMethod.MPESA, CHECKOUT_ID)

        assert not result.applied
        db_session.refresh(payment)
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_already_completed(self, service, db_session, invoice):
        make_pending(db_session, invoice)
        await service.apply_outcome(PaymentMethod.MPESA, CHECKOUT_ID, True)
        status = StatusResult(ok=True, state=ProcessorState.SUCCEEDED, result_code="0")

        with patch(FACTORY, return_value=mpesa_stub(status=status)):
            result = await service.query_and_reconcile(PaymentMethod.MPESA, CHECKOUT_ID)

        assert not result.applied
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_unknown_payment(self, service):
        with patch(FACTORY, return_value=mpesa_stub()), pytest.raises(PaymentNotFoundError):
            await service.query_and_reconcile(PaymentMethod.MPESA, "ws_CO_unknown")

    @pytest.mark.asyncio
    async def test_query_failure_raises_processor_error(self, service, db_session, invoice):
        make_pending(db_session, invoice)
        status = StatusResult(ok=False, error="M-Pesa request failed status=503")

        with patch(FACTORY, return_value=mpesa_stub(status=status)), pytest.raises(
            ProcessorError, match="503"
        ):
            await service.query_and_reconcile(PaymentMethod.MPESA, CHECKOUT_ID)


class TestReconcileStalePayments:
    def _age(self, db_session, payment, minutes):
        payment.created_at = datetime.now(UTC) - timedelta(minutes=minutes)
        db_session.commit()

    @pytest.mark.asyncio
    async def test_sweep(self, service, db_session, invoice):
        stale = make_pending(db_session, invoice, amount="40.00", ref="ws_CO_stale")
        fresh = make_pending(db_session, invoice, amount="10.00", ref="ws_CO_fresh")
        orphan = make_pending(db_session, invoice, amount="20.00", ref=None)
        young_orphan = make_pending(db_session, invoice, amount="5.00", ref=None)
        self._age(db_session, stale, 10)
        self._age(db_session, orphan, 45)
        self._age(db_session, young_orphan, 10)

        status = StatusResult(ok=True, state=ProcessorState.SUCCEEDED, result_code="0")
        provider = mpesa_stub(status=status)
        with patch(FACTORY, return_value=provider):
            counts = await service.reconcile_stale_payments()

        assert counts == {"checked": 1, "applied": 1, "abandoned": 1, "errors": 0}
        provider.query_status.assert_awaited_once_with("ws_CO_stale")

        for payment in (stale, fresh, orphan, young_orphan):
            db_session.refresh(payment)
        assert stale.status == PaymentStatus.COMPLETED.value
        assert fresh.status == PaymentStatus.PENDING.value
        assert orphan.status == PaymentStatus.FAILED.value
        assert orphan.failure_reason == ABANDONED_REASON
        assert young_orphan.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_one_error_does_not_stop_the_sweep(self, service, db_session, invoice):
        broken = make_pending(db_session, invoice, amount="10.00", ref="ws_CO_broken")
        healthy = make_pending(db_session, invoice, amount="20.00", ref="ws_CO_healthy")
        self._age(db_session, broken, 20)
        self._age(db_session, healthy, 10)

        async def query_status(correlation_id):
            if correlation_id == "ws_CO_broken":
                return StatusResult(ok=False, error="M-Pesa request failed status=500")
            return StatusResult(ok=True, state=ProcessorState.FAILED, result_code="1032")

        provider = mpesa_stub()
        provider.query_status = AsyncMock(side_effect=query_status)
        with patch(FACTORY, return_value=provider):
            counts = await service.reconcile_stale_payments()

        assert counts["errors"] == 1
        assert counts["applied"] == 1
        db_session.refresh(broken)
        db_session.refresh(healthy)
        assert broken.status == PaymentStatus.PENDING.value
        assert healthy.status == PaymentStatus.FAILED.value
