"""Payment orchestration: initiate charges and apply processor outcomes.

A payment moves ``pending -> completed`` or ``pending -> failed`` exactly once.
The move is a conditional UPDATE on ``status = 'pending'``; whichever caller
(webhook, poll or sweep) matches the row owns the side effects, and on success
the invoice credit is committed in the same transaction as the move.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from paybridge.core.config import settings
from paybridge.core.phone import normalize_msisdn
from paybridge.models.invoice import Invoice, InvoiceStatus
from paybridge.models.payment import TERMINAL_STATUSES, Payment, PaymentMethod, PaymentStatus
from paybridge.models.shared import utc_now
from paybridge.repositories.client_repository import ClientRepository
from paybridge.repositories.invoice_repository import InvoiceRepository
from paybridge.repositories.payment_repository import PaymentRepository
from paybridge.schemas.payment import PaymentInitiate
from paybridge.services.audit_service import RESOURCE_PAYMENT, AuditService
from paybridge.services.event_broadcaster import (
    CALLBACK_RECEIVED,
    INVOICE_UPDATED,
    PAYMENT_UPDATED,
    EventBroadcaster,
)
from paybridge.services.ledger_service import LedgerService
from paybridge.services.notification_service import NotificationService, client_room
from paybridge.services.payment_provider import (
    CallbackResult,
    PaymentProviderBase,
    ProcessorError,
    ProcessorState,
    StatusResult,
    get_payment_provider,
)
from paybridge.services.payment_providers.mpesa import to_whole_units
from paybridge.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

ABANDONED_REASON = "Processor request never completed"


class PaymentValidationError(Exception):
    """The request is malformed or breaks a payment rule."""


class InvoiceNotFoundError(Exception):
    pass


class ClientNotFoundError(Exception):
    pass


class PaymentNotFoundError(Exception):
    pass


class InvoiceAlreadyPaidError(Exception):
    pass


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    NO_CHANGE = "no_change"


@dataclass
class OutcomeResult:
    """What ``apply_outcome`` did with an outcome."""

    status: OutcomeStatus
    payment: Payment | None = None
    invoice: Invoice | None = None

    @property
    def applied(self) -> bool:
        return self.status == OutcomeStatus.APPLIED


@dataclass
class ReconcileResult:
    payment: Payment
    processor_status: StatusResult
    applied: bool


class PaymentService:
    """Service for the payment state machine.

    ``broadcaster`` and ``token_cache`` are process-wide objects owned by the
    app (or worker) and passed in per request.
    """

    def __init__(
        self,
        db: Session,
        broadcaster: EventBroadcaster | None = None,
        token_cache: TokenCache | None = None,
    ):
        self.db = db
        self.broadcaster = broadcaster or EventBroadcaster()
        self.token_cache = token_cache
        self.payment_repo = PaymentRepository(db)
        self.invoice_repo = InvoiceRepository(db)
        self.client_repo = ClientRepository(db)
        self.ledger = LedgerService(db)
        self.audit = AuditService(db)
        self.notifications = NotificationService(db, self.broadcaster)

    def provider_for(self, method: PaymentMethod) -> PaymentProviderBase:
        return get_payment_provider(method, token_cache=self.token_cache)

    @staticmethod
    def default_callback_url(method: PaymentMethod) -> str:
        if method == PaymentMethod.MPESA:
            return settings.mpesa_callback_url or (
                f"{settings.API_BASE_URL.rstrip('/')}/v1/payments/webhooks/mobile-money"
            )
        return settings.paystack_callback_url or (
            f"{settings.FRONTEND_URL.rstrip('/')}/payments/verify"
        )

    # --- Initiate -------------------------------------------------------

    def _validate_payer(self, data: PaymentInitiate, amount: Decimal) -> str:
        """Return the normalized payer identifier for the chosen method."""
        if data.method == PaymentMethod.MPESA:
            if not data.payer_phone:
                raise PaymentValidationError("payer_phone is required for M-Pesa payments")
            try:
                phone = normalize_msisdn(data.payer_phone)
            except ValueError as e:
                raise PaymentValidationError(str(e)) from None
            if to_whole_units(amount) < 1:
                raise PaymentValidationError("M-Pesa payments must be at least 1 whole unit")
            return phone

        email = (data.payer_email or "").strip()
        if not email:
            raise PaymentValidationError("payer_email is required for Paystack payments")
        if "@" not in email:
            raise PaymentValidationError("payer_email is not a valid email address")
        return email

    async def initiate(self, data: PaymentInitiate) -> Payment:
        """Create a pending payment and hand the charge to the processor.

        If the processor call fails the payment stays ``pending`` without a
        correlation id and ``ProcessorError`` propagates; the reconciliation
        sweep later marks it failed.
        """
        invoice = self.invoice_repo.get_by_id(data.invoice_id)
        if not invoice:
            raise InvoiceNotFoundError(f"Invoice {data.invoice_id} not found")
        if invoice.status == InvoiceStatus.PAID.value:
            raise InvoiceAlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise PaymentValidationError(f"Invoice {invoice.invoice_number} is cancelled")

        balance = Decimal(str(invoice.total_amount)) - Decimal(str(invoice.paid_amount))
        if balance <= 0:
            raise InvoiceAlreadyPaidError(f"Invoice {invoice.invoice_number} is already paid")

        amount = Decimal(data.amount).quantize(Decimal("0.01"))
        if amount <= 0:
            raise PaymentValidationError("Amount must be greater than zero")
        if amount > balance:
            raise PaymentValidationError(
                f"Amount {amount} exceeds the invoice balance of {balance}"
            )

        payer_identifier = self._validate_payer(data, amount)

        client = self.client_repo.get_by_id(invoice.client_id)  # type: ignore[arg-type]
        if not client:
            raise ClientNotFoundError(f"Client {invoice.client_id} not found")

        payment = self.payment_repo.create(
            invoice_id=invoice.id,  # type: ignore[arg-type]
            client_id=client.id,  # type: ignore[arg-type]
            amount=amount,
            currency=str(invoice.currency),
            method=data.method,
        )
        logger.info(
            "Created payment %s for invoice %s (%s %s via %s)",
            payment.payment_number,
            invoice.invoice_number,
            amount,
            payment.currency,
            data.method.value,
        )

        provider = self.provider_for(data.method)
        try:
            charge = await provider.charge(
                amount=amount,
                payer_identifier=payer_identifier,
                invoice_reference=str(invoice.invoice_number),
                callback_url=data.callback_url or self.default_callback_url(data.method),
            )
        except ProcessorError as e:
            logger.error(
                "Charge for payment %s failed, leaving it pending: %s",
                payment.payment_number,
                e,
            )
            raise

        if data.method == PaymentMethod.MPESA:
            updated = self.payment_repo.set_processor_refs(
                payment.id,  # type: ignore[arg-type]
                mpesa_merchant_request_id=charge.merchant_request_id,
                mpesa_checkout_request_id=charge.correlation_id,
            )
        else:
            updated = self.payment_repo.set_processor_refs(
                payment.id,  # type: ignore[arg-type]
                paystack_reference=charge.correlation_id,
                authorization_url=charge.authorization_url,
            )
        payment = updated or payment

        await self._emit_payment_updated(payment)
        return payment

    # --- Outcomes -------------------------------------------------------

    async def apply_outcome(
        self,
        method: PaymentMethod,
        correlation_id: str,
        success: bool,
        raw_payload: Any = None,
        transaction_id: str | None = None,
        amount: Decimal | None = None,
        failure_reason: str | None = None,
        source: str = "webhook",
    ) -> OutcomeResult:
        """Move a pending payment to its terminal state and apply the side effects.

        Unknown correlation ids are a no-op. Outcomes for payments that are
        already terminal are audited and otherwise ignored: the first terminal
        write wins, so a late success never revives a failed payment.
        """
        payment = self.payment_repo.get_by_correlation_id(method, correlation_id)
        if payment is None:
            logger.warning(
                "No %s payment found for correlation id %s", method.value, correlation_id
            )
            return OutcomeResult(status=OutcomeStatus.NOT_FOUND)

        target = PaymentStatus.COMPLETED if success else PaymentStatus.FAILED
        if payment.status in TERMINAL_STATUSES:
            return self._ignore_outcome(payment, target, source, raw_payload)

        if success and amount is not None and amount < Decimal(str(payment.amount)):
            logger.warning(
                "Processor reported %s for payment %s of %s",
                amount,
                payment.payment_number,
                payment.amount,
            )

        old_status = str(payment.status)
        invoice: Invoice | None = None
        try:
            won = self.payment_repo.transition(
                payment.id,  # type: ignore[arg-type]
                target,
                raw_payload=raw_payload if isinstance(raw_payload, dict) else None,
                transaction_id=transaction_id,
                reference=transaction_id,
                failure_reason=None if success else (failure_reason or "Payment failed"),
                commit=False,
            )
            if not won:
                self.db.rollback()
                self.db.refresh(payment)
                return self._ignore_outcome(payment, target, source, raw_payload)

            if success:
                invoice = self.ledger.apply_payment(
                    payment.invoice_id,  # type: ignore[arg-type]
                    Decimal(str(payment.amount)),
                )
                self.client_repo.touch_last_payment(
                    payment.client_id,  # type: ignore[arg-type]
                    utc_now(),
                    commit=False,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)
        if invoice is None:
            invoice = self.invoice_repo.get_by_id(payment.invoice_id)  # type: ignore[arg-type]
        else:
            self.db.refresh(invoice)

        logger.info(
            "Payment %s %s -> %s (%s)",
            payment.payment_number,
            old_status,
            target.value,
            source,
        )
        self.audit.log_status_change(
            resource_type=RESOURCE_PAYMENT,
            resource_id=payment.id,  # type: ignore[arg-type]
            old_status=old_status,
            new_status=target.value,
            actor_type=source,
            metadata={"correlation_id": correlation_id, "transaction_id": transaction_id},
        )

        await self._emit_payment_updated(payment)
        if success and invoice is not None:
            await self._emit_invoice_updated(invoice)
        if invoice is not None:
            await self._notify(payment, invoice, success)

        return OutcomeResult(status=OutcomeStatus.APPLIED, payment=payment, invoice=invoice)

    def _ignore_outcome(
        self,
        payment: Payment,
        target: PaymentStatus,
        source: str,
        raw_payload: Any,
    ) -> OutcomeResult:
        logger.info(
            "Ignoring %s outcome for payment %s, already %s",
            target.value,
            payment.payment_number,
            payment.status,
        )
        self.audit.log_ignored_outcome(
            payment_id=payment.id,  # type: ignore[arg-type]
            current_status=str(payment.status),
            attempted_status=target.value,
            source=source,
            raw_payload=raw_payload,
        )
        return OutcomeResult(status=OutcomeStatus.IGNORED, payment=payment)

    async def handle_callback(
        self, method: PaymentMethod, payload: Any
    ) -> tuple[CallbackResult, OutcomeResult | None]:
        """Parse a webhook payload and apply it.

        Invalid payloads and non-final events change nothing.
        """
        parsed = self.provider_for(method).parse_callback(payload)
        if not parsed.valid or not parsed.correlation_id:
            logger.warning("Rejected malformed %s webhook payload", method.value)
            return parsed, None

        if method == PaymentMethod.MPESA:
            await self.broadcaster.emit(
                CALLBACK_RECEIVED,
                {
                    "checkoutRequestId": parsed.correlation_id,
                    "resultCode": parsed.result_code,
                    "resultDesc": parsed.result_desc,
                },
            )

        if parsed.state == ProcessorState.PROCESSING:
            logger.info(
                "Acknowledged non-final %s event for %s (%s)",
                method.value,
                parsed.correlation_id,
                parsed.result_desc,
            )
            return parsed, OutcomeResult(status=OutcomeStatus.NO_CHANGE)

        outcome = await self.apply_outcome(
            method,
            parsed.correlation_id,
            parsed.success,
            raw_payload=payload,
            transaction_id=parsed.transaction_id,
            amount=parsed.amount,
            failure_reason=parsed.result_desc,
            source="webhook",
        )
        return parsed, outcome

    async def query_and_reconcile(
        self, method: PaymentMethod, correlation_id: str, source: str = "poll"
    ) -> ReconcileResult:
        """Poll the processor and apply a definitive answer.

        Raises ``PaymentNotFoundError`` for unknown correlation ids and
        ``ProcessorError`` when the processor cannot be queried.
        """
        payment = self.payment_repo.get_by_correlation_id(method, correlation_id)
        if payment is None:
            raise PaymentNotFoundError(f"No payment found for {correlation_id}")

        status = await self.provider_for(method).query_status(correlation_id)
        if not status.ok:
            raise ProcessorError(
                status.error or f"Failed to query {method.value} status",
                body=str(status.raw) if status.raw else None,
            )

        if status.state == ProcessorState.PROCESSING:
            return ReconcileResult(payment=payment, processor_status=status, applied=False)

        success = status.state == ProcessorState.SUCCEEDED
        target = PaymentStatus.COMPLETED if success else PaymentStatus.FAILED
        if payment.status == target.value:
            return ReconcileResult(payment=payment, processor_status=status, applied=False)

        outcome = await self.apply_outcome(
            method,
            correlation_id,
            success,
            raw_payload=status.raw,
            transaction_id=status.transaction_id,
            amount=status.amount,
            failure_reason=status.result_desc,
            source=source,
        )
        return ReconcileResult(
            payment=outcome.payment or payment,
            processor_status=status,
            applied=outcome.applied,
        )

    # --- Sweep ----------------------------------------------------------

    async def reconcile_stale_payments(self, now: datetime | None = None) -> dict[str, int]:
        """Poll old pending payments and fail the ones the processor never saw."""
        now = now or utc_now()
        counts = {"checked": 0, "applied": 0, "abandoned": 0, "errors": 0}

        stale = self.payment_repo.get_stale_pending(
            created_before=now - timedelta(minutes=settings.reconcile_pending_after_minutes),
            limit=settings.reconcile_batch_size,
        )
        for payment in stale:
            counts["checked"] += 1
            correlation_id = payment.correlation_id
            if not correlation_id:
                continue
            try:
                result = await self.query_and_reconcile(
                    PaymentMethod(payment.method), correlation_id, source="sweep"
                )
            except Exception:
                counts["errors"] += 1
                self.db.rollback()
                logger.exception("Failed to reconcile payment %s", payment.payment_number)
                continue
            if result.applied:
                counts["applied"] += 1

        uncorrelated = self.payment_repo.get_uncorrelated_pending(
            created_before=now - timedelta(minutes=settings.abandon_uncorrelated_after_minutes),
            limit=settings.reconcile_batch_size,
        )
        for payment in uncorrelated:
            try:
                if await self.abandon(payment):
                    counts["abandoned"] += 1
            except Exception:
                counts["errors"] += 1
                self.db.rollback()
                logger.exception("Failed to abandon payment %s", payment.payment_number)

        return counts

    async def abandon(self, payment: Payment) -> bool:
        """Fail a pending payment whose charge request never reached the processor."""
        payment_id: UUID = payment.id  # type: ignore[assignment]
        won = self.payment_repo.transition(
            payment_id, PaymentStatus.FAILED, failure_reason=ABANDONED_REASON
        )
        if not won:
            return False

        self.db.refresh(payment)
        logger.info("Abandoned payment %s: %s", payment.payment_number, ABANDONED_REASON)
        self.audit.log_status_change(
            resource_type=RESOURCE_PAYMENT,
            resource_id=payment_id,
            old_status=PaymentStatus.PENDING.value,
            new_status=PaymentStatus.FAILED.value,
            actor_type="sweep",
        )
        await self._emit_payment_updated(payment)
        return True

    # --- Side effects ---------------------------------------------------

    async def _emit_payment_updated(self, payment: Payment) -> None:
        await self.broadcaster.emit(
            PAYMENT_UPDATED,
            {
                "paymentId": str(payment.id),
                "paymentNumber": payment.payment_number,
                "invoiceId": str(payment.invoice_id),
                "method": payment.method,
                "status": payment.status,
                "amount": str(payment.amount),
            },
            room=client_room(payment.client_id),
        )

    async def _emit_invoice_updated(self, invoice: Invoice) -> None:
        await self.broadcaster.emit(
            INVOICE_UPDATED,
            {
                "invoiceId": str(invoice.id),
                "invoiceNumber": invoice.invoice_number,
                "status": invoice.status,
                "paidAmount": str(invoice.paid_amount),
                "totalAmount": str(invoice.total_amount),
            },
            room=client_room(invoice.client_id),
        )

    async def _notify(self, payment: Payment, invoice: Invoice, success: bool) -> None:
        try:
            if success:
                await self.notifications.notify_payment_succeeded(payment, invoice)
            else:
                await self.notifications.notify_payment_failed(payment, invoice)
        except Exception:
            self.db.rollback()
            logger.exception("Failed to notify payer of payment %s", payment.payment_number)
