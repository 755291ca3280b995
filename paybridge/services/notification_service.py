"""Service for creating and delivering actionable in-app payment notifications."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from paybridge.models.client import Client
from paybridge.models.invoice import Invoice
from paybridge.models.notification import Notification
from paybridge.models.payment import Payment
from paybridge.repositories.client_repository import ClientRepository
from paybridge.repositories.notification_repository import NotificationRepository
from paybridge.schemas.notification import NotificationAction
from paybridge.services.event_broadcaster import NOTIFICATION, EventBroadcaster

logger = logging.getLogger(__name__)

# Notification categories
CATEGORY_PAYMENT_SUCCESS = "payment_success"
CATEGORY_PAYMENT_FAILED = "payment_failed"


def client_room(client_id: Any) -> str:
    return f"client_{client_id}"


def _format_amount(amount: Any, currency: str) -> str:
    return f"{currency} {Decimal(str(amount)):,.2f}"


class NotificationService:
    """Builds payment notifications, persists them and pushes them to the client's room."""

    def __init__(self, db: Session, broadcaster: EventBroadcaster):
        self.db = db
        self.repo = NotificationRepository(db)
        self.client_repo = ClientRepository(db)
        self.broadcaster = broadcaster

    async def notify(
        self,
        *,
        client: Client,
        category: str,
        subject: str,
        message: str,
        actions: list[NotificationAction],
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification | None:
        """Create a notification, mark it sent and broadcast it.

        Returns None when the client has switched in-app notifications off.
        """
        if not client.in_app_notifications:
            logger.info("Client %s has in-app notifications disabled, skipping", client.id)
            return None

        notification = self.repo.create(
            recipient_id=client.id,  # type: ignore[arg-type]
            category=category,
            subject=subject,
            message=message,
            actions=[action.model_dump(exclude_none=True) for action in actions],
            context=context,
            metadata=metadata,
        )
        notification = self.repo.mark_sent(notification)

        await self.broadcaster.emit(
            NOTIFICATION,
            {
                "id": str(notification.id),
                "category": notification.category,
                "subject": notification.subject,
                "message": notification.message,
                "actions": notification.actions,
                "context": notification.context,
                "metadata": notification.notification_metadata,
            },
            room=client_room(client.id),
        )
        return notification

    async def notify_payment_succeeded(
        self, payment: Payment, invoice: Invoice
    ) -> Notification | None:
        client = self.client_repo.get_by_id(payment.client_id)  # type: ignore[arg-type]
        if client is None:
            logger.warning("Client %s not found, skipping payment notification", payment.client_id)
            return None

        amount = _format_amount(payment.amount, str(payment.currency))
        return await self.notify(
            client=client,
            category=CATEGORY_PAYMENT_SUCCESS,
            subject="Payment Successful",
            message=(
                f"Your payment of {amount} for invoice {invoice.invoice_number} "
                "was received. Thank you!"
            ),
            actions=[
                NotificationAction(
                    id="view_invoice",
                    label="View Invoice",
                    type="navigate",
                    route=f"/invoices/{invoice.id}",
                    variant="primary",
                ),
                NotificationAction(
                    id="download_receipt",
                    label="Download Receipt",
                    type="api",
                    endpoint=f"/v1/payments/{payment.id}/receipt",
                    method="GET",
                    variant="secondary",
                ),
            ],
            context={"resourceId": str(invoice.id), "resourceType": "invoice"},
            metadata={
                "paymentId": str(payment.id),
                "invoiceId": str(invoice.id),
                "invoiceNumber": invoice.invoice_number,
                "amount": str(payment.amount),
                "transactionId": payment.transaction_id,
                "paymentDate": payment.completed_at.isoformat() if payment.completed_at else None,
            },
        )

    async def notify_payment_failed(
        self, payment: Payment, invoice: Invoice
    ) -> Notification | None:
        client = self.client_repo.get_by_id(payment.client_id)  # type: ignore[arg-type]
        if client is None:
            logger.warning("Client %s not found, skipping payment notification", payment.client_id)
            return None

        amount = _format_amount(payment.amount, str(payment.currency))
        return await self.notify(
            client=client,
            category=CATEGORY_PAYMENT_FAILED,
            subject="Payment Failed",
            message=(
                f"Your payment of {amount} for invoice {invoice.invoice_number} "
                "could not be completed. Please try again."
            ),
            actions=[
                NotificationAction(
                    id="retry_payment",
                    label="Retry Payment",
                    type="navigate",
                    route=f"/invoices/{invoice.id}/pay",
                    variant="primary",
                ),
                NotificationAction(
                    id="view_invoice",
                    label="View Invoice",
                    type="navigate",
                    route=f"/invoices/{invoice.id}",
                    variant="secondary",
                ),
            ],
            context={"resourceId": str(invoice.id), "resourceType": "invoice"},
            metadata={
                "paymentId": str(payment.id),
                "invoiceId": str(invoice.id),
                "invoiceNumber": invoice.invoice_number,
                "amount": str(payment.amount),
                "failureReason": payment.failure_reason,
            },
        )
