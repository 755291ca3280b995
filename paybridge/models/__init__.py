from paybridge.models.audit_log import AuditLog
from paybridge.models.client import Client
from paybridge.models.idempotency_record import IdempotencyRecord
from paybridge.models.invoice import Invoice, InvoiceStatus
from paybridge.models.notification import Notification, NotificationStatus
from paybridge.models.payment import TERMINAL_STATUSES, Payment, PaymentMethod, PaymentStatus
from paybridge.models.payment_sequence import PaymentSequence

__all__ = [
    "AuditLog",
    "Client",
    "IdempotencyRecord",
    "Invoice",
    "InvoiceStatus",
    "Notification",
    "NotificationStatus",
    "Payment",
    "PaymentMethod",
    "PaymentSequence",
    "PaymentStatus",
    "TERMINAL_STATUSES",
]
