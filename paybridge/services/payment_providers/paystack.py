"""Paystack card/bank provider implementation.

Paystack uses a hosted checkout: ``/transaction/initialize`` returns an
authorization URL the payer is redirected to, and the outcome arrives as a
``charge.success`` webhook or through ``/transaction/verify/{reference}``.
"""

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from urllib.parse import quote
from uuid import uuid4

from paybridge.core.config import settings
from paybridge.models.payment import PaymentMethod
from paybridge.services.payment_provider import (
    CallbackResult,
    ChargeResult,
    PaymentProviderBase,
    ProcessorError,
    ProcessorState,
    StatusResult,
)

logger = logging.getLogger(__name__)

FAILED_STATUSES = frozenset({"failed", "abandoned", "reversed"})


def to_minor_units(amount: Decimal) -> int:
    """Paystack amounts are in the currency's minor unit (kobo, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Decimal:
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


def callback_state(event: Any, status: Any) -> ProcessorState:
    """Map a webhook to a processor state; only final charge outcomes are terminal."""
    if event and not str(event).startswith("charge."):
        return ProcessorState.PROCESSING
    if event == "charge.success" or status == "success":
        return ProcessorState.SUCCEEDED
    if event == "charge.failed" or (isinstance(status, str) and status in FAILED_STATUSES):
        return ProcessorState.FAILED
    return ProcessorState.PROCESSING


class PaystackProvider(PaymentProviderBase):
    """Paystack payment provider."""

    display_name = "Paystack"

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        currency: str | None = None,
        verify_signatures: bool | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.secret_key = secret_key or settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.currency = currency or settings.paystack_currency
        self.verify_signatures = (
            settings.paystack_verify_signatures if verify_signatures is None else verify_signatures
        )

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.PAYSTACK

    def _auth_headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise ProcessorError("Paystack is not configured: missing secret key")
        return {"Authorization": f"Bearer {self.secret_key}"}

    @staticmethod
    def generate_reference(invoice_reference: str) -> str:
        return f"{invoice_reference}-{uuid4().hex[:12]}"

    async def charge(
        self,
        amount: Decimal,
        payer_identifier: str,
        invoice_reference: str,
        callback_url: str,
    ) -> ChargeResult:
        """Initialize a hosted checkout for ``payer_identifier`` (an email address)."""
        headers = self._auth_headers()
        reference = self.generate_reference(invoice_reference)

        _, body = await self._request(
            "POST",
            f"{self.base_url}/transaction/initialize",
            json={
                "email": payer_identifier,
                "amount": to_minor_units(amount),
                "currency": self.currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": {"invoice_reference": invoice_reference},
            },
            headers=headers,
        )

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        if not body.get("status") or not data.get("authorization_url"):
            raise ProcessorError(
                f"Paystack initialize rejected: {body.get('message') or body}",
                body=str(body),
            )

        logger.info("Paystack transaction initialized for %s: %s", invoice_reference, reference)
        return ChargeResult(
            correlation_id=str(data.get("reference") or reference),
            authorization_url=data["authorization_url"],
            raw=body,
        )

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """Verify the ``x-paystack-signature`` header (HMAC-SHA512 of the raw body)."""
        if not self.verify_signatures:
            return True
        if not self.secret_key or not signature:
            return False

        expected = hmac.new(
            self.secret_key.encode(),
            payload,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_callback(self, payload: Any) -> CallbackResult:
        if not isinstance(payload, dict):
            return CallbackResult(valid=False)
        data = payload.get("data")
        if not isinstance(data, dict):
            return CallbackResult(valid=False)

        event = payload.get("event")
        status = data.get("status")
        reference = data.get("reference")
        if not reference or not (event or status):
            return CallbackResult(valid=False)

        amount: Decimal | None = None
        if data.get("amount") is not None:
            try:
                amount = from_minor_units(data["amount"])
            except ArithmeticError:
                amount = None

        customer = data.get("customer")
        email = customer.get("email") if isinstance(customer, dict) else None

        return CallbackResult(
            valid=True,
            state=callback_state(event, status),
            correlation_id=str(reference),
            amount=amount,
            payer_identifier=email,
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
            result_code=str(status) if status is not None else None,
            result_desc=data.get("gateway_response") or event,
        )

    async def query_status(self, correlation_id: str) -> StatusResult:
        """Verify a transaction by reference."""
        try:
            _, body = await self._request(
                "GET",
                f"{self.base_url}/transaction/verify/{quote(correlation_id, safe='')}",
                headers=self._auth_headers(),
            )
        except ProcessorError as e:
            logger.warning("Paystack verify for %s failed: %s", correlation_id, e)
            return StatusResult(ok=False, error=str(e))

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        status = data.get("status")
        if status == "success":
            state = ProcessorState.SUCCEEDED
        elif isinstance(status, str) and status in FAILED_STATUSES:
            state = ProcessorState.FAILED
        else:
            state = ProcessorState.PROCESSING

        amount: Decimal | None = None
        if data.get("amount") is not None:
            try:
                amount = from_minor_units(data["amount"])
            except ArithmeticError:
                amount = None
        return StatusResult(
            ok=bool(body.get("status")),
            state=state,
            result_code=str(status) if status is not None else None,
            result_desc=data.get("gateway_response") or body.get("message"),
            amount=amount,
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
            raw=body,
        )
