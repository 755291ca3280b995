"""M-Pesa (Safaricom Daraja) STK push provider implementation.

Flow:
1. Exchange the consumer key/secret for an OAuth access token (cached)
2. Send an STK push; the payer confirms on their handset
3. Daraja POSTs the outcome to the callback URL, or we poll the STK query API
"""

import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

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
from paybridge.services.token_cache import InMemoryTokenCache, TokenCache

logger = logging.getLogger(__name__)

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja answers an STK query for a transaction still in flight with HTTP 500 and this code.
STILL_PROCESSING_ERROR_CODE = "500.001.1001"
STILL_PROCESSING_RESULT_CODES = frozenset({"4999"})


def is_still_processing(response: httpx.Response) -> bool:
    """Only the in-flight STK query 500 is an answer; any other 500 is retried."""
    if response.status_code != 500:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("errorCode") == STILL_PROCESSING_ERROR_CODE


def to_whole_units(amount: Decimal) -> int:
    """STK push only accepts whole shillings."""
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class MpesaProvider(PaymentProviderBase):
    """Safaricom Daraja STK push.

    Every authenticated call goes through ``_authorized_request``, which
    forces a token refresh and retries once when Daraja answers 401.
    """

    display_name = "M-Pesa"

    def __init__(
        self,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        short_code: str | None = None,
        passkey: str | None = None,
        base_url: str | None = None,
        token_cache: TokenCache | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.consumer_key = consumer_key or settings.mpesa_consumer_key
        self.consumer_secret = consumer_secret or settings.mpesa_consumer_secret
        self.short_code = short_code or settings.mpesa_short_code
        self.passkey = passkey or settings.mpesa_passkey
        self.base_url = (base_url or settings.mpesa_base_url).rstrip("/")
        self.token_cache = token_cache or InMemoryTokenCache(settings.mpesa_token_reuse_seconds)

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.MPESA

    @property
    def _token_key(self) -> str:
        return f"mpesa:{self.base_url}:{self.consumer_key}"

    @staticmethod
    def build_timestamp(now: datetime | None = None) -> str:
        """Compact ``YYYYMMDDHHMMSS`` timestamp; build a fresh one per request."""
        return (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")

    @staticmethod
    def build_password(short_code: str, passkey: str, timestamp: str) -> str:
        return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()

    def _require_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("consumer key", self.consumer_key),
                ("consumer secret", self.consumer_secret),
                ("short code", self.short_code),
                ("passkey", self.passkey),
            )
            if not value
        ]
        if missing:
            raise ProcessorError(f"M-Pesa is not configured: missing {', '.join(missing)}")

    async def _fetch_access_token(self) -> str:
        _, body = await self._request(
            "GET",
            f"{self.base_url}{OAUTH_PATH}",
            auth=(self.consumer_key, self.consumer_secret),
        )
        token = body.get("access_token")
        if not token:
            raise ProcessorError("M-Pesa OAuth response has no access_token")
        logger.info("Obtained new M-Pesa access token")
        return str(token)

    async def get_access_token(self, force: bool = False) -> str:
        return await self.token_cache.get_or_refresh(
            self._token_key, self._fetch_access_token, force=force
        )

    async def _authorized_request(
        self,
        path: str,
        build_body: Any,
        passthrough: Callable[[httpx.Response], bool] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """POST with a bearer token; ``build_body`` is called per attempt for a fresh timestamp."""
        token = await self.get_access_token()
        try:
            return await self._request(
                "POST",
                f"{self.base_url}{path}",
                json=build_body(),
                headers={"Authorization": f"Bearer {token}"},
                passthrough=passthrough,
            )
        except ProcessorError as e:
            if e.status_code != 401:
                raise
            logger.info("M-Pesa rejected the cached access token, refreshing")

        token = await self.get_access_token(force=True)
        return await self._request(
            "POST",
            f"{self.base_url}{path}",
            json=build_body(),
            headers={"Authorization": f"Bearer {token}"},
            passthrough=passthrough,
        )

    def _signed_fields(self) -> dict[str, str]:
        timestamp = self.build_timestamp()
        return {
            "BusinessShortCode": self.short_code,
            "Password": self.build_password(self.short_code, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def charge(
        self,
        amount: Decimal,
        payer_identifier: str,
        invoice_reference: str,
        callback_url: str,
    ) -> ChargeResult:
        """Send an STK push to ``payer_identifier`` (a normalized 254XXXXXXXXX number)."""
        self._require_credentials()
        whole_amount = to_whole_units(amount)

        def build_body() -> dict[str, Any]:
            return {
                **self._signed_fields(),
                "TransactionType": "CustomerPayBillOnline",
                "Amount": whole_amount,
                "PartyA": payer_identifier,
                "PartyB": self.short_code,
                "PhoneNumber": payer_identifier,
                "CallBackURL": callback_url,
                "AccountReference": invoice_reference[:12],
                "TransactionDesc": f"Payment for {invoice_reference}"[:13],
            }

        _, body = await self._authorized_request(STK_PUSH_PATH, build_body)

        response_code = str(body.get("ResponseCode", ""))
        checkout_request_id = body.get("CheckoutRequestID")
        if response_code != "0" or not checkout_request_id:
            raise ProcessorError(
                f"M-Pesa STK push rejected: {body.get('ResponseDescription') or body}",
                body=str(body),
            )

        logger.info(
            "STK push accepted for %s: checkout_request_id=%s",
            invoice_reference,
            checkout_request_id,
        )
        return ChargeResult(
            correlation_id=str(checkout_request_id),
            merchant_request_id=body.get("MerchantRequestID"),
            raw=body,
        )

    def parse_callback(self, payload: Any) -> CallbackResult:
        """Parse ``Body.stkCallback`` into a normalized outcome."""
        if not isinstance(payload, dict):
            return CallbackResult(valid=False)
        body = payload.get("Body")
        callback = body.get("stkCallback") if isinstance(body, dict) else None
        if not isinstance(callback, dict):
            return CallbackResult(valid=False)

        checkout_request_id = callback.get("CheckoutRequestID")
        result_code = callback.get("ResultCode")
        if not checkout_request_id or result_code is None:
            return CallbackResult(valid=False)
        try:
            code = int(result_code)
        except (TypeError, ValueError):
            return CallbackResult(valid=False)

        amount: Decimal | None = None
        phone: str | None = None
        receipt: str | None = None
        metadata = callback.get("CallbackMetadata")
        items = metadata.get("Item") if isinstance(metadata, dict) else None
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or item.get("Value") is None:
                continue
            name, value = item.get("Name"), item["Value"]
            if name == "Amount":
                try:
                    amount = Decimal(str(value))
                except ArithmeticError:
                    amount = None
            elif name == "PhoneNumber":
                phone = str(value)
            elif name == "MpesaReceiptNumber":
                receipt = str(value)

        return CallbackResult(
            valid=True,
            state=ProcessorState.SUCCEEDED if code == 0 else ProcessorState.FAILED,
            correlation_id=str(checkout_request_id),
            amount=amount,
            payer_identifier=phone,
            transaction_id=receipt,
            result_code=str(code),
            result_desc=callback.get("ResultDesc"),
        )

    async def query_status(self, correlation_id: str) -> StatusResult:
        """Poll the STK push query API for a checkout request."""
        try:
            self._require_credentials()
            status_code, body = await self._authorized_request(
                STK_QUERY_PATH,
                lambda: {**self._signed_fields(), "CheckoutRequestID": correlation_id},
                passthrough=is_still_processing,
            )
        except ProcessorError as e:
            logger.warning("M-Pesa status query for %s failed: %s", correlation_id, e)
            return StatusResult(ok=False, error=str(e))

        if status_code == 500:
            return StatusResult(
                ok=True,
                state=ProcessorState.PROCESSING,
                result_code=STILL_PROCESSING_ERROR_CODE,
                result_desc=body.get("errorMessage"),
                raw=body,
            )

        result_code = body.get("ResultCode")
        if result_code is None:
            state = ProcessorState.PROCESSING
        else:
            result_code = str(result_code)
            if result_code == "0":
                state = ProcessorState.SUCCEEDED
            elif result_code in STILL_PROCESSING_RESULT_CODES:
                state = ProcessorState.PROCESSING
            else:
                state = ProcessorState.FAILED

        return StatusResult(
            ok=True,
            state=state,
            result_code=result_code,
            result_desc=body.get("ResultDesc") or body.get("ResponseDescription"),
            raw=body,
        )
