"""Payment processor abstraction layer.

Supports the mobile-money push gateway (M-Pesa) and the card/bank gateway
(Paystack) behind one interface. Both share the same HTTP plumbing and retry
policy.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from collections.abc import Callable
from typing import Any

import httpx

from paybridge.core.config import settings
from paybridge.models.payment import PaymentMethod
from paybridge.services.token_cache import TokenCache

logger = logging.getLogger(__name__)

# The processors' edge infrastructure rejects requests that do not look like a browser.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
}

MAX_ERROR_BODY = 1000


class ProcessorState(str, Enum):
    """Normalized state reported by a status query."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"


class ProcessorError(Exception):
    """A processor call failed (auth, network, malformed response, misconfiguration)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body[:MAX_ERROR_BODY] if body else body

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.body:
            parts.append(f"body={self.body}")
        return " ".join(parts)


@dataclass
class ChargeResult:
    """Correlation ids returned by a successful charge request."""

    correlation_id: str
    raw: dict[str, Any]
    merchant_request_id: str | None = None
    authorization_url: str | None = None


@dataclass
class CallbackResult:
    """Normalized outcome of an inbound webhook payload."""

    valid: bool
    state: ProcessorState | None = None
    correlation_id: str | None = None
    amount: Decimal | None = None
    payer_identifier: str | None = None
    transaction_id: str | None = None
    result_code: str | None = None
    result_desc: str | None = None

    @property
    def success(self) -> bool:
        return self.state == ProcessorState.SUCCEEDED


@dataclass
class StatusResult:
    """Result of polling the processor for a transaction's state."""

    ok: bool
    state: ProcessorState | None = None
    result_code: str | None = None
    result_desc: str | None = None
    amount: Decimal | None = None
    transaction_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class RetryPolicy:
    """Exponential backoff for transient processor failures.

    Retries transport errors, timeouts, 5xx and 429. Any other 4xx fails at once.
    """

    max_retries: int = 3
    base_delay: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.processor_max_retries,
            base_delay=settings.processor_retry_base_delay,
        )

    def delay_for(self, attempt: int) -> float:
        return float(self.base_delay * (2**attempt))

    @staticmethod
    def is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or status_code >= 500


class PaymentProviderBase(ABC):
    """Abstract base class for payment processors."""

    display_name = "Processor"

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.timeout = timeout if timeout is not None else settings.processor_timeout_seconds
        self._http_client = http_client

    @property
    @abstractmethod
    def method(self) -> PaymentMethod:
        """Return the payment method this adapter serves."""
        pass  # pragma: no cover

    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        payer_identifier: str,
        invoice_reference: str,
        callback_url: str,
    ) -> ChargeResult:
        """Start a charge and return the processor's correlation ids."""
        pass  # pragma: no cover

    @abstractmethod
    def parse_callback(self, payload: Any) -> CallbackResult:
        """Parse a webhook payload. Never raises; malformed input yields ``valid=False``."""
        pass  # pragma: no cover

    @abstractmethod
    async def query_status(self, correlation_id: str) -> StatusResult:
        """Poll the processor for the state of a transaction."""
        pass  # pragma: no cover

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """Verify the webhook signature. Processors without one accept every payload."""
        return True

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _request(
        self,
        method: str,
        url: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        passthrough: Callable[[httpx.Response], bool] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """Make an HTTP request to the processor, retrying transient failures.

        Returns the status code and decoded JSON body. Error responses accepted
        by ``passthrough`` are returned to the caller instead of raising.
        """
        request_headers = {**BROWSER_HEADERS, **(headers or {})}
        kwargs: dict[str, Any] = {"headers": request_headers}
        if json is not None:
            kwargs["json"] = json
        if auth is not None:
            kwargs["auth"] = auth

        last_error: ProcessorError | None = None
        for attempt in range(self.retry_policy.max_retries + 1):
            try:
                response = await self._send(method, url, **kwargs)
            except httpx.TransportError as e:
                last_error = ProcessorError(f"{self.display_name} request failed: {e!r}")
            else:
                status_code = response.status_code
                if status_code < 400 or (passthrough is not None and passthrough(response)):
                    return status_code, self._decode(response)

                error = ProcessorError(
                    f"{self.display_name} request failed",
                    status_code=status_code,
                    body=response.text,
                )
                if not self.retry_policy.is_retryable_status(status_code):
                    raise error
                last_error = error

            if attempt < self.retry_policy.max_retries:
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "%s %s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    self.display_name,
                    method,
                    url,
                    last_error,
                    delay,
                    attempt + 1,
                    self.retry_policy.max_retries,
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ProcessorError(
                f"{self.display_name} returned a non-JSON response",
                status_code=response.status_code,
                body=response.text,
            ) from e
        if not isinstance(body, dict):
            raise ProcessorError(
                f"{self.display_name} returned an unexpected response",
                status_code=response.status_code,
                body=response.text,
            )
        return body


def get_payment_provider(
    method: PaymentMethod,
    token_cache: TokenCache | None = None,
) -> PaymentProviderBase:
    """Factory function to get the adapter for a payment method."""
    from paybridge.services.payment_providers.mpesa import MpesaProvider
    from paybridge.services.payment_providers.paystack import PaystackProvider

    if method == PaymentMethod.MPESA:
        return MpesaProvider(token_cache=token_cache)
    if method == PaymentMethod.PAYSTACK:
        return PaystackProvider()
    raise ValueError(f"Unsupported payment method: {method}")
