"""
Paystack REST client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors (network, timeouts, 5xx, 429)
- Circuit breaker pattern
- Transaction initialize / verify
- Webhook signature verification (HMAC-SHA512 over the raw body)
"""
import hashlib
import hmac
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.core.errors import (
    GatewayRejected,
    GatewayUnavailable,
    ReferenceNotFound,
)
from order_reconciliation.core.types import (
    ConfirmationSource,
    GatewayStatus,
    PaymentConfirmation,
    PaymentInitialization,
)
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Gateway transaction statuses that are final failures; anything else that
# is not "success" is still open on the customer's side.
FAILED_TRANSACTION_STATUSES = frozenset({"failed", "reversed"})


class CircuitOpenError(GatewayUnavailable):
    """Raised without a network call while the circuit is open."""

    error_code = "gateway_circuit_open"


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Only transient failures (GatewayUnavailable) count towards opening the
    circuit; a rejected request is a healthy gateway answering no.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise CircuitOpenError("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _parse_paid_at(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("unparsable_paid_at", value=value)
        return None


def confirmation_from_transaction(
    data: Dict[str, Any],
    source: ConfirmationSource,
    raw_payload: Optional[Dict[str, Any]] = None,
) -> PaymentConfirmation:
    """
    Build a PaymentConfirmation from a gateway transaction object.

    Used for both verify responses and webhook event data.

    Raises:
        ValueError: If the reference or amount is missing or malformed
    """
    reference = data.get("reference")
    if not reference or not isinstance(reference, str):
        raise ValueError("transaction has no reference")

    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, str)):
        raise ValueError("transaction has no amount")
    amount_cents = int(amount)

    status = str(data.get("status", "")).lower()
    if status == "success":
        gateway_status = GatewayStatus.SUCCESS
    elif status in FAILED_TRANSACTION_STATUSES:
        gateway_status = GatewayStatus.FAILED
    else:
        gateway_status = GatewayStatus.ABANDONED

    return PaymentConfirmation(
        reference=reference,
        gateway_status=gateway_status,
        amount_paid_cents=amount_cents,
        source=source,
        raw_payload=raw_payload if raw_payload is not None else data,
        paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
    )


class PaystackClient:
    """
    Async wrapper for the Paystack transaction API.

    Features:
    - Automatic retry with exponential backoff on transient errors
    - Circuit breaker pattern
    - Error classification into the reconciliation error taxonomy
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Paystack client.

        Args:
            settings: Optional settings (defaults to environment settings)
            http_client: Optional preconfigured httpx client
            transport: Optional httpx transport (tests use httpx.MockTransport)
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings or get_settings()
        self._secret = self.settings.paystack_secret_key
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.paystack_base_url,
            timeout=self.settings.paystack_timeout_seconds,
            headers={
                "Authorization": f"Bearer {self._secret}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "paystack_client_initialized",
            base_url=self.settings.paystack_base_url,
            test_mode=self.settings.is_test_mode,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request_once(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform one HTTP call and classify the outcome.

        Returns:
            Dict[str, Any]: The ``data`` member of the gateway envelope

        Raises:
            GatewayUnavailable: Network error, timeout, 5xx, 429 or garbage body
            ReferenceNotFound: 404 on a verify call
            GatewayRejected: Any other 4xx, or a ``status: false`` envelope
        """
        start = time.perf_counter()
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            duration = time.perf_counter() - start
            metrics.record_gateway_call(operation, "network_error", duration)
            metrics.record_gateway_error("unavailable")
            logger.warning(
                "gateway_network_error",
                operation=operation,
                error=str(e),
                error_class=type(e).__name__,
            )
            raise GatewayUnavailable(f"Gateway request failed: {e}") from e

        duration = time.perf_counter() - start
        status_code = response.status_code
        metrics.record_gateway_call(operation, str(status_code), duration)

        try:
            body = response.json()
        except ValueError:
            body = None

        message = body.get("message") if isinstance(body, dict) else None

        if status_code >= 500 or status_code == 429:
            metrics.record_gateway_error("unavailable")
            logger.warning(
                "gateway_unavailable",
                operation=operation,
                status_code=status_code,
                gateway_message=message,
            )
            raise GatewayUnavailable(f"Gateway returned {status_code}")

        if status_code == 404 and operation == "verify":
            metrics.record_gateway_error("not_found")
            raise ReferenceNotFound(message or "Transaction reference not found")

        if status_code >= 400:
            metrics.record_gateway_error("rejected")
            logger.error(
                "gateway_rejected",
                operation=operation,
                status_code=status_code,
                gateway_message=message,
            )
            raise GatewayRejected(message or f"Gateway rejected the request ({status_code})")

        if not isinstance(body, dict):
            metrics.record_gateway_error("unavailable")
            raise GatewayUnavailable("Gateway returned an unparsable response")

        if not body.get("status"):
            metrics.record_gateway_error("rejected")
            raise GatewayRejected(message or "Gateway rejected the request")

        data = body.get("data")
        if not isinstance(data, dict):
            metrics.record_gateway_error("unavailable")
            raise GatewayUnavailable("Gateway response has no data")
        return data

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda e: isinstance(e, GatewayUnavailable) and not isinstance(e, CircuitOpenError)
            ),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(
                    self._request_once, operation, method, path, payload
                )
        raise GatewayUnavailable("Gateway retries exhausted")  # pragma: no cover

    async def initialize(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
        email: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentInitialization:
        """
        Initialize a transaction and obtain the customer redirect URL.

        Args:
            amount_cents: Amount in minor units
            currency: ISO currency code
            reference: Our payment reference (reused on retry)
            email: Customer email (required by the gateway)
            metadata: Optional metadata echoed back in webhooks

        Returns:
            PaymentInitialization: Authorization URL and access code

        Raises:
            GatewayUnavailable: After retries are exhausted
            GatewayRejected: If the gateway refuses the request
        """
        logger.info(
            "initializing_transaction",
            reference=reference,
            amount_cents=amount_cents,
            currency=currency,
        )

        payload: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "reference": reference,
            "email": email,
            "metadata": metadata or {},
        }
        if self.settings.paystack_callback_url:
            payload["callback_url"] = self.settings.paystack_callback_url

        data = await self._request("initialize", "POST", "/transaction/initialize", payload)

        initialization = PaymentInitialization(
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code", ""),
            reference=data.get("reference") or reference,
        )

        logger.info("transaction_initialized", reference=initialization.reference)
        return initialization

    async def verify(self, reference: str) -> PaymentConfirmation:
        """
        Fetch the gateway's view of a transaction.

        Idempotent; safe to call any number of times.

        Raises:
            ReferenceNotFound: The gateway has no record of the reference
            GatewayUnavailable: After retries are exhausted
            GatewayRejected: If the gateway refuses the request
        """
        logger.info("verifying_transaction", reference=reference)

        data = await self._request(
            "verify", "GET", f"/transaction/verify/{quote(reference, safe='')}"
        )
        try:
            confirmation = confirmation_from_transaction(data, ConfirmationSource.POLL)
        except ValueError as e:
            raise GatewayUnavailable(f"Gateway verify response is malformed: {e}") from e

        logger.info(
            "transaction_verified",
            reference=reference,
            gateway_status=confirmation.gateway_status.value,
            amount_paid_cents=confirmation.amount_paid_cents,
        )
        return confirmation

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Check a webhook signature.

        The signature is the hex HMAC-SHA512 of the exact request bytes keyed
        with the secret key. A re-serialized body will not match.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the signature header

        Returns:
            bool: True if the signature matches
        """
        if not signature or not self._secret:
            return False

        expected = hmac.new(
            self._secret.encode("utf-8"),
            raw_body,
            hashlib.sha512,
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())
