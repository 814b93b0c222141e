"""
Unit tests for the Paystack client.

The HTTP layer is replaced with httpx.MockTransport; nothing leaves the process.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, List

import httpx
import pytest

from order_reconciliation.config import Settings
from order_reconciliation.core.errors import (
    GatewayRejected,
    GatewayUnavailable,
    ReferenceNotFound,
)
from order_reconciliation.core.types import ConfirmationSource, GatewayStatus
from order_reconciliation.integrations.paystack_client import (
    CircuitBreaker,
    CircuitOpenError,
    PaystackClient,
    confirmation_from_transaction,
)


def _transaction(
    status: str = "success", amount: int = 2000, reference: str = "PAY-1-ABCDEFGH"
) -> Dict[str, Any]:
    return {
        "id": 4099260516,
        "status": status,
        "reference": reference,
        "amount": amount,
        "currency": "GHS",
        "paid_at": "2026-01-01T10:00:00.000Z",
    }


class RecordingHandler:
    """MockTransport handler that replays canned responses and records requests."""

    def __init__(self, responses: List[Callable[[httpx.Request], httpx.Response]]) -> None:
        self.responses = responses
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        return self.responses[index](request)


def _json(status_code: int, body: Any) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status_code, json=body)


def _client(test_settings: Settings, handler: RecordingHandler, **kwargs: Any) -> PaystackClient:
    return PaystackClient(
        settings=test_settings, transport=httpx.MockTransport(handler), **kwargs
    )


class TestInitialize:
    """Test suite for transaction initialization."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_success(self, test_settings: Settings) -> None:
        handler = RecordingHandler(
            [
                _json(
                    200,
                    {
                        "status": True,
                        "message": "Authorization URL created",
                        "data": {
                            "authorization_url": "https://checkout.paystack.com/abc123",
                            "access_code": "abc123",
                            "reference": "PAY-1-ABCDEFGH",
                        },
                    },
                )
            ]
        )
        client = _client(test_settings, handler)

        result = await client.initialize(
            amount_cents=2000,
            currency="GHS",
            reference="PAY-1-ABCDEFGH",
            email="customer@example.com",
            metadata={"pending_order_id": "p-1"},
        )

        assert result.authorization_url == "https://checkout.paystack.com/abc123"
        assert result.access_code == "abc123"
        assert result.reference == "PAY-1-ABCDEFGH"

        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/transaction/initialize"
        assert request.headers["Authorization"] == "Bearer sk_test_fake_key_for_testing"
        payload = json.loads(request.content)
        assert payload["amount"] == 2000
        assert payload["currency"] == "GHS"
        assert payload["email"] == "customer@example.com"
        assert payload["metadata"] == {"pending_order_id": "p-1"}
        assert "callback_url" not in payload
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_sends_callback_url(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"paystack_callback_url": "https://shop.example.com/payment/callback"}
        )
        handler = RecordingHandler(
            [_json(200, {"status": True, "data": {"authorization_url": "u", "access_code": "c"}})]
        )
        client = _client(settings, handler)

        result = await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        payload = json.loads(handler.requests[0].content)
        assert payload["callback_url"] == "https://shop.example.com/payment/callback"
        assert result.reference == "PAY-1-ABCDEFGH"
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, test_settings: Settings) -> None:
        handler = RecordingHandler(
            [
                _json(503, {"status": False, "message": "Service unavailable"}),
                _json(
                    200,
                    {"status": True, "data": {"authorization_url": "u", "access_code": "c"}},
                ),
            ]
        )
        client = _client(test_settings, handler)

        result = await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        assert result.access_code == "c"
        assert len(handler.requests) == 2
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(500, {"status": False, "message": "boom"})])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayUnavailable):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        assert len(handler.requests) == test_settings.gateway_retry_max_attempts
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(429, {"status": False, "message": "Too many requests"})])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayUnavailable):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        assert len(handler.requests) == 3
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, test_settings: Settings) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        handler = RecordingHandler([refuse])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayUnavailable, match="Connection refused"):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        assert len(handler.requests) == 3
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(400, {"status": False, "message": "Invalid email"})])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayRejected, match="Invalid email"):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "not-an-email")

        assert len(handler.requests) == 1
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_false_envelope_rejected(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(200, {"status": False, "message": "Duplicate reference"})])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayRejected, match="Duplicate reference"):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparsable_body_is_transient(self, test_settings: Settings) -> None:
        handler = RecordingHandler([lambda request: httpx.Response(200, text="<html>oops</html>")])
        client = _client(test_settings, handler)

        with pytest.raises(GatewayUnavailable):
            await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")
        await client.aclose()


class TestVerify:
    """Test suite for transaction verification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_success(self, test_settings: Settings) -> None:
        handler = RecordingHandler(
            [
                _json(
                    200,
                    {"status": True, "message": "Verification successful", "data": _transaction()},
                )
            ]
        )
        client = _client(test_settings, handler)

        confirmation = await client.verify("PAY-1-ABCDEFGH")

        assert confirmation.reference == "PAY-1-ABCDEFGH"
        assert confirmation.gateway_status == GatewayStatus.SUCCESS
        assert confirmation.amount_paid_cents == 2000
        assert confirmation.source == ConfirmationSource.POLL
        assert confirmation.paid_at is not None
        assert confirmation.paid_at.year == 2026
        assert handler.requests[0].method == "GET"
        assert handler.requests[0].url.path == "/transaction/verify/PAY-1-ABCDEFGH"
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_not_found(self, test_settings: Settings) -> None:
        handler = RecordingHandler(
            [_json(404, {"status": False, "message": "Transaction reference not found"})]
        )
        client = _client(test_settings, handler)

        with pytest.raises(ReferenceNotFound):
            await client.verify("PAY-1-MISSING0")

        assert len(handler.requests) == 1
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("success", GatewayStatus.SUCCESS),
            ("failed", GatewayStatus.FAILED),
            ("reversed", GatewayStatus.FAILED),
            ("abandoned", GatewayStatus.ABANDONED),
            ("ongoing", GatewayStatus.ABANDONED),
        ],
    )
    async def test_verify_status_mapping(
        self, test_settings: Settings, gateway_status: str, expected: GatewayStatus
    ) -> None:
        handler = RecordingHandler(
            [_json(200, {"status": True, "data": _transaction(status=gateway_status)})]
        )
        client = _client(test_settings, handler)

        confirmation = await client.verify("PAY-1-ABCDEFGH")

        assert confirmation.gateway_status == expected
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_malformed_transaction(self, test_settings: Settings) -> None:
        handler = RecordingHandler(
            [_json(200, {"status": True, "data": {"status": "success", "reference": "PAY-1"}})]
        )
        client = _client(test_settings, handler)

        with pytest.raises(GatewayUnavailable, match="malformed"):
            await client.verify("PAY-1")
        await client.aclose()


class TestCircuitBreaker:
    """Test suite for the circuit breaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(503, {"status": False})])
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        client = _client(test_settings, handler, circuit_breaker=breaker)

        with pytest.raises(CircuitOpenError):
            await client.verify("PAY-1-ABCDEFGH")

        assert breaker.state == "open"
        assert len(handler.requests) == 2

        # open circuit fails fast without a network call
        with pytest.raises(CircuitOpenError):
            await client.verify("PAY-1-ABCDEFGH")
        assert len(handler.requests) == 2
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_do_not_open_circuit(self, test_settings: Settings) -> None:
        handler = RecordingHandler([_json(400, {"status": False, "message": "Bad request"})])
        breaker = CircuitBreaker(failure_threshold=1)
        client = _client(test_settings, handler, circuit_breaker=breaker)

        for _ in range(3):
            with pytest.raises(GatewayRejected):
                await client.initialize(2000, "GHS", "PAY-1-ABCDEFGH", "customer@example.com")

        assert breaker.state == "closed"
        await client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_recovery(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=60, success_threshold=2)

        async def fail() -> None:
            raise GatewayUnavailable("down")

        async def succeed() -> str:
            return "ok"

        with pytest.raises(GatewayUnavailable):
            await breaker.call(fail)
        assert breaker.state == "open"

        breaker.last_failure_time = time.monotonic() - 61
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == "half_open"
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, timeout=60)

        async def fail() -> None:
            raise GatewayUnavailable("down")

        breaker.state = "open"
        breaker.last_failure_time = time.monotonic() - 61

        with pytest.raises(GatewayUnavailable):
            await breaker.call(fail)
        assert breaker.state == "open"


class TestWebhookSignature:
    """Test suite for webhook signature verification."""

    BODY = b'{"event":"charge.success","data":{"reference":"PAY-1-ABCDEFGH","amount":2000}}'

    def _sign(self, body: bytes, secret: str = "sk_test_fake_key_for_testing") -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()

    @pytest.mark.unit
    def test_valid_signature(self, test_settings: Settings) -> None:
        client = PaystackClient(settings=test_settings)

        assert client.verify_webhook_signature(self.BODY, self._sign(self.BODY))
        assert client.verify_webhook_signature(self.BODY, self._sign(self.BODY).upper())

    @pytest.mark.unit
    def test_reserialized_body_fails(self, test_settings: Settings) -> None:
        """The signature covers the exact bytes received, not the parsed JSON."""
        client = PaystackClient(settings=test_settings)
        signature = self._sign(self.BODY)
        reserialized = json.dumps(json.loads(self.BODY)).encode("utf-8")

        assert reserialized != self.BODY
        assert not client.verify_webhook_signature(reserialized, signature)

    @pytest.mark.unit
    def test_wrong_secret_fails(self, test_settings: Settings) -> None:
        client = PaystackClient(settings=test_settings)

        assert not client.verify_webhook_signature(
            self.BODY, self._sign(self.BODY, secret="sk_test_someone_else")
        )

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_missing_or_garbage_signature_fails(
        self, test_settings: Settings, signature: Any
    ) -> None:
        client = PaystackClient(settings=test_settings)

        assert not client.verify_webhook_signature(self.BODY, signature)


class TestConfirmationFromTransaction:
    """Test suite for gateway transaction parsing."""

    @pytest.mark.unit
    def test_string_amount_accepted(self) -> None:
        confirmation = confirmation_from_transaction(
            _transaction(amount="2000"), ConfirmationSource.WEBHOOK  # type: ignore[arg-type]
        )

        assert confirmation.amount_paid_cents == 2000

    @pytest.mark.unit
    def test_camel_case_paid_at(self) -> None:
        data = _transaction()
        data.pop("paid_at")
        data["paidAt"] = "2026-01-01T10:00:00Z"

        confirmation = confirmation_from_transaction(data, ConfirmationSource.WEBHOOK)

        assert confirmation.paid_at is not None
        assert confirmation.paid_at.tzinfo is not None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "data",
        [
            {"status": "success", "amount": 2000},
            {"reference": "PAY-1", "status": "success"},
            {"reference": "PAY-1", "status": "success", "amount": True},
            {"reference": "PAY-1", "status": "success", "amount": "twenty"},
        ],
    )
    def test_malformed_transactions(self, data: Dict[str, Any]) -> None:
        with pytest.raises(ValueError):
            confirmation_from_transaction(data, ConfirmationSource.WEBHOOK)
