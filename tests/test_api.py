"""
Integration tests for the HTTP API.

Services are bound to a per-test SQLite database through dependency
overrides; the gateway's network calls are mocked.
"""
import hashlib
import hmac
import json
import uuid
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from order_reconciliation.core.errors import GatewayUnavailable
from order_reconciliation.core.types import ConfirmationSource, GatewayStatus

TEST_SECRET_KEY = "sk_test_fake_key_for_testing"
USER_ID = "123e4567-e89b-12d3-a456-426614174000"
ADMIN_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"

CUSTOMER_HEADERS = {"X-User-ID": USER_ID, "X-User-Email": "customer@example.com"}
ADMIN_HEADERS = {"X-User-ID": ADMIN_ID, "X-User-Role": "admin"}


def _signed(event: Dict[str, Any]) -> Dict[str, Any]:
    body = json.dumps(event, separators=(",", ":")).encode("utf-8")
    signature = hmac.new(TEST_SECRET_KEY.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return {
        "content": body,
        "headers": {"X-Paystack-Signature": signature, "Content-Type": "application/json"},
    }


def _charge(reference: str, amount: int = 2000, event_type: str = "charge.success") -> Dict[str, Any]:
    return {
        "event": event_type,
        "data": {"reference": reference, "amount": amount, "status": "success", "currency": "GHS"},
    }


async def _create(client: AsyncClient, payload: Dict[str, Any]) -> Dict[str, Any]:
    response = await client.post("/orders", json=payload, headers=CUSTOMER_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def _paid_order(client: AsyncClient, payload: Dict[str, Any]) -> Dict[str, Any]:
    created = await _create(client, payload)
    response = await client.post(
        "/orders/webhook/paystack", **_signed(_charge(created["payment_reference"]))
    )
    assert response.json()["status"] == "processed", response.text
    return response.json()


class TestOrderEndpoints:
    """Integration tests for order endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any], mock_gateway: AsyncMock
    ) -> None:
        response = await client.post("/orders", json=sample_order_payload, headers=CUSTOMER_HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["amount"] == "20.00"
        assert data["amount_cents"] == 2000
        assert data["payment_reference"].startswith("PAY-")
        assert data["authorization_url"] == "https://checkout.paystack.com/abc123"
        assert mock_gateway.initialize.await_args.kwargs["email"] == "customer@example.com"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_requires_user(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        response = await client.post("/orders", json=sample_order_payload)

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "Authentication required.",
            "error_code": "unauthorized",
            "errors": ["Authentication required."],
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_validation_envelope(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        payload = {**sample_order_payload, "items": []}

        response = await client.post("/orders", json=payload, headers=CUSTOMER_HEADERS)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "validation_error"
        assert any(error.startswith("items") for error in body["errors"])

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_credits_exceed_subtotal(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        payload = {**sample_order_payload, "credits": "25.00"}

        response = await client.post("/orders", json=payload, headers=CUSTOMER_HEADERS)

        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_pricing_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_gateway_down(
        self,
        client: AsyncClient,
        sample_order_payload: Dict[str, Any],
        mock_gateway: AsyncMock,
    ) -> None:
        mock_gateway.initialize.side_effect = GatewayUnavailable("Gateway returned 503")

        response = await client.post("/orders", json=sample_order_payload, headers=CUSTOMER_HEADERS)

        assert response.status_code == 502
        assert response.json()["error_code"] == "gateway_unavailable"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_materializes_order(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.get(f"/orders/{result['order_id']}", headers=CUSTOMER_HEADERS)

        assert response.status_code == 200
        order = response.json()["data"]
        assert order["status"] == "processing"
        assert order["amount"] == "20.00"
        assert order["order_number"] == result["order_number"]
        assert len(order["status_history"]) == 1
        assert order["status_history"][0]["to_status"] == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_redelivery_is_idempotent(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        created = await _create(client, sample_order_payload)
        request = _signed(_charge(created["payment_reference"]))

        first = await client.post("/orders/webhook/paystack", **request)
        second = await client.post("/orders/webhook/paystack", **request)

        assert first.status_code == second.status_code == 200
        assert first.json()["order_id"] == second.json()["order_id"]

        listing = await client.get("/orders", headers=CUSTOMER_HEADERS)
        assert listing.json()["data"]["pagination"]["total"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_bad_signature(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        created = await _create(client, sample_order_payload)
        request = _signed(_charge(created["payment_reference"]))
        request["headers"]["X-Paystack-Signature"] = "0" * 128

        response = await client.post("/orders/webhook/paystack", **request)

        assert response.status_code == 400
        listing = await client.get("/orders", headers=CUSTOMER_HEADERS)
        assert listing.json()["data"]["pagination"]["total"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_amount_mismatch_acknowledged(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        created = await _create(client, sample_order_payload)

        response = await client.post(
            "/orders/webhook/paystack",
            **_signed(_charge(created["payment_reference"], amount=1500)),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["error_code"] == "payment_mismatch"

        pending = await client.get(
            f"/orders/pending/{created['pending_order_id']}", headers=CUSTOMER_HEADERS
        )
        assert pending.json()["data"]["status"] == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_transient_error_returns_500(
        self,
        client: AsyncClient,
        sample_order_payload: Dict[str, Any],
        mocker: Any,
    ) -> None:
        created = await _create(client, sample_order_payload)
        mocker.patch(
            "order_reconciliation.core.reconciliation.ReconciliationEngine.confirm_payment",
            side_effect=RuntimeError("database unavailable"),
        )

        response = await client.post(
            "/orders/webhook/paystack", **_signed(_charge(created["payment_reference"]))
        )

        assert response.status_code == 500

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_payment(
        self,
        client: AsyncClient,
        sample_order_payload: Dict[str, Any],
        mock_gateway: AsyncMock,
        make_confirmation: Any,
    ) -> None:
        created = await _create(client, sample_order_payload)
        reference = created["payment_reference"]

        mock_gateway.verify.return_value = make_confirmation(
            reference, gateway_status=GatewayStatus.ABANDONED, source=ConfirmationSource.POLL
        )
        pending = await client.post(
            "/orders/verify-payment", json={"reference": reference}, headers=CUSTOMER_HEADERS
        )
        assert pending.status_code == 202
        assert pending.json()["data"]["status"] == "pending"

        mock_gateway.verify.return_value = make_confirmation(
            reference, source=ConfirmationSource.POLL
        )
        verified = await client.post(
            "/orders/verify-payment", json={"reference": reference}, headers=CUSTOMER_HEADERS
        )
        assert verified.status_code == 200
        data = verified.json()["data"]
        assert data["status"] == "completed"
        assert data["order"]["payment_reference"] == reference
        assert data["order"]["status"] == "processing"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_failed_payment(
        self,
        client: AsyncClient,
        sample_order_payload: Dict[str, Any],
        mock_gateway: AsyncMock,
        make_confirmation: Any,
    ) -> None:
        created = await _create(client, sample_order_payload)
        reference = created["payment_reference"]
        mock_gateway.verify.return_value = make_confirmation(
            reference, gateway_status=GatewayStatus.FAILED, source=ConfirmationSource.POLL
        )

        response = await client.post(
            "/orders/verify-payment", json={"reference": reference}, headers=CUSTOMER_HEADERS
        )

        assert response.status_code == 402
        assert response.json()["error_code"] == "payment_failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_status_unknown_reference(self, client: AsyncClient) -> None:
        response = await client.get(
            "/orders/payment-status",
            params={"reference": "PAY-0-NOTAREF1"},
            headers=CUSTOMER_HEADERS,
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "unknown_reference"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_status_after_webhook(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any], mock_gateway: AsyncMock
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.get(
            "/orders/payment-status",
            params={"reference": result["reference"]},
            headers=CUSTOMER_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"
        assert response.json()["data"]["order_id"] == result["order_id"]
        mock_gateway.verify.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_order_of_other_user(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.get(
            f"/orders/{result['order_id']}", headers={"X-User-ID": str(uuid.uuid4())}
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

        as_admin = await client.get(f"/orders/{result['order_id']}", headers=ADMIN_HEADERS)
        assert as_admin.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_order_by_number(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.get(
            f"/orders/number/{result['order_number']}", headers=CUSTOMER_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["data"]["id"] == result["order_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_orders(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        for _ in range(3):
            await _paid_order(client, sample_order_payload)

        response = await client.get(
            "/orders", params={"page": 2, "limit": 2}, headers=CUSTOMER_HEADERS
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["orders"]) == 1
        assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "total_pages": 2}

        filtered = await client.get(
            "/orders", params={"status": "shipped"}, headers=CUSTOMER_HEADERS
        )
        assert filtered.json()["data"]["orders"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_orders_limit_capped(self, client: AsyncClient) -> None:
        response = await client.get("/orders", params={"limit": 500}, headers=CUSTOMER_HEADERS)

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_pending_and_retry(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        created = await _create(client, sample_order_payload)
        pending_id = created["pending_order_id"]

        retry = await client.post(
            f"/orders/pending/{pending_id}/retry-payment", headers=CUSTOMER_HEADERS
        )
        assert retry.status_code == 200
        assert retry.json()["data"]["payment_reference"] == created["payment_reference"]

        cancelled = await client.post(f"/orders/pending/{pending_id}/cancel", headers=CUSTOMER_HEADERS)
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"

        again = await client.post(
            f"/orders/pending/{pending_id}/retry-payment", headers=CUSTOMER_HEADERS
        )
        assert again.status_code == 409
        assert again.json()["error_code"] == "illegal_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_pending_after_payment(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        created = await _create(client, sample_order_payload)
        await client.post(
            "/orders/webhook/paystack", **_signed(_charge(created["payment_reference"]))
        )

        response = await client.post(
            f"/orders/pending/{created['pending_order_id']}/cancel", headers=CUSTOMER_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "already_confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_customer_cancel_order(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.post(
            f"/orders/{result['order_id']}/cancel",
            json={"reason": "Ordered by mistake"},
            headers=CUSTOMER_HEADERS,
        )

        assert response.status_code == 200
        order = response.json()["data"]
        assert order["status"] == "cancelled"
        assert order["status_history"][-1]["reason"] == "Ordered by mistake"


class TestAdminEndpoints:
    """Integration tests for admin endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_update_requires_admin(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.put(
            f"/orders/{result['order_id']}/status",
            json={"status": "shipped"},
            headers=CUSTOMER_HEADERS,
        )

        assert response.status_code == 403
        assert response.json()["error_code"] == "forbidden"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)
        order_id = result["order_id"]

        for target in ("shipped", "delivered"):
            response = await client.put(
                f"/orders/{order_id}/status",
                json={"status": target, "reason": f"Courier update: {target}"},
                headers=ADMIN_HEADERS,
            )
            assert response.status_code == 200, response.text
            assert response.json()["data"]["status"] == target

        response = await client.post(f"/orders/{order_id}/cancel", headers=CUSTOMER_HEADERS)

        assert response.status_code == 409
        assert response.json()["error_code"] == "illegal_transition"

        order = await client.get(f"/orders/{order_id}", headers=CUSTOMER_HEADERS)
        history = order.json()["data"]["status_history"]
        assert [entry["to_status"] for entry in history] == ["processing", "shipped", "delivered"]
        assert history[1]["changed_by"] == ADMIN_ID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_status_rejected(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        result = await _paid_order(client, sample_order_payload)

        response = await client.put(
            f"/orders/{result['order_id']}/status",
            json={"status": "teleported"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_stats(
        self, client: AsyncClient, sample_order_payload: Dict[str, Any]
    ) -> None:
        await _paid_order(client, sample_order_payload)
        await _paid_order(client, sample_order_payload)

        forbidden = await client.get("/orders/admin/stats", headers=CUSTOMER_HEADERS)
        assert forbidden.status_code == 403

        response = await client.get("/orders/admin/stats", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["total_orders"] == 2
        assert stats["by_status"]["processing"] == 2
        assert stats["total_revenue"] == "40.00"
        assert stats["currency"] == "GHS"


class TestMonitoringEndpoints:
    """Integration tests for monitoring endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["paystack"]["test_mode"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.status_code == 200
        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "payment_confirmations_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_propagated(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
