"""
Paystack webhook handler.

Implements:
- Signature verification over the raw request bytes
- Event parsing and routing by event type
- Idempotent application through the reconciliation engine

Deduplication needs no event store: the engine's confirm_payment returns
the existing order for a reference that was already applied.
"""
import dataclasses
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from order_reconciliation.core.errors import (
    PaymentFailed,
    PaymentMismatch,
    UnknownReference,
)
from order_reconciliation.core.reconciliation import ReconciliationEngine
from order_reconciliation.core.types import (
    ConfirmationSource,
    GatewayStatus,
    PaymentConfirmation,
)
from order_reconciliation.integrations.paystack_client import confirmation_from_transaction
from order_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

# Terminal outcomes the gateway must not redeliver
ACKNOWLEDGED_ERRORS = (PaymentFailed, PaymentMismatch, UnknownReference)


class WebhookError(Exception):
    """Raised when a webhook request cannot be accepted."""

    pass


class InvalidSignature(WebhookError):
    pass


class MalformedWebhook(WebhookError):
    pass


class SignatureVerifier(Protocol):
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        ...


class WebhookHandler:
    """
    Handles Paystack webhook events.

    Features:
    - HMAC-SHA512 signature verification
    - Event type routing to registered handlers
    - charge.success / charge.failed applied via confirm_payment
    """

    def __init__(self, engine: ReconciliationEngine, verifier: SignatureVerifier):
        """
        Initialize webhook handler.

        Args:
            engine: Reconciliation engine that applies confirmations
            verifier: Object that checks webhook signatures (the gateway client)
        """
        self.engine = engine
        self.verifier = verifier
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("charge.success", self.handle_charge_success)
        self.register_handler("charge.failed", self.handle_charge_failed)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Raises:
            InvalidSignature: If the signature is missing or does not match
        """
        if not self.verifier.verify_webhook_signature(raw_body, signature):
            logger.warning(
                "webhook_signature_verification_failed",
                signature_present=bool(signature),
                body_length=len(raw_body),
            )
            raise InvalidSignature("Invalid webhook signature")

    @staticmethod
    def parse_event(raw_body: bytes) -> Dict[str, Any]:
        """
        Decode a webhook body into an event dict with ``event`` and ``data``.

        Raises:
            MalformedWebhook: If the body is not a JSON event object
        """
        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedWebhook(f"Webhook body is not valid JSON: {e}") from e

        if not isinstance(event, dict) or not isinstance(event.get("event"), str):
            raise MalformedWebhook("Webhook body has no event type")
        if not isinstance(event.get("data"), dict):
            raise MalformedWebhook("Webhook body has no data object")
        return event

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, parse and process a raw webhook delivery.

        Returns:
            Dict[str, Any]: Processing result with a ``status`` key

        Raises:
            InvalidSignature: Signature check failed
            MalformedWebhook: Body could not be parsed
        """
        self.verify_signature(raw_body, signature)
        event = self.parse_event(raw_body)
        return await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Transient failures propagate so the gateway redelivers; terminal
        domain outcomes are acknowledged.
        """
        start = time.perf_counter()
        event_type = event["event"]
        reference = event["data"].get("reference")

        logger.info("processing_webhook_event", event_type=event_type, reference=reference)

        handler = self.event_handlers.get(event_type)
        if handler is None:
            metrics.record_webhook_event(event_type, "ignored", time.perf_counter() - start)
            logger.info("webhook_event_ignored", event_type=event_type, reference=reference)
            return {
                "status": "ignored",
                "event_type": event_type,
                "message": f"No handler registered for event type: {event_type}",
            }

        try:
            result = await handler(event)
        except MalformedWebhook:
            metrics.record_webhook_event(event_type, "malformed", time.perf_counter() - start)
            raise
        except ACKNOWLEDGED_ERRORS as e:
            metrics.record_webhook_event(event_type, "rejected", time.perf_counter() - start)
            logger.warning(
                "webhook_event_rejected",
                event_type=event_type,
                reference=reference,
                error_code=e.error_code,
                error=e.message,
            )
            return {
                "status": "rejected",
                "event_type": event_type,
                "reference": reference,
                "error_code": e.error_code,
            }
        except Exception as e:
            metrics.record_webhook_event(event_type, "error", time.perf_counter() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_type=event_type,
                reference=reference,
                error=str(e),
            )
            raise

        metrics.record_webhook_event(event_type, "processed", time.perf_counter() - start)
        logger.info("webhook_event_processed", event_type=event_type, reference=reference)
        return {"status": "processed", "event_type": event_type, **result}

    def _confirmation(
        self, event: Dict[str, Any], gateway_status: Optional[GatewayStatus] = None
    ) -> PaymentConfirmation:
        try:
            confirmation = confirmation_from_transaction(
                event["data"], ConfirmationSource.WEBHOOK, raw_payload=event
            )
        except ValueError as e:
            raise MalformedWebhook(f"Webhook transaction is malformed: {e}") from e
        if gateway_status is not None:
            confirmation = dataclasses.replace(confirmation, gateway_status=gateway_status)
        return confirmation

    async def handle_charge_success(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a successful charge; returns the resulting order."""
        order = await self.engine.confirm_payment(self._confirmation(event))
        return {
            "reference": order.payment_reference,
            "order_id": str(order.id),
            "order_number": order.order_number,
        }

    async def handle_charge_failed(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a failed charge.

        confirm_payment marks the pending order failed and raises
        PaymentFailed, which is acknowledged; if another channel already
        produced an order it is returned unchanged.
        """
        confirmation = self._confirmation(event, GatewayStatus.FAILED)
        order = await self.engine.confirm_payment(confirmation)
        return {
            "reference": order.payment_reference,
            "order_id": str(order.id),
            "order_number": order.order_number,
        }
