"""Payment gateway integrations."""
from .paystack_client import CircuitBreaker, PaystackClient, confirmation_from_transaction
from .webhook_handler import InvalidSignature, MalformedWebhook, WebhookError, WebhookHandler

__all__ = [
    "CircuitBreaker",
    "InvalidSignature",
    "MalformedWebhook",
    "PaystackClient",
    "WebhookError",
    "WebhookHandler",
    "confirmation_from_transaction",
]
