"""
FastAPI dependencies: caller identity and service wiring.

Authentication happens upstream; the gateway in front of this service
forwards the authenticated user in X-User-ID / X-User-Role headers.
Services are built once per process and can be swapped with
``app.dependency_overrides``.
"""
import uuid
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header

from order_reconciliation.config import get_settings
from order_reconciliation.core.errors import Forbidden, Unauthorized
from order_reconciliation.core.invoices import HttpInvoiceRenderer, InvoiceDispatcher
from order_reconciliation.core.reconciliation import ReconciliationEngine
from order_reconciliation.database.connection import get_session_factory
from order_reconciliation.integrations.paystack_client import PaystackClient
from order_reconciliation.integrations.webhook_handler import WebhookHandler
from order_reconciliation.monitoring.health import HealthCheck

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CurrentUser:
    user_id: uuid.UUID
    role: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    x_user_role: str = Header(default="customer", alias="X-User-Role"),
    x_user_email: Optional[str] = Header(default=None, alias="X-User-Email"),
) -> CurrentUser:
    """
    Resolve the authenticated caller from upstream headers.

    Raises:
        Unauthorized: If the user id header is missing or not a UUID
    """
    if not x_user_id:
        raise Unauthorized("Missing X-User-ID header")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError as e:
        raise Unauthorized("Malformed X-User-ID header") from e
    return CurrentUser(user_id=user_id, role=x_user_role.lower(), email=x_user_email)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    Raises:
        Forbidden: If the caller is not an admin
    """
    if not user.is_admin:
        raise Forbidden(f"User {user.user_id} is not an admin")
    return user


@lru_cache()
def get_gateway() -> PaystackClient:
    return PaystackClient()


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    """Build the process-wide reconciliation engine."""
    settings = get_settings()
    session_factory = get_session_factory()

    dispatcher = None
    if settings.invoice_service_url:
        dispatcher = InvoiceDispatcher(
            HttpInvoiceRenderer(settings.invoice_service_url),
            session_factory,
            settings=settings,
        )

    return ReconciliationEngine(
        session_factory=session_factory,
        gateway=get_gateway(),
        invoice_dispatcher=dispatcher,
        settings=settings,
    )


def get_webhook_handler(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    gateway: PaystackClient = Depends(get_gateway),
) -> WebhookHandler:
    return WebhookHandler(engine, gateway)


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()
