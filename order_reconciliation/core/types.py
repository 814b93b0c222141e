"""Value types passed between the engine, the gateway adapter and the API."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class GatewayStatus(str, Enum):
    """Transaction outcome as reported by the gateway."""

    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ConfirmationSource(str, Enum):
    """Channel a payment confirmation arrived on."""

    WEBHOOK = "webhook"
    POLL = "poll"


class PendingOrderStatus(str, Enum):
    """Lifecycle of a checkout attempt."""

    INITIALIZED = "initialized"
    PENDING = "pending"
    INIT_FAILED = "init_failed"
    CONSUMED = "consumed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Pending orders in these states may still be converted into an order.
LIVE_PENDING_STATUSES = (
    PendingOrderStatus.INITIALIZED.value,
    PendingOrderStatus.PENDING.value,
    PendingOrderStatus.INIT_FAILED.value,
    PendingOrderStatus.EXPIRED.value,
)

# Subset that is still waiting on the customer (expired ones are not swept again).
AWAITING_PAYMENT_STATUSES = (
    PendingOrderStatus.INITIALIZED.value,
    PendingOrderStatus.PENDING.value,
    PendingOrderStatus.INIT_FAILED.value,
)


class PaymentState(str, Enum):
    """Payment status reported to clients polling a reference."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class LineItem:
    """One cart line with the unit price captured at add-to-cart time."""

    product_id: str
    quantity: int
    unit_price: Decimal
    name: str = ""

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize for the frozen cart snapshot (prices as exact strings)."""
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }


@dataclass(frozen=True)
class DeliveryAddress:
    street: str
    city: str
    region: str
    phone: str

    def is_complete(self) -> bool:
        return all(
            value and value.strip()
            for value in (self.street, self.city, self.region, self.phone)
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "street": self.street,
            "city": self.city,
            "region": self.region,
            "phone": self.phone,
        }


@dataclass(frozen=True)
class PriceBreakdown:
    """Totals in major currency units, already rounded to the minor unit."""

    subtotal: Decimal
    discount: Decimal
    credits: Decimal
    amount: Decimal


@dataclass(frozen=True)
class PaymentConfirmation:
    """
    A gateway report about one payment reference.

    Not persisted; the engine processes it idempotently.
    """

    reference: str
    gateway_status: GatewayStatus
    amount_paid_cents: int
    source: ConfirmationSource
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    paid_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentInitialization:
    """Redirect details returned by the gateway for a new transaction."""

    authorization_url: str
    access_code: str
    reference: str


@dataclass(frozen=True)
class InvoiceDocument:
    """Rendered invoice reference returned by the invoice collaborator."""

    invoice_number: str
    document_url: str


@dataclass(frozen=True)
class PendingOrderResult:
    pending_order_id: uuid.UUID
    payment_reference: str
    authorization_url: str
    access_code: str
    amount: Decimal
    amount_cents: int


@dataclass(frozen=True)
class PaymentStatusResult:
    reference: str
    status: PaymentState
    order_id: Optional[uuid.UUID] = None
    detail: Optional[str] = None
