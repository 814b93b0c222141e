"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from order_reconciliation.core.pricing import from_minor_units
from order_reconciliation.core.state_machine import OrderStatus
from order_reconciliation.core.types import DeliveryAddress, LineItem, PaymentState

T = TypeVar("T")


# ============================================================================
# REQUESTS
# ============================================================================

class CartItemRequest(BaseModel):
    """One cart line with the unit price captured when it was added."""

    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1, max_length=100, description="Product identifier")
    name: str = Field(default="", max_length=255, description="Product name at checkout")
    quantity: int = Field(..., gt=0, le=1000, description="Quantity ordered")
    unit_price: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2, description="Unit price")

    def to_line_item(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            name=self.name,
        )


class DeliveryAddressRequest(BaseModel):
    """Delivery address; every field is required."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    street: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    region: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=5, max_length=30)

    def to_address(self) -> DeliveryAddress:
        return DeliveryAddress(
            street=self.street, city=self.city, region=self.region, phone=self.phone
        )


class CreateOrderRequest(BaseModel):
    """Request schema for creating a pending order from a cart."""

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "items": [
                        {
                            "product_id": "prod_tomatoes",
                            "name": "Tomatoes (1kg)",
                            "quantity": 2,
                            "unit_price": "10.00",
                        }
                    ],
                    "delivery_address": {
                        "street": "12 Palm Avenue",
                        "city": "Accra",
                        "region": "Greater Accra",
                        "phone": "+233201234567",
                    },
                    "discount": "0.00",
                    "credits": "0.00",
                    "notes": "Leave at the gate",
                }
            ]
        },
    )

    items: List[CartItemRequest] = Field(..., min_length=1, description="Cart lines")
    delivery_address: DeliveryAddressRequest
    discount: Decimal = Field(default=Decimal("0"), ge=0, description="Discount amount")
    credits: Decimal = Field(default=Decimal("0"), ge=0, description="Store credits applied")
    notes: Optional[str] = Field(default=None, max_length=500, description="Delivery notes")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reference: str = Field(..., min_length=1, max_length=100, description="Payment reference")


class CancelOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")


class UpdateOrderStatusRequest(BaseModel):
    """Admin request to move an order through the status state machine."""

    model_config = ConfigDict(extra="forbid")

    status: OrderStatus = Field(..., description="Target status")
    reason: Optional[str] = Field(default=None, max_length=500, description="Reason for change")


# ============================================================================
# RESPONSES
# ============================================================================

class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str]
    to_status: str
    changed_by: Optional[UUID]
    reason: Optional[str]
    created_at: datetime


class OrderResponse(BaseModel):
    """Response schema for a materialized order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Order ID")
    order_number: str = Field(..., description="Human-readable order number (ORD-XXXX-XXXX)")
    invoice_number: str = Field(..., description="Invoice number (INV-XXXX-XXXX)")
    user_id: UUID
    line_items: List[Dict[str, Any]]
    delivery_address: Dict[str, Any]
    delivery_notes: Optional[str] = None
    subtotal_cents: int
    discount_cents: int
    credits_cents: int
    amount_cents: int = Field(..., description="Amount paid in minor units")
    currency: str
    status: OrderStatus
    invoice_document_ref: Optional[str] = None
    payment_reference: str
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusHistoryResponse] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)


class PendingOrderResponse(BaseModel):
    """Response schema for a checkout attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    payment_reference: str
    cart_snapshot: List[Dict[str, Any]]
    delivery_address: Dict[str, Any]
    delivery_notes: Optional[str] = None
    amount_cents: int
    currency: str
    status: str
    failure_reason: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    order_id: Optional[UUID] = None
    created_at: datetime
    expires_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_cents)


class PendingOrderCreatedResponse(BaseModel):
    """Response schema for pending order creation."""

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "examples": [
                {
                    "pending_order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "payment_reference": "PAY-1767225600000-7K2PQ9XA",
                    "authorization_url": "https://checkout.paystack.com/abc123",
                    "access_code": "abc123",
                    "amount": "20.00",
                    "amount_cents": 2000,
                }
            ]
        },
    )

    pending_order_id: UUID
    payment_reference: str
    authorization_url: str
    access_code: str
    amount: Decimal
    amount_cents: int


class PaymentStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    status: PaymentState
    order_id: Optional[UUID] = None
    detail: Optional[str] = None


class VerifyPaymentResponse(BaseModel):
    status: PaymentState
    order: Optional[OrderResponse] = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: PaginationResponse


class OrderStatsResponse(BaseModel):
    total_orders: int
    by_status: Dict[str, int]
    total_revenue_cents: int
    total_revenue: Decimal
    average_order_value_cents: int
    average_order_value: Decimal
    currency: str


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope shared by every order endpoint."""

    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    """Error envelope."""

    success: bool = False
    message: str
    error_code: str
    errors: List[str] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    model_config = ConfigDict(extra="allow")

    status: str = Field(..., description="processed, ignored or rejected")
    event_type: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in {"healthy", "unhealthy", "alive"}:
            raise ValueError(f"Unknown health status: {v}")
        return v
