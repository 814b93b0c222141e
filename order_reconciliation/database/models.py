"""SQLAlchemy database models for pending orders, orders and their audit trail."""
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only auto-increments INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")

PENDING_ORDER_STATUSES = (
    "initialized",
    "pending",
    "init_failed",
    "consumed",
    "failed",
    "cancelled",
    "expired",
)

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "failed")


def _in_clause(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PendingOrder(Base):
    """
    Checkout attempts awaiting payment confirmation.

    One row per payment reference. The cart snapshot and amount are frozen
    at creation; the row is never deleted, only moved between statuses.
    """

    __tablename__ = "pending_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    payment_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    cart_snapshot: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    delivery_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    delivery_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    authorization_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="pending_non_negative_amount"),
        CheckConstraint(
            _in_clause("status", PENDING_ORDER_STATUSES), name="valid_pending_status"
        ),
        CheckConstraint("length(currency) = 3", name="pending_valid_currency"),
        Index("idx_pending_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of PendingOrder."""
        return (
            f"<PendingOrder(id={self.id}, reference={self.payment_reference}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class Order(Base):
    """
    Finalized orders, created only after a confirmed payment.

    The unique constraint on payment_reference is what guarantees at most
    one order per payment.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False)
    delivery_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    delivery_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    invoice_document_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Gateway transaction facts (id, channel, fees, card or bank) and raw report
    payment_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderStatusHistory.id",
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(_in_clause("status", ORDER_STATUSES), name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class OrderStatusHistory(Base):
    """
    Order status audit trail.

    Append-only: one row per transition, including the initial creation.
    """

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    order: Mapped[Order] = relationship(back_populates="status_history")

    def __repr__(self) -> str:
        """String representation of OrderStatusHistory."""
        return (
            f"<OrderStatusHistory(order_id={self.order_id}, "
            f"{self.from_status} -> {self.to_status})>"
        )
