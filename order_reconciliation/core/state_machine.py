"""
Order status state machine.

    pending -> processing -> shipped -> delivered
    pending | processing -> cancelled | failed

delivered, cancelled and failed are terminal. Every accepted transition
(creation included) is recorded in the order's status history by the
caller; a rejected transition mutates nothing.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from order_reconciliation.core.errors import IllegalTransition, ValidationError


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.FAILED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.FAILED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Status an order is created in once its payment is confirmed
INITIAL_STATUS = OrderStatus.PROCESSING

StatusLike = Union[OrderStatus, str]


def coerce_status(status: StatusLike) -> OrderStatus:
    """
    Raises:
        ValidationError: If the value is not an order status
    """
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(status)
    except ValueError as e:
        raise ValidationError(f"Unknown order status: {status}") from e


def can_transition(from_status: Optional[StatusLike], to_status: StatusLike) -> bool:
    """Check a transition without raising. None means "not yet created"."""
    target = coerce_status(to_status)
    if from_status is None:
        return target == INITIAL_STATUS
    return target in ALLOWED_TRANSITIONS[coerce_status(from_status)]


def validate_transition(from_status: Optional[StatusLike], to_status: StatusLike) -> OrderStatus:
    """
    Validate a status change.

    Args:
        from_status: Current status, or None for creation
        to_status: Requested status

    Returns:
        OrderStatus: The validated target status

    Raises:
        IllegalTransition: If the change is not in the transition table
    """
    if not can_transition(from_status, to_status):
        current = coerce_status(from_status).value if from_status is not None else "none"
        raise IllegalTransition(current, coerce_status(to_status).value)
    return coerce_status(to_status)


def can_customer_cancel(status: StatusLike) -> bool:
    """Customers may cancel only while the order has not shipped."""
    return can_transition(status, OrderStatus.CANCELLED)


def is_terminal(status: StatusLike) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES
