"""Database package for the order reconciliation service."""
from .connection import build_session_factory, get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    OrderStatusHistory,
    PendingOrder,
)

__all__ = [
    "Base",
    "Order",
    "OrderStatusHistory",
    "PendingOrder",
    "build_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
