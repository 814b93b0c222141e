"""Core order and payment reconciliation logic."""
from .errors import OrderError
from .invoices import HttpInvoiceRenderer, InvoiceDispatcher, InvoiceRenderer
from .reconciliation import ReconciliationEngine
from .state_machine import OrderStatus

__all__ = [
    "HttpInvoiceRenderer",
    "InvoiceDispatcher",
    "InvoiceRenderer",
    "OrderError",
    "OrderStatus",
    "ReconciliationEngine",
]
