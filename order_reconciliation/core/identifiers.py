"""
Human-readable identifiers for orders, invoices and payment references.

Candidates are drawn from a CSPRNG. Uniqueness is not checked here: the
order store's unique constraints reject collisions and materialization
retries with fresh candidates.
"""
import re
import secrets
import string
import time
from typing import Optional

ALPHABET = string.ascii_uppercase + string.digits

ORDER_NUMBER_PATTERN = re.compile(r"^ORD-[A-Z0-9]{4}-[A-Z0-9]{4}$")
INVOICE_NUMBER_PATTERN = re.compile(r"^INV-[A-Z0-9]{4}-[A-Z0-9]{4}$")

DEFAULT_REFERENCE_PREFIX = "PAY"


def _random_block(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def _grouped(prefix: str) -> str:
    return f"{prefix}-{_random_block(4)}-{_random_block(4)}"


def generate_order_number() -> str:
    """Return a candidate order number, e.g. ORD-7K2P-Q9XA."""
    return _grouped("ORD")


def generate_invoice_number() -> str:
    """Return a candidate invoice number, e.g. INV-3MZD-08TR."""
    return _grouped("INV")


def generate_payment_reference(
    prefix: str = DEFAULT_REFERENCE_PREFIX, now_ms: Optional[int] = None
) -> str:
    """
    Build a gateway payment reference.

    Format: PREFIX-<epoch milliseconds>-<8 random characters>.

    Args:
        prefix: Merchant prefix
        now_ms: Timestamp override in epoch milliseconds

    Returns:
        str: Payment reference
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{prefix}-{now_ms}-{_random_block(8)}"


def is_order_number(value: str) -> bool:
    return bool(ORDER_NUMBER_PATTERN.match(value))


def is_invoice_number(value: str) -> bool:
    return bool(INVOICE_NUMBER_PATTERN.match(value))
