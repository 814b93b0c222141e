"""
Price calculation for checkout.

All arithmetic is done in Decimal and rounded once to the currency minor
unit with banker's rounding. The result is frozen on the pending order and
never recomputed.
"""
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Iterable, Union

from order_reconciliation.core.errors import InvalidPricingInput
from order_reconciliation.core.types import LineItem, PriceBreakdown

# Every supported currency (GHS, NGN, ZAR, USD, KES) has two decimal places
MINOR_UNIT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

Amount = Union[Decimal, int, str]


def _to_decimal(value: Amount, field: str) -> Decimal:
    # floats are refused so binary rounding never reaches a price
    if isinstance(value, float):
        raise InvalidPricingInput(f"{field} must be a decimal value, not float")
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidPricingInput(f"{field} is not a valid amount") from None
    if not result.is_finite():
        raise InvalidPricingInput(f"{field} is not a valid amount")
    return result


def quantize(amount: Decimal) -> Decimal:
    """Round to the minor unit (half-even)."""
    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_EVEN)


def to_minor_units(amount: Amount) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        amount: Amount in major units, e.g. Decimal("20.00")

    Returns:
        int: Amount in minor units, e.g. 2000
    """
    return int(quantize(_to_decimal(amount, "amount")) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(amount_cents: int) -> Decimal:
    """Convert integer minor units back to a quantized major-unit Decimal."""
    return quantize(Decimal(amount_cents) / MINOR_UNITS_PER_MAJOR)


def calculate_total(
    line_items: Iterable[LineItem],
    discount: Amount = Decimal("0"),
    credits: Amount = Decimal("0"),
) -> PriceBreakdown:
    """
    Compute the chargeable amount for a cart.

    amount = max(0, subtotal - discount - credits), rounded to the minor unit.

    Args:
        line_items: Cart lines with captured unit prices
        discount: Promotional discount in major units
        credits: Store credits applied, in major units

    Returns:
        PriceBreakdown: Quantized subtotal, discount, credits and amount

    Raises:
        InvalidPricingInput: On negative inputs, bad quantities or credits
            larger than the subtotal
    """
    discount_value = _to_decimal(discount, "discount")
    credits_value = _to_decimal(credits, "credits")

    if discount_value < 0:
        raise InvalidPricingInput("Discount cannot be negative")
    if credits_value < 0:
        raise InvalidPricingInput("Credits cannot be negative")

    subtotal = Decimal("0")
    for item in line_items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
            raise InvalidPricingInput(f"Quantity for {item.product_id} must be an integer")
        if item.quantity <= 0:
            raise InvalidPricingInput(f"Quantity for {item.product_id} must be positive")
        unit_price = _to_decimal(item.unit_price, f"unit price for {item.product_id}")
        if unit_price < 0:
            raise InvalidPricingInput(f"Unit price for {item.product_id} cannot be negative")
        subtotal += unit_price * item.quantity

    if subtotal < 0:
        raise InvalidPricingInput("Subtotal cannot be negative")
    if credits_value > subtotal:
        raise InvalidPricingInput("Credits cannot exceed the order subtotal")

    amount = max(Decimal("0"), subtotal - discount_value - credits_value)

    return PriceBreakdown(
        subtotal=quantize(subtotal),
        discount=quantize(discount_value),
        credits=quantize(credits_value),
        amount=quantize(amount),
    )
