"""
Business-rule validation for the Orders service.

Provides validation beyond schema validation: order contents, pricing
consistency, and the order/payment status transition tables.
"""
from typing import Dict, FrozenSet, List, Tuple
from decimal import Decimal

from . import config, schemas
from .enums import OrderStatus, PaymentStatus

PRICE_TOLERANCE = Decimal("0.01")
MAX_UNIT_PRICE = Decimal("10000000")

# Allowed order status moves. Cancellation additionally requires the payment
# to still be pending, see ``can_cancel``.
ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),  # Terminal state
    OrderStatus.CANCELLED: frozenset(),  # Terminal state
}

# Allowed payment status moves driven by gateway notifications. Anything not
# listed (e.g. "pending" arriving after "paid") is an out-of-order delivery.
PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PARTIALLY_PAID: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
    ),
    # A failed attempt may be followed by a new one; back to pending means
    # nothing was charged, so the order is cancellable again.
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def validate_customer(customer: schemas.CustomerInput) -> Tuple[bool, str]:
    """
    Validate that the required customer fields are present.

    Args:
        customer: Customer block of the order request

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not (customer.full_name or "").strip() or not customer.email or not (customer.phone or "").strip():
        return False, "Customer information is required"
    return True, ""


def validate_order_items(items: List[schemas.OrderItemInput]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order items are required"

    if len(items) > config.MAX_ORDER_ITEMS:
        return False, f"Order cannot contain more than {config.MAX_ORDER_ITEMS} items"

    # The same product/variant must not appear on two lines
    keys = [(item.product.id, item.variant.id if item.variant else None, item.sku) for item in items]
    if len(keys) != len(set(keys)):
        return False, "Order contains duplicate items"

    for item in items:
        label = item.sku or f"product {item.product.id}"
        if item.quantity <= 0:
            return False, f"Item {label}: quantity must be positive"

        if item.quantity > config.MAX_ITEM_QUANTITY:
            return False, f"Item {label}: quantity exceeds maximum ({config.MAX_ITEM_QUANTITY})"

        if item.price is not None:
            if item.price < 0:
                return False, f"Item {label}: price cannot be negative"
            if item.price > MAX_UNIT_PRICE:
                return False, f"Item {label}: price exceeds maximum ({MAX_UNIT_PRICE})"

    return True, ""


def validate_pricing(
    items: List[schemas.OrderItemInput], pricing: schemas.PricingInput
) -> Tuple[bool, str]:
    """
    Validate that the supplied totals are internally consistent.

    ``total`` must equal ``subtotal + shipping - discount``; when every item
    carries a price, ``subtotal`` must also match the sum of line subtotals.
    Differences up to 0.01 are tolerated for rounding.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if pricing.discount > pricing.subtotal + pricing.shipping:
        return False, "Discount cannot exceed the order amount"

    expected_total = pricing.subtotal + pricing.shipping - pricing.discount
    if abs(expected_total - pricing.total) > PRICE_TOLERANCE:
        return False, (
            f"Order total mismatch: expected {expected_total}, claimed {pricing.total}"
        )

    if items and all(item.price is not None for item in items):
        calculated = sum((Decimal(str(item.price)) * item.quantity for item in items), Decimal("0"))
        if abs(calculated - pricing.subtotal) > PRICE_TOLERANCE:
            return False, (
                f"Order subtotal mismatch: calculated {calculated}, claimed {pricing.subtotal}"
            )

    return True, ""


def validate_order_status_transition(
    old_status: OrderStatus, new_status: OrderStatus
) -> Tuple[bool, str]:
    """
    Validate that an order status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    old_status = OrderStatus(old_status)
    new_status = OrderStatus(new_status)

    if old_status == new_status:
        return True, ""  # No change is valid

    if new_status not in ORDER_TRANSITIONS[old_status]:
        return False, f"Invalid status transition: {old_status.value} -> {new_status.value}"

    return True, ""


def validate_payment_status_transition(
    old_status: PaymentStatus, new_status: PaymentStatus
) -> Tuple[bool, str]:
    """Same contract as ``validate_order_status_transition`` for payment status."""
    old_status = PaymentStatus(old_status)
    new_status = PaymentStatus(new_status)

    if old_status == new_status:
        return True, ""

    if new_status not in PAYMENT_TRANSITIONS[old_status]:
        return False, f"Invalid payment transition: {old_status.value} -> {new_status.value}"

    return True, ""


def can_cancel(order_status: OrderStatus, payment_status: PaymentStatus) -> Tuple[bool, str]:
    """
    Whether a customer or staff member may cancel the order now.

    Money that has moved blocks cancellation regardless of order status.
    """
    if PaymentStatus(payment_status) != PaymentStatus.PENDING:
        return False, "Order cannot be cancelled. Payment has been processed."
    return validate_order_status_transition(order_status, OrderStatus.CANCELLED)
