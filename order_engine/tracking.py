"""
Order tracking for customers.

Read-only. Only customer-safe fields leave this module: no email, phone,
address or payment gateway details.
"""
from typing import Any, Dict, Optional
import logging

from sqlalchemy.orm import Session

from . import crud, customers, models
from .enums import OrderStatus, PaymentStatus
from .errors import ValidationError

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Order not found or verification failed"
MAX_HISTORY_PAGE_SIZE = 50


def serialize_public_order(order: models.Order) -> Dict[str, Any]:
    """Customer-facing view of an order."""
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "customerName": order.customer_name,
        "orderStatus": OrderStatus(order.order_status).value,
        "paymentStatus": PaymentStatus(order.payment_status).value,
        "orderTotal": str(order.order_total),
        "currency": order.currency,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        "cancelledAt": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "orderItems": [
            {
                "productName": item.product_name,
                "quantity": item.quantity,
                "unitPrice": str(item.unit_price),
                "subtotal": str(item.subtotal),
                "selectedSize": item.size,
                "selectedColor": item.color,
            }
            for item in order.items
        ],
    }


def serialize_admin_order(order: models.Order) -> Dict[str, Any]:
    """Staff view: the public view plus contact, pricing and gateway details."""
    data = serialize_public_order(order)
    data.update({
        "customerId": order.customer_id,
        "customerEmail": order.customer_email,
        "customerPhone": order.customer_phone,
        "customerSecondaryPhone": order.customer_secondary_phone,
        "deliveryAddress": order.delivery_address,
        "specialInstructions": order.special_instructions,
        "orderSource": order.order_source,
        "orderSubtotal": str(order.order_subtotal),
        "shippingCost": str(order.shipping_cost),
        "discount": str(order.discount),
        "paymentMethod": order.payment_method,
        "paymentGateway": {
            "paymentId": order.gateway_payment_id,
            "statusCode": order.gateway_status_code,
            "statusMessage": order.gateway_status_message,
            "method": order.gateway_method,
            "cardHolderName": order.card_holder_name,
            "cardLast4": order.card_last4,
            "processedAt": order.gateway_processed_at.isoformat() if order.gateway_processed_at else None,
        },
        "notificationSent": order.notification_sent,
        "version": order.version,
    })
    for item, line in zip(order.items, data["orderItems"]):
        line.update({"productId": item.product_id, "productSku": item.product_sku,
                     "variantId": item.variant_id})
    return data


def _matches_contact(order: models.Order, email: Optional[str], phone: Optional[str]) -> bool:
    # Either supplied contact detail is enough to prove ownership
    if email and email.strip() and customers.normalize_email(email) == order.customer_email:
        return True
    if phone and phone.strip() and phone.strip() in (order.customer_phone or ""):
        return True
    return False


def track_order(
    db: Session,
    order_number: Optional[str],
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Look up an order for the tracking page.

    Args:
        db: Database session
        order_number: Order number as typed by the customer (trimmed, case-insensitive)
        email: Optional email to verify against the order
        phone: Optional phone (or part of it) to verify against the order

    Returns:
        ``{"found": True, "order": {...}}`` or ``{"found": False, "message": ...}``

    Raises:
        ValidationError: If no order number was given
    """
    if not order_number or not order_number.strip():
        raise ValidationError("Order number is required")

    order = crud.get_order_by_number(db, order_number)
    if order is None:
        return {"found": False, "message": NOT_FOUND_MESSAGE}

    verify = bool((email and email.strip()) or (phone and phone.strip()))
    if verify and not _matches_contact(order, email, phone):
        logger.info(f"Tracking verification failed for order {order.order_number}")
        return {"found": False, "message": NOT_FOUND_MESSAGE}

    return {"found": True, "order": serialize_public_order(order)}


def customer_order_history(
    db: Session, customer_id: Optional[int], page: int = 1, limit: int = 20
) -> Dict[str, Any]:
    """
    Paginated order history of one customer, newest first.

    Raises:
        ValidationError: If the customer id is missing
    """
    if customer_id is None:
        raise ValidationError("Customer ID is required")
    page = max(page, 1)
    limit = max(1, min(limit, MAX_HISTORY_PAGE_SIZE))

    orders = crud.get_customer_orders(db, customer_id, skip=(page - 1) * limit, limit=limit)
    total = crud.count_customer_orders(db, customer_id)
    return {
        "orders": [serialize_public_order(order) for order in orders],
        "page": page,
        "limit": limit,
        "total": total,
        "hasMore": page * limit < total,
    }
