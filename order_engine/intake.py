"""
Order intake: validate a checkout request, upsert the customer and store a
new ``pending/pending`` order.

Stock is not touched here; the catalog reserves it when the cart is built.
"""
from decimal import Decimal
from typing import List, Tuple
import logging

from sqlalchemy.orm import Session

from . import config, crud, customers, models, schemas, validators
from .enums import OrderStatus, PaymentStatus
from .errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def _build_items(items: List[schemas.OrderItemInput]) -> List[models.OrderItem]:
    db_items = []
    for item in items:
        unit_price = Decimal(str(item.price)) if item.price is not None else Decimal("0")
        variant = item.variant
        db_items.append(models.OrderItem(
            product_id=item.product.id,
            product_sku=item.sku,
            variant_id=variant.id if variant else None,
            product_name=item.product.title or "Unknown Product",
            size=variant.size if variant else None,
            color=variant.color if variant else None,
            quantity=item.quantity,
            unit_price=unit_price,
            subtotal=unit_price * item.quantity,
        ))
    return db_items


def _unique_order_number(db: Session) -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        order_number = crud.generate_order_number()
        if not crud.order_number_exists(db, order_number):
            return order_number
    raise InternalError("Could not allocate a unique order number")


def validate_order_request(order_in: schemas.OrderCreate) -> None:
    """
    Run all intake validations.

    Raises:
        ValidationError: On the first failing rule; nothing has been written
    """
    checks = (
        validators.validate_customer(order_in.customer),
        validators.validate_order_items(order_in.items),
        validators.validate_pricing(order_in.items, order_in.pricing),
    )
    for is_valid, error_message in checks:
        if not is_valid:
            raise ValidationError(error_message)


def create_order(db: Session, order_in: schemas.OrderCreate) -> Tuple[models.Order, bool]:
    """
    Create a new order from a checkout request.

    Steps:
    - Validate customer, items and pricing (no side effects on failure)
    - Upsert the customer by email
    - Return the customer's identical unpaid order if one was placed within
      the duplicate-submission window
    - Insert the order as ``pending/pending`` with a fresh order number

    Args:
        db: Database session
        order_in: Validated request body

    Returns:
        Tuple of (order, created); created is False for a detected duplicate

    Raises:
        ValidationError: If the request breaks a business rule
    """
    validate_order_request(order_in)

    customer_in = order_in.customer
    pricing = order_in.pricing
    delivery_address = customers.address_text(customer_in.address)

    customer, customer_created = customers.upsert_customer(
        db,
        email=customer_in.email,
        name=customer_in.full_name.strip(),
        phone=customer_in.phone.strip(),
        secondary_phone=customer_in.secondary_phone,
        address=customer_in.address,
        language=customer_in.preferred_language,
        marketing_opt_in=customer_in.marketing_opt_in,
    )

    if not customer_created:
        duplicate = crud.find_recent_duplicate(
            db, customer.id, pricing.total, config.DUPLICATE_ORDER_WINDOW_SECONDS
        )
        if duplicate is not None:
            logger.info(
                f"Duplicate submission for customer {customer.id}, "
                f"returning existing order {duplicate.order_number}"
            )
            return duplicate, False

    order = models.Order(
        order_number=_unique_order_number(db),
        customer_id=customer.id,
        customer_name=customer_in.full_name.strip(),
        customer_email=customer.email,
        customer_phone=customer_in.phone.strip(),
        customer_secondary_phone=customer_in.secondary_phone,
        delivery_address=delivery_address,
        special_instructions=order_in.special_instructions,
        order_source=order_in.order_source or "website",
        currency=config.DEFAULT_CURRENCY,
        order_subtotal=pricing.subtotal,
        shipping_cost=pricing.shipping,
        discount=pricing.discount,
        order_total=pricing.subtotal + pricing.shipping - pricing.discount,
        order_status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_method=config.DEFAULT_PAYMENT_METHOD,
        notification_sent=False,
        notification_template="order-confirmation",
    )
    order = crud.create_order(db, order, _build_items(order_in.items))

    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="created",
        description=f"Order created with status '{OrderStatus.PENDING.value}'",
        new_value=OrderStatus.PENDING.value,
        actor=f"customer:{customer.id}",
    )
    logger.info(
        f"Order {order.order_number} created for customer {customer.id}: "
        f"{len(order.items)} item(s), total {order.order_total} {order.currency}"
    )
    return order, True
