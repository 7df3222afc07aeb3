"""
CRUD operations for the Orders service.

This module contains the order store: lookups, inserts and the order
timeline. Status changes live in the lifecycle and payment modules.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union
import logging
import secrets
import string

from sqlalchemy.orm import Session

from . import config, models
from .enums import OrderStatus, PaymentStatus

# Set up logging
logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def normalize_order_number(order_number: str) -> str:
    return (order_number or "").strip().upper()


def generate_order_number(now: Optional[datetime] = None) -> str:
    """
    Generate a human-readable order number: ``<PREFIX>-YYYYMMDD-XXXXX``.

    Args:
        now: Timestamp for the date part (defaults to the current UTC time)

    Returns:
        Upper-case order number; uniqueness is checked by the caller
    """
    now = now or datetime.utcnow()
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(5))
    return f"{config.ORDER_NUMBER_PREFIX}-{now.strftime('%Y%m%d')}-{suffix}".upper()


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_number(db: Session, order_number: str) -> Optional[models.Order]:
    """
    Retrieve a single order by its order number (case-insensitive input).

    Args:
        db: Database session
        order_number: Human order number, e.g. ``RS-20250101-AB12C``

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(
        models.Order.order_number == normalize_order_number(order_number)
    ).first()


def get_customer_order(
    db: Session, order_number: str, customer_id: Union[int, str]
) -> Optional[models.Order]:
    """Retrieve an order only if it belongs to ``customer_id``."""
    order = get_order_by_number(db, order_number)
    if order is None or order.customer_id is None:
        return None
    if str(order.customer_id) != str(customer_id).strip():
        return None
    return order


def get_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    order_status: Optional[OrderStatus] = None,
    customer_email: Optional[str] = None,
) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        order_status: Only orders in this status
        customer_email: Only orders placed with this email

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if order_status is not None:
        query = query.filter(models.Order.order_status == order_status)
    if customer_email:
        query = query.filter(models.Order.customer_email == customer_email)
    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()) \
        .offset(skip).limit(limit).all()


def get_customer_orders(
    db: Session, customer_id: int, skip: int = 0, limit: int = 20
) -> List[models.Order]:
    """Orders of one customer, most recent first."""
    return db.query(models.Order).filter(models.Order.customer_id == customer_id) \
        .order_by(models.Order.created_at.desc(), models.Order.id.desc()) \
        .offset(skip).limit(limit).all()


def count_customer_orders(db: Session, customer_id: int) -> int:
    return db.query(models.Order).filter(models.Order.customer_id == customer_id).count()


def find_recent_duplicate(
    db: Session, customer_id: int, order_total: Decimal, window_seconds: int
) -> Optional[models.Order]:
    """
    Find an unpaid order of the same customer and total placed within the window.

    Used to absorb double submissions of the checkout form.
    """
    if window_seconds <= 0:
        return None
    since = datetime.utcnow() - timedelta(seconds=window_seconds)
    return db.query(models.Order).filter(
        models.Order.customer_id == customer_id,
        models.Order.order_total == order_total,
        models.Order.order_status == OrderStatus.PENDING,
        models.Order.payment_status == PaymentStatus.PENDING,
        models.Order.created_at >= since,
    ).order_by(models.Order.created_at.desc()).first()


def order_number_exists(db: Session, order_number: str) -> bool:
    return db.query(models.Order.id).filter(
        models.Order.order_number == order_number
    ).first() is not None


def create_order(db: Session, order: models.Order, items: List[models.OrderItem]) -> models.Order:
    """
    Insert a new order with its line items.

    NOTE: This function assumes validation has already been performed.

    Args:
        db: Database session
        order: Unsaved order (order number already assigned)
        items: Unsaved line items

    Returns:
        Created Order object
    """
    order.items = items
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def log_order_event(
    db: Session,
    order_id: int,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    actor: Optional[str] = None,
    commit: bool = True,
) -> models.OrderEvent:
    """
    Add an event to an order's timeline.

    Args:
        db: Database session
        order_id: Order primary key
        event_type: Type of event (e.g., "created", "status_changed", "cancelled")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        actor: Who triggered the event (optional)
        commit: Commit immediately; pass False to join the caller's transaction
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        actor=actor,
    )
    db.add(event)
    if commit:
        db.commit()
    return event


def get_order_timeline(db: Session, order_id: int) -> List[models.OrderEvent]:
    return db.query(models.OrderEvent).filter(
        models.OrderEvent.order_id == order_id
    ).order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc()).all()
