"""
Order lifecycle: cancellation with stock compensation and staff
fulfilment transitions.

Cancellation is only possible while the payment is still pending. Once the
order is marked cancelled the cancellation stands even if some stock could
not be restored; those items stay in the compensating-action ledger.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Union
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import crud, inventory, models, validators
from .enums import OrderStatus, PaymentStatus
from .errors import ConcurrencyError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _commit_order_change(db: Session, order_number: str) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning(f"[{order_number}] Concurrent update detected, change not applied")
        raise ConcurrencyError("Order was modified concurrently, please retry")


def _cancel(db: Session, order: models.Order, actor: str) -> Dict[str, Any]:
    order_number = order.order_number
    old_status = OrderStatus(order.order_status)
    cancelled_at = datetime.utcnow()

    order.order_status = OrderStatus.CANCELLED
    order.cancelled_at = cancelled_at
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="cancelled",
        description=f"Order cancelled (was '{old_status.value}')",
        old_value=old_status.value,
        new_value=OrderStatus.CANCELLED.value,
        actor=actor,
        commit=False,
    )
    _commit_order_change(db, order_number)
    logger.info(f"[{order_number}] Order cancelled by {actor}, restoring inventory")

    results = inventory.restore_order_inventory(db, order)
    return {
        "orderNumber": order_number,
        "orderStatus": OrderStatus.CANCELLED.value,
        "cancelledAt": cancelled_at.isoformat(),
        "alreadyCancelled": False,
        "inventoryRestored": all(r["restored"] for r in results),
        "restoration": results,
        "clearCart": False,
        "clearPendingOrders": False,
    }


def ensure_cancellable(order: models.Order) -> bool:
    """
    Check cancellation eligibility.

    Returns:
        True if the order is already cancelled (nothing left to do)

    Raises:
        ConflictError: If money has moved or the order is past cancellation
    """
    if PaymentStatus(order.payment_status) != PaymentStatus.PENDING:
        raise ConflictError("Order cannot be cancelled. Payment has been processed.")
    if OrderStatus(order.order_status) == OrderStatus.CANCELLED:
        return True
    is_valid, error_message = validators.can_cancel(order.order_status, order.payment_status)
    if not is_valid:
        raise ConflictError(error_message)
    return False


def cancel_order(
    db: Session,
    order_number: str,
    customer_id: Union[int, str],
    action: Optional[str] = "cancel",
) -> Dict[str, Any]:
    """
    Cancel a customer's unpaid order and put its items back into stock.

    Args:
        db: Database session
        order_number: Order to cancel
        customer_id: Customer making the request; must own the order
        action: Must be "cancel"

    Returns:
        Cancellation summary for the API response

    Raises:
        ValidationError: Missing order number/customer id or unsupported action
        NotFoundError: Unknown order or order owned by another customer
        ConflictError: Payment is no longer pending
        ConcurrencyError: The order changed while being cancelled
    """
    if not order_number or not order_number.strip():
        raise ValidationError("Order number is required")
    if customer_id is None or str(customer_id).strip() == "":
        raise ValidationError("Customer ID is required")
    if action != "cancel":
        raise ValidationError('Invalid action. Only "cancel" is supported.')

    order = crud.get_customer_order(db, order_number, customer_id)
    if order is None:
        logger.info(
            f"Cancellation refused: order {crud.normalize_order_number(order_number)} "
            f"not found for customer {customer_id}"
        )
        raise NotFoundError("Order not found or access denied")

    if ensure_cancellable(order):
        logger.info(f"[{order.order_number}] Order is already cancelled, nothing to do")
        cancelled_at = order.cancelled_at or order.updated_at
        return {
            "orderNumber": order.order_number,
            "orderStatus": OrderStatus.CANCELLED.value,
            "cancelledAt": cancelled_at.isoformat() if cancelled_at else None,
            "alreadyCancelled": True,
            "inventoryRestored": False,
            "restoration": [],
            "clearCart": True,
            "clearPendingOrders": False,
        }

    return _cancel(db, order, actor=f"customer:{customer_id}")


def update_order_status(
    db: Session, order_number: str, new_status: OrderStatus, actor: str
) -> Dict[str, Any]:
    """
    Move an order along the fulfilment path on behalf of staff.

    Cancellation follows the same rules and compensation as a customer
    cancellation.

    Returns:
        ``{"orderNumber", "oldStatus", "orderStatus", ...}``; cancellations
        also carry the restoration summary

    Raises:
        NotFoundError: Unknown order
        ConflictError: Transition not allowed from the current status
    """
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFoundError("Order not found")

    new_status = OrderStatus(new_status)
    old_status = OrderStatus(order.order_status)

    if new_status == OrderStatus.CANCELLED:
        if ensure_cancellable(order):
            return {"orderNumber": order.order_number, "oldStatus": old_status.value,
                    "orderStatus": OrderStatus.CANCELLED.value, "alreadyCancelled": True}
        summary = _cancel(db, order, actor=actor)
        summary["oldStatus"] = old_status.value
        return summary

    is_valid, error_message = validators.validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise ConflictError(error_message)
    if old_status == new_status:
        return {"orderNumber": order.order_number, "oldStatus": old_status.value,
                "orderStatus": new_status.value}

    order.order_status = new_status
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="status_changed",
        description=f"Status changed from '{old_status.value}' to '{new_status.value}'",
        old_value=old_status.value,
        new_value=new_status.value,
        actor=actor,
        commit=False,
    )
    _commit_order_change(db, order.order_number)
    logger.info(f"[{order.order_number}] Status {old_status.value} -> {new_status.value} by {actor}")
    return {"orderNumber": order.order_number, "oldStatus": old_status.value,
            "orderStatus": new_status.value}
