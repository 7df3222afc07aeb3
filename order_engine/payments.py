"""
PayHere payment gateway adapter.

Verifies notify callbacks and reconciles the order's payment and order status
with what the gateway reports. Callbacks may arrive more than once and out of
order; only transitions allowed by the status tables are applied.

Also builds the signed checkout form used to redirect the customer to the
gateway.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import compensation, config, crud, customers, models, schemas, signature, validators
from .enums import CompensationKind, OrderStatus, PayHereStatusCode, PaymentStatus
from .errors import ConcurrencyError, ConflictError, NotFoundError, SignatureError
from .logging_config import mask_secret

logger = logging.getLogger(__name__)

GATEWAY_ACTOR = "payhere"
CHECKOUT_COUNTRY = "Sri Lanka"

# PayHere status_code -> (payment status, order status or None for "unchanged")
STATUS_MAP: Dict[PayHereStatusCode, Tuple[PaymentStatus, Optional[OrderStatus]]] = {
    PayHereStatusCode.SUCCESS: (PaymentStatus.PAID, OrderStatus.CONFIRMED),
    PayHereStatusCode.PENDING: (PaymentStatus.PENDING, None),
    PayHereStatusCode.CANCELLED: (PaymentStatus.FAILED, OrderStatus.CANCELLED),
    PayHereStatusCode.FAILED: (PaymentStatus.FAILED, None),
    PayHereStatusCode.CHARGEDBACK: (PaymentStatus.REFUNDED, None),
}


def map_status_code(status_code: str) -> Tuple[PaymentStatus, Optional[OrderStatus]]:
    """
    Map a PayHere status code to the target (payment status, order status).

    Unknown codes are treated as a failed payment and logged.
    """
    try:
        return STATUS_MAP[PayHereStatusCode((status_code or "").strip())]
    except ValueError:
        logger.warning(f"Unexpected PayHere status code: {status_code!r}, treating as failed")
        return PaymentStatus.FAILED, None


def card_last4(card_no: Optional[str]) -> Optional[str]:
    """Keep only the last four digits of a (masked) card number."""
    digits = "".join(ch for ch in (card_no or "") if ch.isdigit())
    return digits[-4:] if len(digits) >= 4 else None


def customer_stats_key(order_number: str) -> str:
    return f"customer_stats:{order_number}"


@compensation.register_handler(CompensationKind.CUSTOMER_STATS)
def apply_customer_stats(db: Session, payload: Dict[str, Any]) -> None:
    """Payload keys: ``email``, ``amount``, ``paidAt`` (ISO timestamp, optional)."""
    paid_at = payload.get("paidAt")
    customers.record_paid_order(
        db,
        payload["email"],
        Decimal(str(payload["amount"])),
        paid_at=datetime.fromisoformat(paid_at) if paid_at else None,
        commit=False,
    )


def verify_notification(notification: schemas.PayHereNotification) -> None:
    """
    Raises:
        SignatureError: If the merchant id or ``md5sig`` does not match
    """
    if not config.PAYHERE_MERCHANT_SECRET:
        logger.error("PAYHERE_MERCHANT_SECRET is not configured, rejecting notification")
        raise SignatureError("Invalid signature")

    if notification.merchant_id.strip() != config.PAYHERE_MERCHANT_ID:
        logger.warning(
            f"[{notification.order_id}] Notification for unknown merchant "
            f"{notification.merchant_id!r}"
        )
        raise SignatureError("Invalid signature")

    is_valid = signature.verify_notification_signature(
        notification.merchant_id.strip(),
        notification.order_id,
        notification.payhere_amount,
        notification.payhere_currency,
        notification.status_code,
        notification.md5sig,
    )
    if not is_valid:
        logger.warning(
            f"[{notification.order_id}] Invalid notification signature "
            f"{mask_secret(notification.md5sig)}"
        )
        raise SignatureError("Invalid signature")


def _summary(order: models.Order, **extra) -> Dict[str, Any]:
    data = {
        "orderNumber": order.order_number,
        "orderStatus": OrderStatus(order.order_status).value,
        "paymentStatus": PaymentStatus(order.payment_status).value,
    }
    data.update(extra)
    return data


def _record_customer_stats(db: Session, order: models.Order, amount: str, paid_at: datetime) -> None:
    # Runs after the payment is committed; nothing here may fail the notification
    order_number = order.order_number
    try:
        compensation.run_action(
            db,
            CompensationKind.CUSTOMER_STATS,
            order_number,
            customer_stats_key(order_number),
            {
                "email": order.customer_email,
                "amount": amount,
                "paidAt": paid_at.isoformat(),
            },
        )
    except Exception:
        db.rollback()
        logger.exception(f"[{order_number}] Could not record customer stats")


def process_notification(
    db: Session, notification: schemas.PayHereNotification
) -> Dict[str, Any]:
    """
    Verify a PayHere notify callback and reconcile the order.

    Args:
        db: Database session
        notification: Parsed form fields

    Returns:
        ``{orderNumber, orderStatus, paymentStatus, applied, duplicate,
        oldPaymentStatus, oldOrderStatus}``

    Raises:
        SignatureError: Signature or merchant mismatch; nothing was written
        NotFoundError: No order with this number; nothing was written
        ConcurrencyError: The order changed concurrently; the gateway should re-deliver
    """
    logger.info(f"PayHere notification received: {notification.redacted()}")
    verify_notification(notification)

    order = crud.get_order_by_number(db, notification.order_id)
    if order is None:
        logger.warning(f"Notification for unknown order {notification.order_id}")
        raise NotFoundError("Order not found")

    order_number = order.order_number
    payment_id = notification.payment_id.strip()
    status_code = notification.status_code.strip()
    old_payment = PaymentStatus(order.payment_status)
    old_order = OrderStatus(order.order_status)

    if payment_id and order.gateway_payment_id == payment_id and order.gateway_status_code == status_code:
        logger.info(f"[{order_number}] Duplicate notification {payment_id}/{status_code}, ignoring")
        crud.log_order_event(
            db,
            order_id=order.id,
            event_type="duplicate_notification",
            description=f"Repeated gateway notification {payment_id} (status {status_code})",
            actor=GATEWAY_ACTOR,
        )
        stats_key = customer_stats_key(order_number)
        if (status_code == PayHereStatusCode.SUCCESS.value
                and PaymentStatus(order.payment_status) == PaymentStatus.PAID
                and compensation.get_action_by_key(db, stats_key) is None):
            logger.warning(f"[{order_number}] No customer stats recorded for paid order, recording now")
            _record_customer_stats(
                db, order, signature.format_amount(notification.payhere_amount),
                order.gateway_processed_at or datetime.utcnow(),
            )
        return _summary(order, applied=False, duplicate=True,
                        oldPaymentStatus=old_payment.value, oldOrderStatus=old_order.value)

    new_payment, target_order = map_status_code(status_code)

    is_valid, error_message = validators.validate_payment_status_transition(old_payment, new_payment)
    if not is_valid:
        logger.warning(f"[{order_number}] Out-of-order notification not applied: {error_message}")
        crud.log_order_event(
            db,
            order_id=order.id,
            event_type="payment_ignored",
            description=f"Gateway status {status_code} not applied: {error_message}",
            old_value=old_payment.value,
            new_value=new_payment.value,
            actor=GATEWAY_ACTOR,
        )
        return _summary(order, applied=False, duplicate=False,
                        oldPaymentStatus=old_payment.value, oldOrderStatus=old_order.value)

    new_order = old_order
    if target_order is not None and target_order != old_order:
        is_valid, error_message = validators.validate_order_status_transition(old_order, target_order)
        if is_valid:
            new_order = target_order
        elif new_payment == PaymentStatus.PAID:
            logger.error(
                f"[{order_number}] Payment received for order in status '{old_order.value}', "
                f"order status left unchanged"
            )
        else:
            logger.info(f"[{order_number}] Order status left unchanged: {error_message}")

    paid_amount = signature.format_amount(notification.payhere_amount)
    paid_currency = notification.payhere_currency.strip()
    if new_payment == PaymentStatus.PAID and (
        Decimal(paid_amount) != Decimal(order.order_total) or paid_currency != order.currency
    ):
        expected = f"{signature.format_amount(order.order_total)} {order.currency}"
        logger.error(
            f"[{order_number}] Paid amount {paid_amount} {paid_currency} "
            f"does not match order total {expected}"
        )
        crud.log_order_event(
            db,
            order_id=order.id,
            event_type="amount_mismatch",
            description=f"Gateway reported {paid_amount} {paid_currency}, order total is {expected}",
            old_value=expected,
            new_value=f"{paid_amount} {paid_currency}",
            actor=GATEWAY_ACTOR,
            commit=False,
        )

    processed_at = datetime.utcnow()
    order.payment_status = new_payment
    order.order_status = new_order
    order.gateway_payment_id = payment_id or None
    order.gateway_status_code = status_code
    order.gateway_status_message = notification.status_message
    order.gateway_method = notification.method
    order.card_holder_name = notification.card_holder_name
    order.card_last4 = card_last4(notification.card_no)
    order.card_expiry = notification.card_expiry
    order.gateway_processed_at = processed_at

    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="payment_updated",
        description=(
            f"Payment {old_payment.value} -> {new_payment.value}, "
            f"order {old_order.value} -> {new_order.value} (gateway status {status_code})"
        ),
        old_value=old_payment.value,
        new_value=new_payment.value,
        actor=GATEWAY_ACTOR,
        commit=False,
    )
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.error(f"[{order_number}] Concurrent update while applying notification {payment_id}")
        raise ConcurrencyError("Order was modified concurrently")

    logger.info(
        f"[{order_number}] Payment {old_payment.value} -> {new_payment.value}, "
        f"order {old_order.value} -> {new_order.value}"
    )

    if new_payment == PaymentStatus.PAID and old_payment != PaymentStatus.PAID:
        _record_customer_stats(db, order, paid_amount, processed_at)

    return _summary(order, applied=True, duplicate=False,
                    oldPaymentStatus=old_payment.value, oldOrderStatus=old_order.value)


def checkout_url() -> str:
    return config.PAYHERE_CHECKOUT_URLS["sandbox" if config.PAYHERE_SANDBOX else "production"]


def build_checkout_payload(db: Session, order_number: str) -> Dict[str, Any]:
    """
    Build the signed PayHere checkout form for an order.

    Args:
        db: Database session
        order_number: Order to pay for

    Returns:
        ``{"checkoutUrl": ..., "paymentData": {form fields including hash}}``

    Raises:
        NotFoundError: Unknown order
        ConflictError: The order is already paid or cancelled
    """
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFoundError("Order not found")
    if PaymentStatus(order.payment_status) == PaymentStatus.PAID:
        raise ConflictError("Order is already paid")
    if OrderStatus(order.order_status) == OrderStatus.CANCELLED:
        raise ConflictError("Order has been cancelled")

    amount = signature.format_amount(order.order_total)
    name_parts = (order.customer_name or "").split()
    address_parts = [part.strip() for part in (order.delivery_address or "").split(",")]
    street = address_parts[0] if address_parts else ""
    city = address_parts[1] if len(address_parts) > 1 else ""

    payment_data = {
        "merchant_id": config.PAYHERE_MERCHANT_ID,
        "return_url": config.PAYHERE_RETURN_URL,
        "cancel_url": config.PAYHERE_CANCEL_URL,
        "notify_url": config.PAYHERE_NOTIFY_URL,
        "order_id": order.order_number,
        "items": ", ".join(f"{item.product_name} ({item.quantity})" for item in order.items),
        "amount": amount,
        "currency": order.currency,
        "first_name": name_parts[0] if name_parts else "",
        "last_name": " ".join(name_parts[1:]),
        "email": order.customer_email,
        "phone": order.customer_phone,
        "address": street,
        "city": city,
        "country": CHECKOUT_COUNTRY,
        "delivery_address": street,
        "delivery_city": city,
        "delivery_country": CHECKOUT_COUNTRY,
        "custom_1": order.order_number,
        "custom_2": order.order_source,
        "hash": signature.checkout_hash(order.order_number, amount, order.currency),
    }

    order.payment_initiated_at = datetime.utcnow()
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConcurrencyError("Order was modified concurrently, please retry")

    logger.info(
        f"[{order.order_number}] Payment initiated: {amount} {order.currency} "
        f"for <{order.customer_email}>"
    )
    return {"checkoutUrl": checkout_url(), "paymentData": payment_data}


def get_payment_status(db: Session, order_number: str) -> Dict[str, Any]:
    """
    Raises:
        NotFoundError: Unknown order
    """
    order = crud.get_order_by_number(db, order_number)
    if order is None:
        raise NotFoundError("Order not found")
    return {
        "orderId": order.order_number,
        "orderStatus": OrderStatus(order.order_status).value,
        "paymentStatus": PaymentStatus(order.payment_status).value,
        "paymentId": order.gateway_payment_id,
        "amount": str(order.order_total),
        "currency": order.currency,
        "paymentMethod": order.gateway_method or order.payment_method,
        "lastUpdated": order.updated_at.isoformat() if order.updated_at else None,
    }
