"""
Customer directory for the Orders service.

Customers are keyed by email. Orders upsert the customer that placed them;
successful payments increment the customer's order statistics.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models, schemas
from .errors import NotFoundError

logger = logging.getLogger(__name__)

AddressLike = Union[schemas.AddressInput, str, None]


def normalize_email(email: str) -> str:
    """
    Canonical form used as the customer key.

    Surrounding whitespace is always stripped; the address is lower-cased
    unless ``EMAIL_CASE_FOLDING`` is disabled.
    """
    email = (email or "").strip()
    return email.lower() if config.EMAIL_CASE_FOLDING else email


def address_text(address: AddressLike) -> str:
    """Render a structured or free-text address as the stored single-line text."""
    if address is None:
        return ""
    if isinstance(address, str):
        return address.strip()
    return address.as_text()


def get_customer(db: Session, customer_id: int) -> Optional[models.Customer]:
    """
    Retrieve a single customer by ID.

    Args:
        db: Database session
        customer_id: ID of the customer to retrieve

    Returns:
        Customer object or None if not found
    """
    return db.query(models.Customer).filter(models.Customer.id == customer_id).first()


def get_customer_by_email(db: Session, email: str) -> Optional[models.Customer]:
    """
    Retrieve a customer by email address (after normalisation).

    Args:
        db: Database session
        email: Email address to search for

    Returns:
        Customer object or None if not found
    """
    return db.query(models.Customer).filter(
        models.Customer.email == normalize_email(email)
    ).first()


def merge_address(
    addresses: List[dict], text: str, address_type: str = "home", is_default: bool = True
) -> Tuple[List[dict], bool]:
    """
    Merge one address into a customer's address list.

    An entry with the same text and type is not added twice. A new default
    address demotes every other entry; the first address is always the default.

    Returns:
        Tuple of (new address list, changed)
    """
    existing = [dict(addr) for addr in (addresses or [])]
    if not text:
        return existing, False

    for addr in existing:
        if addr.get("address") == text and addr.get("type", "home") == address_type:
            return existing, False

    make_default = is_default or not existing
    if make_default:
        for addr in existing:
            addr["isDefault"] = False
    existing.append({"type": address_type, "address": text, "isDefault": make_default})
    return existing, True


def _address_parts(address: AddressLike) -> Tuple[str, str, bool]:
    if isinstance(address, schemas.AddressInput):
        return address.as_text(), address.type or "home", address.is_default
    return address_text(address), "home", True


def _create_customer(
    db: Session,
    email: str,
    name: str,
    phone: str,
    secondary_phone: Optional[str],
    address: AddressLike,
    language: Optional[str],
    marketing_opt_in: bool,
) -> models.Customer:
    text, address_type, _ = _address_parts(address)
    addresses = [{"type": address_type, "address": text, "isDefault": True}] if text else []
    db_customer = models.Customer(
        email=email,
        name=name,
        primary_phone=phone,
        secondary_phone=secondary_phone,
        addresses=addresses,
        preferences={
            "communicationMethod": config.DEFAULT_COMMUNICATION_METHOD,
            "language": language or config.DEFAULT_LANGUAGE,
            "marketingOptIn": marketing_opt_in,
        },
        status="active",
        customer_type="regular",
        whatsapp_verified=False,
    )
    db.add(db_customer)
    db.commit()
    db.refresh(db_customer)
    logger.info(f"Created customer {db_customer.id} <{email}>")
    return db_customer


def _update_customer(
    db: Session,
    db_customer: models.Customer,
    name: str,
    phone: str,
    secondary_phone: Optional[str],
    address: AddressLike,
) -> models.Customer:
    changed = []
    if name and name != db_customer.name:
        db_customer.name = name
        changed.append("name")
    if phone and phone != db_customer.primary_phone:
        db_customer.primary_phone = phone
        changed.append("primary_phone")
    if secondary_phone and secondary_phone != db_customer.secondary_phone:
        db_customer.secondary_phone = secondary_phone
        changed.append("secondary_phone")

    text, address_type, is_default = _address_parts(address)
    addresses, address_changed = merge_address(
        db_customer.addresses, text, address_type, is_default
    )
    if address_changed:
        # Reassign so the JSON column is flagged dirty
        db_customer.addresses = addresses
        changed.append("addresses")

    if not changed:
        logger.debug(f"No customer fields to update for {db_customer.id}")
        return db_customer

    db.commit()
    db.refresh(db_customer)
    logger.info(f"Updated customer {db_customer.id}: {', '.join(changed)}")
    return db_customer


def upsert_customer(
    db: Session,
    *,
    email: str,
    name: str,
    phone: str,
    secondary_phone: Optional[str] = None,
    address: AddressLike = None,
    language: Optional[str] = None,
    marketing_opt_in: bool = True,
) -> Tuple[models.Customer, bool]:
    """
    Create the customer for ``email`` or update the stored record.

    Only fields that differ from stored values are written. The unique email
    constraint arbitrates concurrent first orders: the loser of an insert
    race re-reads the winner's row and updates it instead.

    Returns:
        Tuple of (customer, created)
    """
    key = normalize_email(email)
    db_customer = get_customer_by_email(db, key)
    if db_customer is not None:
        return _update_customer(db, db_customer, name, phone, secondary_phone, address), False

    try:
        return _create_customer(
            db, key, name, phone, secondary_phone, address, language, marketing_opt_in
        ), True
    except IntegrityError:
        db.rollback()
        logger.warning(f"Concurrent insert for customer <{key}>, retrying as update")
        db_customer = get_customer_by_email(db, key)
        if db_customer is None:
            raise
        return _update_customer(db, db_customer, name, phone, secondary_phone, address), False


def record_paid_order(
    db: Session,
    email: str,
    amount: Decimal,
    paid_at: Optional[datetime] = None,
    commit: bool = True,
) -> None:
    """
    Increment a customer's order statistics for one paid order.

    The increment is a single UPDATE so concurrent payments cannot lose counts.

    Raises:
        NotFoundError: If no customer has this email
    """
    paid_at = paid_at or datetime.utcnow()
    updated = db.query(models.Customer).filter(
        models.Customer.email == normalize_email(email)
    ).update(
        {
            models.Customer.total_orders: models.Customer.total_orders + 1,
            models.Customer.total_spent: models.Customer.total_spent + amount,
            models.Customer.last_order_date: paid_at,
            models.Customer.updated_at: paid_at,
        },
        synchronize_session=False,
    )
    if not updated:
        raise NotFoundError(f"Customer <{email}> not found")
    if commit:
        db.commit()
