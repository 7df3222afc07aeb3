"""
SQLAlchemy ORM models for the Orders service.

Defines the database schema for orders, customers, the catalog stock tables
this service mutates, and the compensating-action ledger.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, Text, Boolean,
    Enum as SAEnum, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .database import Base, JSONType
from .enums import OrderStatus, PaymentStatus, ProductStatus, CompensationKind, CompensationStatus


def _status_column(enum_cls, default):
    """String-backed column restricted to the values of ``enum_cls``."""
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=32,
        ),
        nullable=False,
        default=default,
    )


class Customer(Base):
    """
    Customer record, deduplicated by email.

    Attributes:
        id (int): Primary key
        email (str): Unique customer email (the upsert key)
        name (str): Full name
        primary_phone (str): Phone used for WhatsApp communication
        secondary_phone (str): Optional second phone
        addresses (list): ``[{"type", "address", "isDefault"}]``, at most one default
        preferences (dict): ``{"communicationMethod", "language", "marketingOptIn"}``
        total_orders (int): Number of paid orders
        total_spent (Decimal): Sum of paid amounts
        last_order_date (datetime): When the last paid order was recorded
    """
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    primary_phone = Column(String, nullable=False)
    secondary_phone = Column(String, nullable=True)
    addresses = Column(JSONType, nullable=False, default=list)
    preferences = Column(JSONType, nullable=False, default=dict)
    status = Column(String, nullable=False, default="active")
    customer_type = Column(String, nullable=False, default="regular")
    whatsapp_verified = Column(Boolean, nullable=False, default=False)
    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(12, 2), nullable=False, default=0)
    last_order_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """
    Order model representing a customer order.

    ``version`` is maintained by SQLAlchemy (``version_id_col``); an UPDATE
    issued against a stale version raises ``StaleDataError`` instead of
    silently overwriting a concurrent change.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True, index=True)

    # Customer snapshot at the time of ordering
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_phone = Column(String, nullable=False)
    customer_secondary_phone = Column(String, nullable=True)
    delivery_address = Column(Text, nullable=False, default="")
    special_instructions = Column(Text, nullable=True)
    order_source = Column(String, nullable=False, default="website")

    # Totals
    currency = Column(String(3), nullable=False, default="LKR")
    order_subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    order_total = Column(Numeric(12, 2), nullable=False, default=0)

    order_status = _status_column(OrderStatus, OrderStatus.PENDING)
    payment_status = _status_column(PaymentStatus, PaymentStatus.PENDING)
    payment_method = Column(String, nullable=False, default="payhere")

    # Payment gateway metadata (card numbers keep the last four digits only)
    gateway_payment_id = Column(String, nullable=True)
    gateway_status_code = Column(String, nullable=True)
    gateway_status_message = Column(String, nullable=True)
    gateway_method = Column(String, nullable=True)
    card_holder_name = Column(String, nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_expiry = Column(String, nullable=True)
    gateway_processed_at = Column(DateTime, nullable=True)
    payment_initiated_at = Column(DateTime, nullable=True)

    # Customer notification (WhatsApp template) tracking
    notification_sent = Column(Boolean, nullable=False, default=False)
    notification_template = Column(String, nullable=False, default="order-confirmation")

    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    customer = relationship("Customer")

    __mapper_args__ = {"version_id_col": version}


class OrderItem(Base):
    """
    Order line item. Immutable once the order is created.

    Attributes:
        product_id (int): Catalog product id
        product_sku (str): SKU at time of order (variant SKU for variant items)
        variant_id (int): Catalog variant id, None for base products
        quantity (int): Units ordered, > 0
        unit_price (Decimal): Price per unit, >= 0
        subtotal (Decimal): unit_price * quantity
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)
    product_sku = Column(String, nullable=True)
    variant_id = Column(Integer, nullable=True)
    product_name = Column(String, nullable=False, default="Unknown Product")
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)

    order = relationship("Order", back_populates="items")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (int): Foreign key to the order
        event_type (str): created, payment_updated, status_changed, cancelled, ...
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        actor (str): Who triggered the event (customer id, "payhere", staff email)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    actor = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Product(Base):
    """
    Catalog product. Owned by the catalog; this service only restores stock
    and flips availability.

    ``stock`` is the base stock used when the product has no variants.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, index=True, nullable=True)
    status = _status_column(ProductStatus, ProductStatus.DRAFT)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        order_by="ProductVariant.id",
        cascade="all, delete-orphan",
    )


class ProductVariant(Base):
    """A purchasable configuration of a product with its own SKU and stock."""
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, index=True, nullable=False)
    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")


class CompensatingAction(Base):
    """
    Ledger entry for a best-effort side effect (customer stats, stock
    restoration). Failed entries can be listed and retried.

    ``idempotency_key`` is unique so the same action cannot succeed twice.
    """
    __tablename__ = "compensating_actions"
    __table_args__ = (UniqueConstraint("idempotency_key", name="uq_compensating_actions_key"),)

    id = Column(Integer, primary_key=True, index=True)
    kind = _status_column(CompensationKind, CompensationKind.INVENTORY_RESTORE)
    order_number = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = _status_column(CompensationStatus, CompensationStatus.FAILED)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
