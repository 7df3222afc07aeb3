"""
Closed status types used across the Orders service.

Values are the exact strings stored in the database and returned by the API.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_PAID = "partially-paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"
    OUT_OF_STOCK = "out-of-stock"
    DISCONTINUED = "discontinued"


class PayHereStatusCode(str, Enum):
    """Status codes sent by the PayHere notify callback."""
    SUCCESS = "2"
    PENDING = "0"
    CANCELLED = "-1"
    FAILED = "-2"
    CHARGEDBACK = "-3"


class CompensationKind(str, Enum):
    CUSTOMER_STATS = "customer_stats"
    INVENTORY_RESTORE = "inventory_restore"


class CompensationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
