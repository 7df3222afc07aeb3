"""
Pydantic schemas for request validation in the Orders service.

Request bodies use the camelCase field names of the public storefront API;
attributes are snake_case on the Python side.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Union, Dict, Any
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .enums import OrderStatus, CompensationKind, CompensationStatus


class CamelModel(BaseModel):
    """Base for request bodies: accepts both the camelCase alias and the attribute name."""
    model_config = ConfigDict(populate_by_name=True)


class AddressInput(CamelModel):
    """Structured delivery address."""
    street: str = ""
    city: str = ""
    postal_code: str = Field(default="", alias="postalCode")
    province: str = ""
    type: str = "home"
    is_default: bool = Field(default=True, alias="isDefault")

    def as_text(self) -> str:
        parts = [self.street, self.city, self.postal_code, self.province]
        return ", ".join(part.strip() for part in parts if part and part.strip())


class CustomerInput(CamelModel):
    """Customer identity supplied with a new order. Required fields are checked by intake."""
    full_name: Optional[str] = Field(default=None, alias="fullName")
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    secondary_phone: Optional[str] = Field(default=None, alias="secondaryPhone")
    address: Optional[Union[AddressInput, str]] = None
    marketing_opt_in: bool = Field(default=True, alias="marketingOptIn")
    preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage")


class ItemProduct(CamelModel):
    id: int
    sku: Optional[str] = None
    title: Optional[str] = None


class ItemVariant(CamelModel):
    id: Optional[int] = None
    sku: Optional[str] = None
    name: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None


class OrderItemInput(CamelModel):
    """Schema for an order line item."""
    product: ItemProduct
    variant: Optional[ItemVariant] = None
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    price: Optional[Decimal] = Field(default=None, ge=0, description="Price per unit")

    @property
    def sku(self) -> Optional[str]:
        """SKU that identifies the purchased unit: the variant's when present."""
        if self.variant and self.variant.sku:
            return self.variant.sku
        return self.product.sku


class PricingInput(CamelModel):
    """Totals computed by the upstream pricing step; validated, not recomputed."""
    subtotal: Decimal = Field(..., ge=0)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(..., ge=0)


class OrderCreate(CamelModel):
    """Schema for creating a new order."""
    customer: CustomerInput
    items: List[OrderItemInput] = Field(default_factory=list, description="Order line items")
    pricing: PricingInput
    special_instructions: Optional[str] = Field(default=None, alias="specialInstructions")
    order_source: Optional[str] = Field(default=None, alias="orderSource")


class CancelRequest(CamelModel):
    action: Optional[str] = None
    customer_id: Optional[Union[int, str]] = Field(default=None, alias="customerId")


class TrackRequest(CamelModel):
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    email: Optional[str] = None
    phone: Optional[str] = None


class CustomerUpsert(CamelModel):
    """Schema for the standalone customer create-or-update endpoint."""
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    secondary_phone: Optional[str] = Field(default=None, alias="secondaryPhone")
    address: Optional[Union[AddressInput, str]] = None
    preferred_language: Optional[str] = Field(default=None, alias="preferredLanguage")
    marketing_opt_in: bool = Field(default=True, alias="marketingOptIn")


class StatusUpdate(CamelModel):
    """Staff fulfilment transition."""
    order_status: OrderStatus = Field(..., alias="orderStatus")


class HashRequest(CamelModel):
    order_id: str = Field(..., min_length=1, alias="orderId")
    amount: Decimal = Field(..., ge=0)
    currency: str = "LKR"


class PaymentInitiation(CamelModel):
    order_number: str = Field(..., min_length=1, alias="orderNumber")


class PayHereNotification(BaseModel):
    """Form fields posted by the PayHere notify callback."""
    merchant_id: str = ""
    order_id: str = ""
    payment_id: str = ""
    payhere_amount: str = ""
    payhere_currency: str = ""
    status_code: str = ""
    md5sig: str = ""
    method: Optional[str] = None
    status_message: Optional[str] = None
    card_holder_name: Optional[str] = None
    card_no: Optional[str] = None
    card_expiry: Optional[str] = None
    custom_1: Optional[str] = None
    custom_2: Optional[str] = None

    def redacted(self) -> Dict[str, Any]:
        """Field dump that is safe to log: signature shortened, card number dropped."""
        data = self.model_dump(exclude={"card_no"})
        data["md5sig"] = f"{self.md5sig[:8]}..." if self.md5sig else ""
        return data


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        event_type (str): Type of event
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        actor (str): Who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CompensatingAction(BaseModel):
    id: int
    kind: CompensationKind
    order_number: str
    idempotency_key: str
    payload: Dict[str, Any]
    status: CompensationStatus
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
