# schemas/orders.py
# ============================================================================
# ORDER RELAY: ORDER DOMAIN SCHEMAS
# ============================================================================
# Products, orders, line items and the payment-event audit record, plus the
# request/response bodies of the HTTP surface. Wire names are camelCase.
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ORDER LIFECYCLE
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SENT_TO_SUPPLIER = "SENT_TO_SUPPLIER"
    FULFILLMENT_ACCEPTED = "FULFILLMENT_ACCEPTED"
    SHIPPED = "SHIPPED"

    @property
    def rank(self) -> int:
        return _STATUS_SEQUENCE.index(self)

    @property
    def is_terminal(self) -> bool:
        return self is OrderStatus.SHIPPED


_STATUS_SEQUENCE = (
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.SENT_TO_SUPPLIER,
    OrderStatus.FULFILLMENT_ACCEPTED,
    OrderStatus.SHIPPED,
)


# ============================================================================
# SECTION 2: PERSISTED ENTITIES
# ============================================================================

class Product(CamelModel):
    """Catalog entry. Owned by catalog management, read-only here."""
    id: str
    title: str
    sku: str
    price: int = Field(..., ge=0, description="Unit price in minor units")
    currency: str = "usd"
    active: bool = True


class LineItem(CamelModel):
    """Price snapshot of one product within an order. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0, description="Unit price in minor units at order time")

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


class Order(CamelModel):
    id: str
    email: str
    total: int = Field(..., ge=0, description="Total in minor units")
    currency: str = "usd"
    status: OrderStatus = OrderStatus.PENDING

    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    fulfillment_id: Optional[str] = None
    tracking_number: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    line_items: List[LineItem] = Field(default_factory=list)


class PaymentEvent(CamelModel):
    """Append-only audit record of an inbound webhook delivery."""
    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class NewLineItem(BaseModel):
    """Resolved cart entry waiting to be persisted with its order."""
    product_id: str
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0)


# ============================================================================
# SECTION 3: HTTP REQUEST / RESPONSE BODIES
# ============================================================================

class CartItem(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class CheckoutRequest(CamelModel):
    email: str = Field(..., min_length=1)
    items: List[CartItem] = Field(default_factory=list)


class CheckoutResponse(CamelModel):
    order_id: str
    redirect_url: str
    session_id: str


class PaymentSession(BaseModel):
    """Session handed back by the payment gateway."""
    session_id: str
    redirect_url: str
