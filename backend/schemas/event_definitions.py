# schemas/event_definitions.py
# ============================================================================
# ORDER RELAY: WEBHOOK EVENT SCHEMAS
# ============================================================================
# Tagged variants for the two inbound webhook streams, validated right after
# signature verification and before any field access:
#
#   Payment provider (Stripe)   Manufacturer
#   -------------------------   ------------------------
#   CheckoutSessionCompleted    FulfillmentAcceptedEvent
#   CheckoutAsyncPaymentSucc.   ShippedEvent
#   UnknownPaymentEvent         UnknownManufacturerEvent
#
# Plus the outbound fulfillment payload sent to the manufacturer.
# ============================================================================

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.orders import CamelModel


# ============================================================================
# SECTION 1: OUTBOUND FULFILLMENT PAYLOAD
# ============================================================================

class ShippingAddress(CamelModel):
    """Shipping address; every field is present, empty when unknown."""
    name: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    phone: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class FulfillmentItem(CamelModel):
    sku: str
    quantity: int = Field(..., gt=0)


class FulfillmentPayload(CamelModel):
    order_id: str
    email: str
    items: List[FulfillmentItem]
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    notify_url: str


class FulfillmentReceipt(CamelModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    fulfillment_id: str = Field(..., min_length=1)


# ============================================================================
# SECTION 2: PAYMENT PROVIDER EVENTS (Stripe)
# ============================================================================

class StripeAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class StripeContact(BaseModel):
    """Shape shared by ``shipping_details`` and ``customer_details``."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[StripeAddress] = None


class StripeCollectedInformation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shipping_details: Optional[StripeContact] = None


class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    customer_details: Optional[StripeContact] = None
    shipping_details: Optional[StripeContact] = None
    collected_information: Optional[StripeCollectedInformation] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return value or {}

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _expanded_intent(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def order_id(self) -> Optional[str]:
        value = self.metadata.get("order_id")
        return str(value) if value else None

    def shipping_address(self) -> ShippingAddress:
        """Best available address: shipping, collected shipping, then billing."""
        contact = self.shipping_details
        if contact is None and self.collected_information is not None:
            contact = self.collected_information.shipping_details
        if contact is None:
            contact = self.customer_details
        if contact is None:
            return ShippingAddress()

        address = contact.address or StripeAddress()
        phone = contact.phone
        if not phone and self.customer_details is not None:
            phone = self.customer_details.phone
        return ShippingAddress(
            name=contact.name,
            address1=address.line1,
            address2=address.line2,
            city=address.city,
            postal_code=address.postal_code,
            country=address.country,
            phone=phone,
        )


class CheckoutSessionData(BaseModel):
    object: CheckoutSessionObject


class CheckoutSessionCompleted(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["checkout.session.completed"]
    id: str
    data: CheckoutSessionData

    @property
    def session(self) -> CheckoutSessionObject:
        return self.data.object

    @property
    def confirms_payment(self) -> bool:
        # Delayed payment methods complete the session before funds arrive.
        return self.session.payment_status != "unpaid"


class CheckoutSessionAsyncPaymentSucceeded(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["checkout.session.async_payment_succeeded"]
    id: str
    data: CheckoutSessionData

    @property
    def session(self) -> CheckoutSessionObject:
        return self.data.object

    @property
    def confirms_payment(self) -> bool:
        return True


class UnknownPaymentEvent(BaseModel):
    type: str = "unknown"
    id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


PaymentCompletion = Union[CheckoutSessionCompleted, CheckoutSessionAsyncPaymentSucceeded]
PaymentWebhookEvent = Union[PaymentCompletion, UnknownPaymentEvent]

PAYMENT_EVENT_TYPES = {
    "checkout.session.completed": CheckoutSessionCompleted,
    "checkout.session.async_payment_succeeded": CheckoutSessionAsyncPaymentSucceeded,
}


def parse_payment_event(data: Dict[str, Any]) -> PaymentWebhookEvent:
    """Parse a verified Stripe event. Raises ``pydantic.ValidationError``
    when a known event type is missing required fields."""
    event_type = str(data.get("type") or "unknown")
    model = PAYMENT_EVENT_TYPES.get(event_type)
    if model is None:
        return UnknownPaymentEvent(type=event_type, id=data.get("id"), payload=data)
    return model.model_validate(data)


def metadata_order_id(data: Any) -> Optional[str]:
    """``data.object.metadata.order_id`` of a raw Stripe body, if present."""
    node = data
    for key in ("data", "object", "metadata", "order_id"):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return str(node) if node else None


# ============================================================================
# SECTION 3: MANUFACTURER EVENTS
# ============================================================================

class ManufacturerEventType(str, Enum):
    FULFILLMENT_ACCEPTED = "FULFILLMENT_ACCEPTED"
    SHIPPED = "SHIPPED"


class FulfillmentAcceptedEvent(CamelModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    type: Literal["FULFILLMENT_ACCEPTED"]
    fulfillment_id: str = Field(..., min_length=1)


class ShippedEvent(CamelModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    type: Literal["SHIPPED"]
    fulfillment_id: str = Field(..., min_length=1)
    tracking_number: Optional[str] = None


class UnknownManufacturerEvent(BaseModel):
    type: str = "unknown"
    payload: Dict[str, Any] = Field(default_factory=dict)


ManufacturerEvent = Union[FulfillmentAcceptedEvent, ShippedEvent, UnknownManufacturerEvent]

MANUFACTURER_EVENT_TYPES = {
    ManufacturerEventType.FULFILLMENT_ACCEPTED.value: FulfillmentAcceptedEvent,
    ManufacturerEventType.SHIPPED.value: ShippedEvent,
}


def parse_manufacturer_event(data: Dict[str, Any]) -> ManufacturerEvent:
    """Parse a verified manufacturer event. Raises ``pydantic.ValidationError``
    when a known event type is missing required fields."""
    event_type = str(data.get("type") or "unknown")
    model = MANUFACTURER_EVENT_TYPES.get(event_type)
    if model is None:
        return UnknownManufacturerEvent(type=event_type, payload=data)
    return model.model_validate(data)
