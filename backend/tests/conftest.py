import asyncio
import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from config import Settings
from pipeline.agents.fulfillment_client import IFulfillmentClient
from pipeline.agents.payment_gateway import IPaymentGateway
from pipeline.errors import FulfillmentError, PaymentGatewayError, WebhookAuthenticationError
from pipeline.order_state_machine import OrderStateMachine
from pipeline.signatures import compute_signature
from schemas.event_definitions import FulfillmentPayload
from schemas.orders import PaymentSession, Product, utc_now
from storage.order_store import InMemoryOrderStore

VALID_PAYMENT_SIGNATURE = "t=1,v1=valid"
MANUFACTURER_SECRET = "mfr-secret"


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakePaymentGateway(IPaymentGateway):
    """Issues sequential session ids; accepts only VALID_PAYMENT_SIGNATURE."""

    def __init__(self):
        self.sessions: List[PaymentSession] = []
        self.fail = False
        self.delay = 0.0

    async def create_session(self, order, products):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise PaymentGatewayError("Payment provider unavailable", order_id=order.id)
        session_id = f"cs_test_{len(self.sessions) + 1}"
        session = PaymentSession(
            session_id=session_id,
            redirect_url=f"https://checkout.test/pay/{session_id}",
        )
        self.sessions.append(session)
        return session

    def verify_event(self, payload, signature):
        if signature != VALID_PAYMENT_SIGNATURE:
            raise WebhookAuthenticationError("Invalid payment provider signature")
        return json.loads(payload)


class FakeFulfillmentClient(IFulfillmentClient):
    """Records payloads and hands out F-1, F-2, ..."""

    def __init__(self):
        self.payloads: List[FulfillmentPayload] = []
        self.fail = False
        self.delay = 0.0
        self.closed = False

    async def send_order(self, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise FulfillmentError("Manufacturer returned HTTP 503", order_id=payload.order_id)
        self.payloads.append(payload)
        return f"F-{len(self.payloads)}"

    async def close(self):
        self.closed = True


# =============================================================================
# FIXTURES
# =============================================================================

CATALOG = [
    Product(id="P1", title="Widget", sku="SKU-WIDGET", price=1500, currency="usd"),
    Product(id="P2", title="Gadget", sku="SKU-GADGET", price=2500, currency="usd"),
    Product(id="P3", title="Retired", sku="SKU-RETIRED", price=900, currency="usd", active=False),
    Product(id="P4", title="Euro Widget", sku="SKU-EURO", price=1200, currency="eur"),
]


@pytest.fixture
def settings():
    return Settings(
        env="test",
        public_base_url="https://relay.test",
        stripe_webhook_secret="whsec_test",
        payment_gateway_timeout=0.5,
        manufacturer_api_url="https://manufacturer.test/v1",
        manufacturer_api_key="mfr-key",
        manufacturer_webhook_secret=MANUFACTURER_SECRET,
        manufacturer_timeout=0.5,
        reconciliation_paid_threshold=10,
        reconciliation_pending_threshold=60,
        reconciliation_max_attempts=2,
    )


@pytest.fixture
def store():
    return InMemoryOrderStore(products=[p.model_copy() for p in CATALOG])


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def fulfillment():
    return FakeFulfillmentClient()


@pytest.fixture
def machine(store, gateway, fulfillment, settings):
    return OrderStateMachine(store, gateway, fulfillment, settings)


# =============================================================================
# HELPERS
# =============================================================================

def payment_event(
    order_id: Optional[str],
    session_id: str,
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
    payment_intent: str = "pi_test_1",
    event_id: str = "evt_test_1",
    **session_fields: Any,
) -> Dict[str, Any]:
    metadata = {"order_id": order_id} if order_id else {}
    session = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": payment_intent,
        "payment_status": payment_status,
        "customer_email": "buyer@example.com",
        "metadata": metadata,
        "customer_details": {
            "name": "Billing Name",
            "email": "buyer@example.com",
            "phone": "+15550100",
            "address": {"line1": "1 Billing Rd", "city": "Billtown", "postal_code": "10001", "country": "US"},
        },
        "shipping_details": {
            "name": "Ada Buyer",
            "address": {
                "line1": "42 Main St",
                "line2": "Apt 7",
                "city": "Springfield",
                "postal_code": "12345",
                "country": "US",
            },
        },
    }
    session.update(session_fields)
    return {"id": event_id, "type": event_type, "data": {"object": session}}


def encode(body: Dict[str, Any]) -> bytes:
    return json.dumps(body).encode()


def manufacturer_request(body: Dict[str, Any], secret: str = MANUFACTURER_SECRET):
    raw = encode(body)
    return raw, compute_signature(raw, secret)


async def age_order(store: InMemoryOrderStore, order_id: str, minutes: int) -> None:
    """Pretend an order was last updated ``minutes`` ago."""
    async with store._lock:
        order = store._orders[order_id]
        store._orders[order_id] = order.model_copy(update={
            "updated_at": utc_now() - timedelta(minutes=minutes),
            "created_at": utc_now() - timedelta(minutes=minutes),
        })
