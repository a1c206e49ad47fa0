"""
Order State Machine
===================
Moves an order through PENDING → PAID → SENT_TO_SUPPLIER →
FULFILLMENT_ACCEPTED → SHIPPED in response to checkout requests and two
independent, at-least-once webhook streams.

Guarantees:
- Webhooks are authenticated before their bodies are trusted
- Every status change is a compare-and-set against explicit predecessors,
  so duplicates and out-of-order deliveries never regress an order
- Only the delivery that wins PENDING → PAID pushes to fulfillment
- Every verified delivery lands in the payment-event audit log once

Example:
    machine = OrderStateMachine(store, gateway, fulfillment, settings)
    order, session = await machine.checkout("a@b.c", [CartItem(product_id="P1", quantity=2)])
    await machine.handle_payment_webhook(raw_body, request.headers["Stripe-Signature"])
"""

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import ValidationError

from config import Settings
from pipeline.agents.fulfillment_client import IFulfillmentClient
from pipeline.agents.payment_gateway import IPaymentGateway
from pipeline.errors import (
    EmptyCartError,
    FulfillmentError,
    OrderNotFoundError,
    OrderStateConflictError,
    OrderValidationError,
    PaymentGatewayError,
    UnresolvedCartError,
    WebhookAuthenticationError,
)
from pipeline.signatures import verify_signature
from schemas.event_definitions import (
    PAYMENT_EVENT_TYPES,
    FulfillmentAcceptedEvent,
    FulfillmentItem,
    FulfillmentPayload,
    ManufacturerEventType,
    PaymentCompletion,
    ShippedEvent,
    ShippingAddress,
    UnknownManufacturerEvent,
    UnknownPaymentEvent,
    metadata_order_id,
    parse_manufacturer_event,
    parse_payment_event,
)
from schemas.orders import (
    CartItem,
    NewLineItem,
    Order,
    OrderStatus,
    PaymentSession,
    Product,
)
from storage.order_store import IOrderStore


SIGNATURE_INVALID_EVENT = "payment.signature_invalid"

# Allowed predecessors for the statuses driven by manufacturer events.
MANUFACTURER_TRANSITIONS = {
    ManufacturerEventType.FULFILLMENT_ACCEPTED.value: (
        OrderStatus.FULFILLMENT_ACCEPTED,
        (OrderStatus.SENT_TO_SUPPLIER,),
    ),
    ManufacturerEventType.SHIPPED.value: (
        OrderStatus.SHIPPED,
        (OrderStatus.SENT_TO_SUPPLIER, OrderStatus.FULFILLMENT_ACCEPTED),
    ),
}


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[Any, str], Awaitable[Dict[str, Any]]]


class WebhookRouter:
    """Maps a parsed event's ``type`` to its handler, with a fallback."""

    def __init__(self, name: str, fallback: WebhookHandler):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._fallback = fallback
        self._logger = structlog.get_logger().bind(component="webhook_router", router=name)

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: Any, correlation_id: str) -> Dict[str, Any]:
        handler = self._handlers.get(event.type)
        if handler is None:
            self._logger.info("no_handler", event_type=event.type, correlation_id=correlation_id)
            handler = self._fallback
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# ORDER STATE MACHINE
# =============================================================================

class OrderStateMachine:
    """Core of the relay. Collaborators are injected; see ``api/server.py``."""

    def __init__(
        self,
        store: IOrderStore,
        payment_gateway: IPaymentGateway,
        fulfillment_client: IFulfillmentClient,
        settings: Settings,
    ):
        self.store = store
        self.payments = payment_gateway
        self.fulfillment = fulfillment_client
        self.settings = settings
        self._base_logger = structlog.get_logger()

        self.payment_router = WebhookRouter("payment", self._ignore_event)
        self.manufacturer_router = WebhookRouter("manufacturer", self._ignore_event)
        self._register_handlers()

    def _register_handlers(self):
        for event_type in PAYMENT_EVENT_TYPES:
            self.payment_router.register(event_type)(self._on_payment_completed)

        @self.manufacturer_router.register(ManufacturerEventType.FULFILLMENT_ACCEPTED.value)
        async def on_fulfillment_accepted(event: FulfillmentAcceptedEvent, correlation_id: str):
            return await self._apply_manufacturer_event(event, correlation_id)

        @self.manufacturer_router.register(ManufacturerEventType.SHIPPED.value)
        async def on_shipped(event: ShippedEvent, correlation_id: str):
            return await self._apply_manufacturer_event(
                event, correlation_id, tracking_number=event.tracking_number
            )

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="order_state_machine",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _ignore_event(self, event: Any, correlation_id: str) -> Dict[str, Any]:
        return {"status": "ignored", "event_type": event.type}

    # -------------------------------------------------------------------------
    # Catalog / read side
    # -------------------------------------------------------------------------

    async def list_products(self) -> List[Product]:
        return await self.store.list_active_products()

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def create_order(self, email: str, items: Sequence[CartItem]) -> Order:
        """Resolve the cart against the catalog and persist a PENDING order.

        Items pointing at unknown or inactive products are dropped; the order
        fails only when nothing resolves. Prices are snapshotted into the
        line items here.
        """
        log = self._get_logger()

        email = (email or "").strip()
        if not email:
            raise OrderValidationError("Email is required")
        if not items:
            raise EmptyCartError("Cart is empty")
        for item in items:
            if item.quantity <= 0:
                raise OrderValidationError(f"Quantity must be positive for {item.product_id}")

        products = await self.store.get_products([item.product_id for item in items])

        resolved: List[Tuple[Product, int]] = []
        dropped: List[str] = []
        for item in items:
            product = products.get(item.product_id)
            if product is None or not product.active:
                dropped.append(item.product_id)
                continue
            resolved.append((product, item.quantity))

        if dropped:
            log.warning("cart_items_dropped", product_ids=dropped)
        if not resolved:
            raise UnresolvedCartError("No cart item references an available product")

        currencies = {product.currency.lower() for product, _ in resolved}
        if len(currencies) > 1:
            raise OrderValidationError(f"Cart mixes currencies: {sorted(currencies)}")

        order = await self.store.create_order(
            email=email,
            currency=currencies.pop(),
            line_items=[
                NewLineItem(product_id=product.id, quantity=quantity, unit_price=product.price)
                for product, quantity in resolved
            ],
        )
        log.info("order_created",
                 order_id=order.id,
                 total=order.total,
                 currency=order.currency,
                 line_items=len(order.line_items))
        return order

    async def begin_payment(self, order_id: str) -> PaymentSession:
        """Open a payment session for a PENDING order and record its id once."""
        log = self._get_logger(order_id)
        order = await self.get_order(order_id)

        if order.status is not OrderStatus.PENDING or order.stripe_session_id:
            raise OrderStateConflictError(
                f"Order {order_id} cannot start payment from {order.status.value}",
                order_id=order_id,
            )

        products = await self.store.get_products([li.product_id for li in order.line_items])
        try:
            session = await asyncio.wait_for(
                self.payments.create_session(order, products),
                timeout=self.settings.payment_gateway_timeout,
            )
        except asyncio.TimeoutError as e:
            log.error("payment_session_timeout", order_id=order_id)
            raise PaymentGatewayError("Payment provider timed out", order_id=order_id) from e
        except PaymentGatewayError as e:
            log.error("payment_session_failed", order_id=order_id, error=e.message)
            raise

        if not await self.store.set_payment_session(order_id, session.session_id):
            log.error("payment_session_not_recorded",
                      order_id=order_id,
                      session_id=session.session_id)
            raise OrderStateConflictError(
                f"Order {order_id} already has a payment session", order_id=order_id
            )

        log.info("payment_session_created", order_id=order_id, session_id=session.session_id)
        return session

    async def checkout(self, email: str, items: Sequence[CartItem]) -> Tuple[Order, PaymentSession]:
        order = await self.create_order(email, items)
        session = await self.begin_payment(order.id)
        return order, session

    # -------------------------------------------------------------------------
    # Payment webhooks
    # -------------------------------------------------------------------------

    async def handle_payment_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
    ) -> Dict[str, Any]:
        """Verify, audit and apply a payment provider delivery.

        Only a signature failure is surfaced to the caller. Everything else,
        including fulfillment failures, is acknowledged.
        """
        log = self._get_logger()

        try:
            data = self.payments.verify_event(raw_body, signature)
        except WebhookAuthenticationError:
            await self._audit_unverified_payment(raw_body, log)
            raise
        except OrderValidationError as e:
            log.error("payment_event_unreadable", error=e.message)
            return {"status": "malformed"}

        try:
            event = parse_payment_event(data)
        except ValidationError as e:
            log.error("payment_event_malformed", event_type=data.get("type"), errors=e.errors())
            await self._audit(str(data.get("type") or "unknown"), data, metadata_order_id(data))
            return {"status": "malformed"}

        if isinstance(event, UnknownPaymentEvent):
            order_id = metadata_order_id(data)
        else:
            order_id = event.session.order_id
        correlation_id = order_id or event.id or str(uuid.uuid4())

        log = self._get_logger(correlation_id)
        log.info("payment_webhook_received", event_type=event.type, event_id=event.id, order_id=order_id)

        await self._audit(event.type, data, order_id)
        return await self.payment_router.route(event, correlation_id)

    async def _audit(self, event_type: str, payload: Dict[str, Any], order_id: Optional[str]):
        """Append an audit record, linked only when the order exists."""
        linked = order_id if await self.store.order_exists(order_id) else None
        return await self.store.append_payment_event(event_type, payload, linked)

    async def _audit_unverified_payment(self, raw_body: bytes, log) -> None:
        try:
            data = json.loads(raw_body)
        except ValueError:
            log.warning("payment_webhook_rejected", correlated=False)
            return

        order_id = metadata_order_id(data)
        if not await self.store.order_exists(order_id):
            log.warning("payment_webhook_rejected", correlated=False)
            return

        await self.store.append_payment_event(SIGNATURE_INVALID_EVENT, data, order_id)
        log.warning("payment_webhook_rejected", correlated=True, order_id=order_id)

    async def _on_payment_completed(
        self,
        event: PaymentCompletion,
        correlation_id: str,
    ) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        session = event.session
        order_id = session.order_id

        if not order_id:
            log.warning("payment_event_uncorrelated", session_id=session.id)
            return {"status": "uncorrelated"}

        if not event.confirms_payment:
            log.info("payment_not_yet_confirmed",
                     order_id=order_id,
                     payment_status=session.payment_status)
            return {"status": "awaiting_payment"}

        order = await self.store.get_order(order_id)
        if order is None:
            log.warning("payment_event_unknown_order", order_id=order_id)
            return {"status": "unknown_order"}

        if order.stripe_session_id and order.stripe_session_id != session.id:
            log.warning("payment_session_mismatch",
                        order_id=order_id,
                        expected_session_id=order.stripe_session_id,
                        session_id=session.id)
            return {"status": "session_mismatch"}

        paid = await self.store.transition(
            order_id,
            OrderStatus.PAID,
            (OrderStatus.PENDING,),
            stripe_payment_intent_id=session.payment_intent,
        )
        if paid is None:
            log.info("payment_already_applied", order_id=order_id, status=order.status.value)
            return {"status": "duplicate"}

        log.info("order_paid", order_id=order_id, payment_intent=session.payment_intent)

        forwarded = await self._forward_to_fulfillment(paid, session.shipping_address(), log)
        return {"status": "sent_to_supplier" if forwarded else "paid"}

    # -------------------------------------------------------------------------
    # Fulfillment push
    # -------------------------------------------------------------------------

    async def _build_fulfillment_payload(
        self,
        order: Order,
        shipping: ShippingAddress,
    ) -> FulfillmentPayload:
        products = await self.store.get_products([li.product_id for li in order.line_items])
        items = []
        for line_item in order.line_items:
            product = products.get(line_item.product_id)
            if product is None:
                raise FulfillmentError(
                    f"Product {line_item.product_id} is missing from the catalog",
                    order_id=order.id,
                )
            items.append(FulfillmentItem(sku=product.sku, quantity=line_item.quantity))

        return FulfillmentPayload(
            order_id=order.id,
            email=order.email,
            items=items,
            shipping_address=shipping,
            notify_url=self.settings.manufacturer_notify_url,
        )

    async def _forward_to_fulfillment(self, order: Order, shipping: ShippingAddress, log) -> bool:
        """Push a PAID order to the manufacturer. Failures leave it PAID."""
        try:
            payload = await self._build_fulfillment_payload(order, shipping)
            fulfillment_id = await asyncio.wait_for(
                self.fulfillment.send_order(payload),
                timeout=self.settings.manufacturer_timeout,
            )
        except asyncio.TimeoutError:
            log.error("fulfillment_push_timeout", order_id=order.id)
            return False
        except FulfillmentError as e:
            log.error("fulfillment_push_failed", order_id=order.id, error=e.message)
            return False

        sent = await self.store.transition(
            order.id,
            OrderStatus.SENT_TO_SUPPLIER,
            (OrderStatus.PAID,),
            fulfillment_id=fulfillment_id,
        )
        if sent is None:
            log.warning("fulfillment_id_not_recorded", order_id=order.id, fulfillment_id=fulfillment_id)
            return False

        log.info("order_sent_to_supplier", order_id=order.id, fulfillment_id=fulfillment_id)
        return True

    async def retry_fulfillment(self, order_id: str) -> bool:
        """Re-run the fulfillment push for an order stuck at PAID.

        The shipping address is taken from the latest audited payment
        completion for the order.
        """
        log = self._get_logger(order_id)
        order = await self.get_order(order_id)
        if order.status is not OrderStatus.PAID or order.fulfillment_id:
            log.info("fulfillment_retry_skipped", order_id=order_id, status=order.status.value)
            return False

        shipping = ShippingAddress()
        events = await self.store.get_payment_events(order_id, list(PAYMENT_EVENT_TYPES))
        for audit in reversed(events):
            try:
                event = parse_payment_event(audit.payload)
            except ValidationError:
                continue
            if isinstance(event, UnknownPaymentEvent) or not event.confirms_payment:
                continue
            shipping = event.session.shipping_address()
            break
        else:
            log.warning("fulfillment_retry_without_address", order_id=order_id)

        return await self._forward_to_fulfillment(order, shipping, log)

    # -------------------------------------------------------------------------
    # Manufacturer webhooks
    # -------------------------------------------------------------------------

    async def handle_manufacturer_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
    ) -> Dict[str, Any]:
        log = self._get_logger()

        if not verify_signature(raw_body, self.settings.manufacturer_webhook_secret, signature):
            log.warning("manufacturer_signature_invalid", signature_present=bool(signature))
            raise WebhookAuthenticationError("Invalid manufacturer signature")

        try:
            data = json.loads(raw_body)
        except ValueError as e:
            raise OrderValidationError("Manufacturer event is not valid JSON") from e
        if not isinstance(data, dict):
            raise OrderValidationError("Manufacturer event must be a JSON object")

        try:
            event = parse_manufacturer_event(data)
        except ValidationError as e:
            log.warning("manufacturer_event_malformed", event_type=data.get("type"), errors=e.errors())
            raise OrderValidationError(f"Malformed {data.get('type')} event") from e

        if isinstance(event, UnknownManufacturerEvent):
            correlation_id = str(uuid.uuid4())
            await self.store.append_payment_event(f"manufacturer.{event.type}", data, None)
        else:
            correlation_id = event.fulfillment_id

        self._get_logger(correlation_id).info("manufacturer_webhook_received", event_type=event.type)
        return await self.manufacturer_router.route(event, correlation_id)

    async def _apply_manufacturer_event(
        self,
        event: Any,
        correlation_id: str,
        **fields: Any,
    ) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        target, allowed = MANUFACTURER_TRANSITIONS[event.type]
        raw = event.model_dump(mode="json", by_alias=True)

        updated = await self.store.transition_by_fulfillment(
            event.fulfillment_id, target, allowed, **fields
        )
        applied = {order.id for order in updated}
        matched = await self.store.get_orders_by_fulfillment(event.fulfillment_id)

        if not matched:
            log.warning("manufacturer_event_unmatched", fulfillment_id=event.fulfillment_id)
            await self.store.append_payment_event(
                f"manufacturer.{event.type}", {"event": raw, "applied": False}, None
            )
            return {"status": "unmatched", "updated": []}

        for order in matched:
            was_applied = order.id in applied
            await self.store.append_payment_event(
                f"manufacturer.{event.type}",
                {"event": raw, "applied": was_applied},
                order.id,
            )
            if was_applied:
                log.info("order_status_advanced",
                         order_id=order.id,
                         fulfillment_id=event.fulfillment_id,
                         status=target.value)
            elif order.status.rank >= target.rank:
                log.info("manufacturer_event_duplicate",
                         order_id=order.id,
                         status=order.status.value,
                         event_type=event.type)
            else:
                log.warning("manufacturer_event_out_of_order",
                            order_id=order.id,
                            status=order.status.value,
                            event_type=event.type)

        return {"status": "applied" if applied else "noop", "updated": sorted(applied)}
