import asyncio

import pytest

from conftest import (
    VALID_PAYMENT_SIGNATURE,
    encode,
    manufacturer_request,
    payment_event,
)
from pipeline.errors import (
    EmptyCartError,
    OrderNotFoundError,
    OrderStateConflictError,
    OrderValidationError,
    PaymentGatewayError,
    UnresolvedCartError,
    WebhookAuthenticationError,
)
from pipeline.signatures import compute_signature
from schemas.orders import CartItem, OrderStatus, Product


def cart(*entries):
    return [CartItem(product_id=pid, quantity=qty) for pid, qty in entries]


async def checked_out(machine):
    order, session = await machine.checkout("buyer@example.com", cart(("P1", 2), ("P2", 1)))
    return order, session


async def paid_and_sent(machine):
    order, session = await checked_out(machine)
    await machine.handle_payment_webhook(
        encode(payment_event(order.id, session.session_id)), VALID_PAYMENT_SIGNATURE
    )
    return await machine.get_order(order.id)


# =============================================================================
# CHECKOUT
# =============================================================================

@pytest.mark.unit
class TestCheckout:
    async def test_checkout_creates_pending_order_with_session(self, machine, store):
        order, session = await checked_out(machine)

        stored = await store.get_order(order.id)
        assert order.total == 1500 * 2 + 2500
        assert stored.status is OrderStatus.PENDING
        assert stored.stripe_session_id == session.session_id
        assert session.redirect_url.endswith(session.session_id)
        assert len(stored.line_items) == 2

    async def test_total_is_price_times_quantity(self, machine, store):
        store.add_product(Product(id="P10", title="Mug", sku="SKU-MUG", price=1000))

        order = await machine.create_order("buyer@example.com", cart(("P10", 2)))

        assert order.total == 2000
        assert len(order.line_items) == 1
        assert order.status is OrderStatus.PENDING

    async def test_unknown_and_inactive_products_are_dropped(self, machine):
        order = await machine.create_order(
            "buyer@example.com", cart(("P1", 1), ("ghost", 3), ("P3", 1))
        )

        assert [li.product_id for li in order.line_items] == ["P1"]
        assert order.total == 1500

    async def test_empty_cart_is_rejected(self, machine, store):
        with pytest.raises(EmptyCartError):
            await machine.create_order("buyer@example.com", [])
        assert store.payment_events == []

    async def test_fully_unresolved_cart_is_rejected(self, machine):
        with pytest.raises(UnresolvedCartError):
            await machine.create_order("buyer@example.com", cart(("ghost", 1), ("P3", 2)))

    async def test_blank_email_is_rejected(self, machine):
        with pytest.raises(OrderValidationError):
            await machine.create_order("   ", cart(("P1", 1)))

    async def test_mixed_currencies_are_rejected(self, machine):
        with pytest.raises(OrderValidationError):
            await machine.create_order("buyer@example.com", cart(("P1", 1), ("P4", 1)))

    async def test_prices_are_snapshotted(self, machine, store):
        order = await machine.create_order("buyer@example.com", cart(("P1", 1)))
        store.add_product(
            (await store.get_products(["P1"]))["P1"].model_copy(update={"price": 9999})
        )

        assert (await machine.get_order(order.id)).total == 1500

    async def test_gateway_failure_leaves_order_retryable(self, machine, gateway, store):
        order = await machine.create_order("buyer@example.com", cart(("P1", 1)))
        gateway.fail = True

        with pytest.raises(PaymentGatewayError):
            await machine.begin_payment(order.id)

        stored = await store.get_order(order.id)
        assert stored.status is OrderStatus.PENDING
        assert stored.stripe_session_id is None

        gateway.fail = False
        session = await machine.begin_payment(order.id)
        assert (await store.get_order(order.id)).stripe_session_id == session.session_id

    async def test_gateway_timeout_is_an_upstream_error(self, machine, gateway, store):
        order = await machine.create_order("buyer@example.com", cart(("P1", 1)))
        gateway.delay = 2.0

        with pytest.raises(PaymentGatewayError):
            await machine.begin_payment(order.id)
        assert (await store.get_order(order.id)).stripe_session_id is None

    async def test_second_payment_session_is_a_conflict(self, machine):
        order, _ = await checked_out(machine)
        with pytest.raises(OrderStateConflictError):
            await machine.begin_payment(order.id)

    async def test_get_unknown_order(self, machine):
        with pytest.raises(OrderNotFoundError):
            await machine.get_order("missing")


# =============================================================================
# PAYMENT WEBHOOKS
# =============================================================================

@pytest.mark.unit
class TestPaymentWebhook:
    async def test_happy_path_forwards_to_manufacturer(self, machine, store, fulfillment):
        order, session = await checked_out(machine)
        body = encode(payment_event(order.id, session.session_id, payment_intent="pi_123"))

        result = await machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE)

        stored = await store.get_order(order.id)
        assert result["status"] == "sent_to_supplier"
        assert stored.status is OrderStatus.SENT_TO_SUPPLIER
        assert stored.stripe_payment_intent_id == "pi_123"
        assert stored.fulfillment_id == "F-1"

        payload = fulfillment.payloads[0]
        assert payload.order_id == order.id
        assert payload.email == "buyer@example.com"
        assert [(i.sku, i.quantity) for i in payload.items] == [("SKU-WIDGET", 2), ("SKU-GADGET", 1)]
        assert payload.shipping_address.name == "Ada Buyer"
        assert payload.notify_url == "https://relay.test/webhooks/manufacturer"

        audit = await store.get_payment_events(order.id)
        assert [e.type for e in audit] == ["checkout.session.completed"]

    async def test_duplicate_delivery_pushes_once(self, machine, store, fulfillment):
        order, session = await checked_out(machine)
        body = encode(payment_event(order.id, session.session_id))

        await machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE)
        second = await machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE)

        assert second["status"] == "duplicate"
        assert len(fulfillment.payloads) == 1
        assert (await store.get_order(order.id)).fulfillment_id == "F-1"
        assert await store.count_payment_events(order.id, "checkout.session.completed") == 2

    async def test_concurrent_duplicates_push_once(self, machine, store, fulfillment):
        order, session = await checked_out(machine)
        body = encode(payment_event(order.id, session.session_id))

        await asyncio.gather(*[
            machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE) for _ in range(4)
        ])

        assert len(fulfillment.payloads) == 1
        assert (await store.get_order(order.id)).status is OrderStatus.SENT_TO_SUPPLIER

    async def test_bad_signature_changes_nothing_but_is_audited(self, machine, store, fulfillment):
        order, session = await checked_out(machine)
        body = encode(payment_event(order.id, session.session_id))

        with pytest.raises(WebhookAuthenticationError):
            await machine.handle_payment_webhook(body, "t=1,v1=forged")

        stored = await store.get_order(order.id)
        assert stored.status is OrderStatus.PENDING
        assert fulfillment.payloads == []
        assert [e.type for e in await store.get_payment_events(order.id)] == [
            "payment.signature_invalid"
        ]

    async def test_bad_signature_for_unknown_order_is_discarded(self, machine, store):
        with pytest.raises(WebhookAuthenticationError):
            await machine.handle_payment_webhook(encode(payment_event("ghost", "cs_x")), None)
        with pytest.raises(WebhookAuthenticationError):
            await machine.handle_payment_webhook(b"not json", "forged")

        assert store.payment_events == []

    async def test_fulfillment_failure_keeps_order_paid(self, machine, store, fulfillment):
        fulfillment.fail = True
        order, session = await checked_out(machine)

        result = await machine.handle_payment_webhook(
            encode(payment_event(order.id, session.session_id)), VALID_PAYMENT_SIGNATURE
        )

        stored = await store.get_order(order.id)
        assert result["status"] == "paid"
        assert stored.status is OrderStatus.PAID
        assert stored.fulfillment_id is None

    async def test_fulfillment_timeout_keeps_order_paid(self, machine, store, fulfillment):
        fulfillment.delay = 2.0
        order, session = await checked_out(machine)

        await machine.handle_payment_webhook(
            encode(payment_event(order.id, session.session_id)), VALID_PAYMENT_SIGNATURE
        )

        assert (await store.get_order(order.id)).status is OrderStatus.PAID

    async def test_retry_fulfillment_uses_audited_address(self, machine, store, fulfillment):
        fulfillment.fail = True
        order, session = await checked_out(machine)
        await machine.handle_payment_webhook(
            encode(payment_event(order.id, session.session_id)), VALID_PAYMENT_SIGNATURE
        )

        fulfillment.fail = False
        assert await machine.retry_fulfillment(order.id)

        stored = await store.get_order(order.id)
        assert stored.status is OrderStatus.SENT_TO_SUPPLIER
        assert fulfillment.payloads[0].shipping_address.address1 == "42 Main St"
        assert not await machine.retry_fulfillment(order.id)

    async def test_unpaid_completion_waits_for_async_success(self, machine, store, fulfillment):
        order, session = await checked_out(machine)

        waiting = await machine.handle_payment_webhook(
            encode(payment_event(order.id, session.session_id, payment_status="unpaid")),
            VALID_PAYMENT_SIGNATURE,
        )
        assert waiting["status"] == "awaiting_payment"
        assert (await store.get_order(order.id)).status is OrderStatus.PENDING

        await machine.handle_payment_webhook(
            encode(payment_event(
                order.id, session.session_id,
                event_type="checkout.session.async_payment_succeeded",
                event_id="evt_test_2",
            )),
            VALID_PAYMENT_SIGNATURE,
        )
        assert (await store.get_order(order.id)).status is OrderStatus.SENT_TO_SUPPLIER
        assert len(fulfillment.payloads) == 1

    async def test_session_mismatch_is_ignored(self, machine, store, fulfillment):
        order, _ = await checked_out(machine)

        result = await machine.handle_payment_webhook(
            encode(payment_event(order.id, "cs_someone_else")), VALID_PAYMENT_SIGNATURE
        )

        assert result["status"] == "session_mismatch"
        assert (await store.get_order(order.id)).status is OrderStatus.PENDING
        assert fulfillment.payloads == []
        assert await store.count_payment_events(order.id, "checkout.session.completed") == 1

    async def test_completion_without_order_id_is_audited_only(self, machine, store):
        result = await machine.handle_payment_webhook(
            encode(payment_event(None, "cs_1")), VALID_PAYMENT_SIGNATURE
        )

        assert result["status"] == "uncorrelated"
        assert [(e.type, e.order_id) for e in store.payment_events] == [
            ("checkout.session.completed", None)
        ]

    async def test_unknown_event_type_is_acknowledged(self, machine, store):
        order, _ = await checked_out(machine)
        body = encode({
            "id": "evt_5",
            "type": "payment_intent.succeeded",
            "data": {"object": {"metadata": {"order_id": order.id}}},
        })

        result = await machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE)

        assert result["status"] == "ignored"
        assert (await store.get_order(order.id)).status is OrderStatus.PENDING
        assert [e.type for e in await store.get_payment_events(order.id)] == [
            "payment_intent.succeeded"
        ]

    async def test_malformed_known_event_is_acknowledged(self, machine, store):
        body = encode({"id": "evt_6", "type": "checkout.session.completed", "data": {}})

        result = await machine.handle_payment_webhook(body, VALID_PAYMENT_SIGNATURE)

        assert result["status"] == "malformed"
        assert len(store.payment_events) == 1


# =============================================================================
# MANUFACTURER WEBHOOKS
# =============================================================================

@pytest.mark.unit
class TestManufacturerWebhook:
    async def test_accepted_then_shipped(self, machine, store):
        order = await paid_and_sent(machine)

        raw, sig = manufacturer_request({"type": "FULFILLMENT_ACCEPTED", "fulfillmentId": "F-1"})
        accepted = await machine.handle_manufacturer_webhook(raw, sig)
        assert accepted == {"status": "applied", "updated": [order.id]}
        assert (await store.get_order(order.id)).status is OrderStatus.FULFILLMENT_ACCEPTED

        raw, sig = manufacturer_request(
            {"type": "SHIPPED", "fulfillmentId": "F-1", "trackingNumber": "1Z999"}
        )
        await machine.handle_manufacturer_webhook(raw, sig)

        stored = await store.get_order(order.id)
        assert stored.status is OrderStatus.SHIPPED
        assert stored.tracking_number == "1Z999"

    async def test_shipped_may_skip_acceptance(self, machine, store):
        order = await paid_and_sent(machine)
        raw, sig = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1"})

        await machine.handle_manufacturer_webhook(raw, sig)

        assert (await store.get_order(order.id)).status is OrderStatus.SHIPPED

    async def test_numeric_tracking_number_is_accepted(self, machine, store):
        order = await paid_and_sent(machine)
        raw, sig = manufacturer_request(
            {"type": "SHIPPED", "fulfillmentId": "F-1", "trackingNumber": 123456789}
        )

        result = await machine.handle_manufacturer_webhook(raw, sig)

        assert result["status"] == "applied"
        stored = await store.get_order(order.id)
        assert stored.status is OrderStatus.SHIPPED
        assert stored.tracking_number == "123456789"

    async def test_late_acceptance_never_regresses(self, machine, store):
        order = await paid_and_sent(machine)
        raw, sig = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1", "trackingNumber": "1Z"})
        await machine.handle_manufacturer_webhook(raw, sig)

        raw, sig = manufacturer_request({"type": "FULFILLMENT_ACCEPTED", "fulfillmentId": "F-1"})
        result = await machine.handle_manufacturer_webhook(raw, sig)

        stored = await store.get_order(order.id)
        assert result == {"status": "noop", "updated": []}
        assert stored.status is OrderStatus.SHIPPED
        assert stored.tracking_number == "1Z"

        audit = await store.get_payment_events(order.id, ["manufacturer.FULFILLMENT_ACCEPTED"])
        assert audit[0].payload["applied"] is False

    async def test_duplicate_shipped_is_idempotent(self, machine, store):
        order = await paid_and_sent(machine)
        raw, sig = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1", "trackingNumber": "1Z"})

        await machine.handle_manufacturer_webhook(raw, sig)
        await machine.handle_manufacturer_webhook(raw, sig)

        assert (await store.get_order(order.id)).status is OrderStatus.SHIPPED
        assert await store.count_payment_events(order.id, "manufacturer.SHIPPED") == 2

    async def test_bad_signature_is_rejected(self, machine, store):
        order = await paid_and_sent(machine)
        raw, _ = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1"})
        _, wrong = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1"}, secret="other")

        for signature in (wrong, None, ""):
            with pytest.raises(WebhookAuthenticationError):
                await machine.handle_manufacturer_webhook(raw, signature)

        assert (await store.get_order(order.id)).status is OrderStatus.SENT_TO_SUPPLIER

    async def test_unknown_type_is_acknowledged(self, machine, store):
        order = await paid_and_sent(machine)
        raw, sig = manufacturer_request({"type": "CANCELLED", "fulfillmentId": "F-1"})

        result = await machine.handle_manufacturer_webhook(raw, sig)

        assert result["status"] == "ignored"
        assert (await store.get_order(order.id)).status is OrderStatus.SENT_TO_SUPPLIER
        assert store.payment_events[-1].type == "manufacturer.CANCELLED"

    async def test_unmatched_fulfillment_id_is_audited(self, machine, store):
        raw, sig = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-404"})

        result = await machine.handle_manufacturer_webhook(raw, sig)

        assert result == {"status": "unmatched", "updated": []}
        assert [(e.type, e.order_id) for e in store.payment_events] == [("manufacturer.SHIPPED", None)]

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"type": "SHIPPED"}'])
    async def test_malformed_signed_body_is_a_validation_error(self, machine, raw):
        with pytest.raises(OrderValidationError):
            await machine.handle_manufacturer_webhook(raw, compute_signature(raw, "mfr-secret"))

    async def test_manufacturer_event_cannot_touch_unsent_orders(self, machine, store):
        order, _ = await checked_out(machine)
        raw, sig = manufacturer_request({"type": "SHIPPED", "fulfillmentId": "F-1"})

        await machine.handle_manufacturer_webhook(raw, sig)

        assert (await store.get_order(order.id)).status is OrderStatus.PENDING
