"""
Payment Session Gateway
=======================
Stripe Checkout integration consumed through a narrow contract:

- create_session(): opens a Checkout Session for an order, tagged with
  ``metadata.order_id`` and an order-scoped idempotency key
- verify_event(): Stripe's own webhook signature check over the raw body,
  returning the decoded event only once it verified

pip install stripe
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from config import Settings
from pipeline.errors import (
    OrderValidationError,
    PaymentGatewayError,
    WebhookAuthenticationError,
)
from schemas.orders import Order, PaymentSession, Product


class IPaymentGateway(ABC):
    """Payment provider contract used by the order state machine"""

    @abstractmethod
    async def create_session(
        self,
        order: Order,
        products: Mapping[str, Product],
    ) -> PaymentSession:
        """Create a hosted payment session for ``order``."""
        pass

    @abstractmethod
    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the decoded event.

        Raises ``WebhookAuthenticationError`` when the signature is missing
        or invalid.
        """
        pass


class StripePaymentGateway(IPaymentGateway):
    """Stripe Checkout implementation. The API key is passed per request."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._logger = structlog.get_logger().bind(component="payment_gateway")

    def _session_params(self, order: Order, products: Mapping[str, Product]) -> Dict[str, Any]:
        base_url = self._settings.public_base_url.rstrip("/")
        line_items = []
        for item in order.line_items:
            product = products.get(item.product_id)
            line_items.append({
                "price_data": {
                    "currency": order.currency,
                    "unit_amount": item.unit_price,
                    "product_data": {
                        "name": product.title if product else item.product_id,
                        "metadata": {"product_id": item.product_id},
                    },
                },
                "quantity": item.quantity,
            })

        return {
            "mode": "payment",
            "line_items": line_items,
            "customer_email": order.email,
            "client_reference_id": order.id,
            "success_url": f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base_url}/checkout/cancel?order_id={order.id}",
            "shipping_address_collection": {
                "allowed_countries": list(self._settings.checkout_allowed_countries),
            },
            "phone_number_collection": {"enabled": True},
            "metadata": {"order_id": order.id},
            "payment_intent_data": {"metadata": {"order_id": order.id}},
        }

    async def create_session(
        self,
        order: Order,
        products: Mapping[str, Product],
    ) -> PaymentSession:
        log = self._logger.bind(order_id=order.id)
        params = self._session_params(order, products)

        # The caller bounds this call with PAYMENT_GATEWAY_TIMEOUT
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._settings.stripe_secret_key,
                idempotency_key=f"checkout_{order.id}",
                **params,
            )
        except stripe.StripeError as e:
            log.error("stripe_session_failed", error=str(e), error_type=type(e).__name__)
            raise PaymentGatewayError("Payment provider rejected the session", order_id=order.id) from e

        log.info("stripe_session_created", stripe_session_id=session.id, amount=order.total)
        return PaymentSession(session_id=session.id, redirect_url=session.url)

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        secret = self._settings.stripe_webhook_secret
        if not secret:
            self._logger.error("stripe_webhook_secret_missing")
            raise WebhookAuthenticationError("Payment webhook secret is not configured")
        if not signature:
            raise WebhookAuthenticationError("Missing payment provider signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                tolerance=self._settings.stripe_webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            self._logger.warning("stripe_signature_invalid", error=str(e))
            raise WebhookAuthenticationError("Invalid payment provider signature") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise OrderValidationError("Payment event is not valid JSON") from e
        if not isinstance(event, dict):
            raise OrderValidationError("Payment event must be a JSON object")
        return event
