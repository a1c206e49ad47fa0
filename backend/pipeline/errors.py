"""Exceptions raised by the order relay core and its collaborators."""

from typing import Optional


class OrderRelayError(Exception):
    """Base class for order relay errors. ``status_code`` maps to HTTP."""

    status_code = 500

    def __init__(self, message: str, *, order_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.order_id = order_id


class OrderValidationError(OrderRelayError):
    """Raised when checkout or webhook input fails validation."""

    status_code = 400


class EmptyCartError(OrderValidationError):
    """Raised when a checkout request carries no items."""


class UnresolvedCartError(OrderValidationError):
    """Raised when no cart entry references an active product."""


class WebhookAuthenticationError(OrderRelayError):
    """Raised when a webhook signature is missing or does not verify."""

    status_code = 400


class OrderNotFoundError(OrderRelayError):
    status_code = 404


class OrderStateConflictError(OrderRelayError):
    """Raised when an operation is not valid for the order's current state."""

    status_code = 409


class UpstreamError(OrderRelayError):
    """Raised when an external dependency fails or times out."""

    status_code = 502


class PaymentGatewayError(UpstreamError):
    pass


class FulfillmentError(UpstreamError):
    pass
