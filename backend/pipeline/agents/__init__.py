# Pipeline Agents
# ===============
# Narrow contracts for the two external partners of the order relay

from .payment_gateway import (
    IPaymentGateway,
    StripePaymentGateway,
)
from .fulfillment_client import (
    IFulfillmentClient,
    ManufacturerClient,
)

__all__ = [
    # Payment provider
    "IPaymentGateway",
    "StripePaymentGateway",
    # Manufacturer
    "IFulfillmentClient",
    "ManufacturerClient",
]
