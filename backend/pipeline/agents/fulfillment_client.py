"""
Fulfillment Client
==================
Pushes confirmed orders to the manufacturing partner over HTTP and returns
the partner's fulfillment id.

FAILURE HANDLING:
- Every call is bounded by MANUFACTURER_TIMEOUT
- Timeouts, transport errors, non-2xx responses and malformed bodies all
  surface as FulfillmentError; nothing is retried here

pip install httpx
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from config import Settings
from pipeline.errors import FulfillmentError
from schemas.event_definitions import FulfillmentPayload, FulfillmentReceipt


class IFulfillmentClient(ABC):
    """Manufacturer contract used by the order state machine"""

    @abstractmethod
    async def send_order(self, payload: FulfillmentPayload) -> str:
        """Forward an order; returns the partner's fulfillment id."""
        pass

    async def close(self) -> None:
        return None


class ManufacturerClient(IFulfillmentClient):
    """httpx-based client for the manufacturer's ``POST /orders`` API"""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._logger = structlog.get_logger().bind(component="fulfillment_client")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.manufacturer_api_url,
                timeout=self._settings.manufacturer_timeout,
                headers={
                    "Authorization": f"Bearer {self._settings.manufacturer_api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send_order(self, payload: FulfillmentPayload) -> str:
        log = self._logger.bind(order_id=payload.order_id)
        if not self._settings.manufacturer_api_url:
            raise FulfillmentError("Manufacturer API URL is not configured", order_id=payload.order_id)

        try:
            response = await self._get_client().post(
                "/orders",
                json=payload.model_dump(mode="json", by_alias=True),
            )
            response.raise_for_status()
            receipt = FulfillmentReceipt.model_validate(response.json())
        except httpx.TimeoutException as e:
            log.error("manufacturer_timeout", timeout=self._settings.manufacturer_timeout)
            raise FulfillmentError("Manufacturer timed out", order_id=payload.order_id) from e
        except httpx.HTTPStatusError as e:
            log.error("manufacturer_rejected_order",
                      status_code=e.response.status_code,
                      body=e.response.text[:500])
            raise FulfillmentError(
                f"Manufacturer returned HTTP {e.response.status_code}",
                order_id=payload.order_id,
            ) from e
        except httpx.HTTPError as e:
            log.error("manufacturer_unreachable", error=str(e))
            raise FulfillmentError("Manufacturer is unreachable", order_id=payload.order_id) from e
        except ValueError as e:
            log.error("manufacturer_bad_response", error=str(e))
            raise FulfillmentError("Manufacturer response is malformed", order_id=payload.order_id) from e

        log.info("manufacturer_accepted_order", fulfillment_id=receipt.fulfillment_id)
        return receipt.fulfillment_id
