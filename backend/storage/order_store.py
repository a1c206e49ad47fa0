"""
Order Store
===========
Persistence interface for the order state machine, with two backends:

- PostgresOrderStore: asyncpg-backed, status changes are conditional
  UPDATEs evaluated by the database
- InMemoryOrderStore: single-process store for local runs and tests; the
  same compare-and-set semantics are enforced under one asyncio.Lock

Every status change is a compare-and-set: the write only happens when the
current status is one of the allowed predecessors.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import database
from schemas.orders import (
    LineItem,
    NewLineItem,
    Order,
    OrderStatus,
    PaymentEvent,
    Product,
    utc_now,
)


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderStore(ABC):
    """Abstract order store"""

    # --- catalog -------------------------------------------------------------

    @abstractmethod
    async def list_active_products(self) -> List[Product]:
        pass

    @abstractmethod
    async def get_products(self, product_ids: Sequence[str]) -> Dict[str, Product]:
        """Products by id; unknown ids are absent from the result."""
        pass

    # --- orders --------------------------------------------------------------

    @abstractmethod
    async def create_order(
        self,
        email: str,
        currency: str,
        line_items: Sequence[NewLineItem],
    ) -> Order:
        """Persist a PENDING order and its line items as one atomic unit."""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def set_payment_session(self, order_id: str, session_id: str) -> bool:
        """Set the session id if the order is PENDING and has none yet."""
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> Optional[Order]:
        """Compare-and-set one order. Returns the updated order or None."""
        pass

    @abstractmethod
    async def transition_by_fulfillment(
        self,
        fulfillment_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> List[Order]:
        """Compare-and-set every order carrying ``fulfillment_id``."""
        pass

    @abstractmethod
    async def get_orders_by_fulfillment(self, fulfillment_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def get_stale_orders(
        self,
        status: OrderStatus,
        minutes_threshold: int,
        limit: int = 10,
        exclude_event_type: Optional[str] = None,
    ) -> List[Order]:
        """
        Orders left at ``status`` for ``minutes_threshold``, oldest first.

        Orders that already carry an audit record of ``exclude_event_type``
        are left out, so settled orders never crowd out newer ones.
        """
        pass

    # --- audit log -----------------------------------------------------------

    @abstractmethod
    async def append_payment_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        order_id: Optional[str] = None,
    ) -> PaymentEvent:
        pass

    @abstractmethod
    async def get_payment_events(
        self,
        order_id: str,
        event_types: Optional[Sequence[str]] = None,
    ) -> List[PaymentEvent]:
        pass

    @abstractmethod
    async def count_payment_events(self, order_id: str, event_type: str) -> int:
        pass

    async def order_exists(self, order_id: Optional[str]) -> bool:
        if not order_id:
            return False
        return await self.get_order(order_id) is not None


def _status_values(statuses: Iterable[OrderStatus]) -> List[str]:
    return [OrderStatus(s).value for s in statuses]


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

class PostgresOrderStore(IOrderStore):
    """Order store on top of the asyncpg pool in ``database``"""

    async def list_active_products(self) -> List[Product]:
        rows = await database.list_active_products()
        return [Product.model_validate(row) for row in rows]

    async def get_products(self, product_ids: Sequence[str]) -> Dict[str, Product]:
        rows = await database.get_products(list(dict.fromkeys(product_ids)))
        return {row["id"]: Product.model_validate(row) for row in rows}

    async def create_order(
        self,
        email: str,
        currency: str,
        line_items: Sequence[NewLineItem],
    ) -> Order:
        total = sum(item.unit_price * item.quantity for item in line_items)
        order_id = await database.create_order(
            email=email,
            currency=currency,
            total=total,
            line_items=[item.model_dump() for item in line_items],
        )
        order = await self.get_order(order_id)
        if order is None:
            raise RuntimeError(f"Order {order_id} vanished after insert")
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await database.get_order(order_id)
        return Order.model_validate(row) if row else None

    async def set_payment_session(self, order_id: str, session_id: str) -> bool:
        return await database.set_payment_session(order_id, session_id)

    async def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> Optional[Order]:
        row = await database.transition_order(
            order_id,
            OrderStatus(to_status).value,
            _status_values(from_statuses),
            **fields,
        )
        if row is None:
            return None
        row["line_items"] = await database.get_line_items(order_id)
        return Order.model_validate(row)

    async def transition_by_fulfillment(
        self,
        fulfillment_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> List[Order]:
        rows = await database.transition_orders_by_fulfillment(
            fulfillment_id,
            OrderStatus(to_status).value,
            _status_values(from_statuses),
            **fields,
        )
        return [Order.model_validate(row) for row in rows]

    async def get_orders_by_fulfillment(self, fulfillment_id: str) -> List[Order]:
        rows = await database.get_orders_by_fulfillment(fulfillment_id)
        return [Order.model_validate(row) for row in rows]

    async def get_stale_orders(
        self,
        status: OrderStatus,
        minutes_threshold: int,
        limit: int = 10,
        exclude_event_type: Optional[str] = None,
    ) -> List[Order]:
        rows = await database.get_stale_orders(
            OrderStatus(status).value,
            minutes_threshold,
            limit,
            exclude_event_type=exclude_event_type,
        )
        return [Order.model_validate(row) for row in rows]

    async def append_payment_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        order_id: Optional[str] = None,
    ) -> PaymentEvent:
        row = await database.insert_payment_event(event_type, payload, order_id)
        return PaymentEvent.model_validate(row)

    async def get_payment_events(
        self,
        order_id: str,
        event_types: Optional[Sequence[str]] = None,
    ) -> List[PaymentEvent]:
        rows = await database.get_payment_events(order_id, event_types)
        return [PaymentEvent.model_validate(row) for row in rows]

    async def count_payment_events(self, order_id: str, event_type: str) -> int:
        return await database.count_payment_events(order_id, event_type)


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

_SETTABLE_FIELDS = ("stripe_payment_intent_id", "fulfillment_id", "tracking_number")


class InMemoryOrderStore(IOrderStore):
    """Lock-guarded in-memory order store"""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: Dict[str, Product] = {p.id: p for p in (products or [])}
        self._orders: Dict[str, Order] = {}
        self._events: List[PaymentEvent] = []
        self._lock = asyncio.Lock()

    def add_product(self, product: Product) -> None:
        self._products[product.id] = product

    @property
    def payment_events(self) -> List[PaymentEvent]:
        return list(self._events)

    async def list_active_products(self) -> List[Product]:
        async with self._lock:
            products = [p for p in self._products.values() if p.active]
        return sorted(products, key=lambda p: p.title)

    async def get_products(self, product_ids: Sequence[str]) -> Dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def create_order(
        self,
        email: str,
        currency: str,
        line_items: Sequence[NewLineItem],
    ) -> Order:
        order_id = str(uuid.uuid4())
        items = [
            LineItem(
                id=str(uuid.uuid4()),
                order_id=order_id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in line_items
        ]
        order = Order(
            id=order_id,
            email=email,
            currency=currency,
            total=sum(item.subtotal for item in items),
            status=OrderStatus.PENDING,
            line_items=items,
        )
        async with self._lock:
            self._orders[order_id] = order
        return order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def set_payment_session(self, order_id: str, session_id: str) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if (
                order is None
                or order.status is not OrderStatus.PENDING
                or order.stripe_session_id is not None
            ):
                return False
            self._orders[order_id] = order.model_copy(update={
                "stripe_session_id": session_id,
                "updated_at": utc_now(),
            })
            return True

    def _apply(self, order: Order, to_status: OrderStatus, fields: Dict[str, Any]) -> Order:
        for key in fields:
            if key not in _SETTABLE_FIELDS:
                raise ValueError(f"Field cannot be set on transition: {key}")
        updated = order.model_copy(update={
            **fields,
            "status": OrderStatus(to_status),
            "updated_at": utc_now(),
        })
        self._orders[order.id] = updated
        return updated.model_copy(deep=True)

    async def transition(
        self,
        order_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> Optional[Order]:
        allowed = set(_status_values(from_statuses))
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status.value not in allowed:
                return None
            return self._apply(order, to_status, fields)

    async def transition_by_fulfillment(
        self,
        fulfillment_id: str,
        to_status: OrderStatus,
        from_statuses: Iterable[OrderStatus],
        **fields: Any,
    ) -> List[Order]:
        allowed = set(_status_values(from_statuses))
        async with self._lock:
            matching = [
                o for o in self._orders.values()
                if o.fulfillment_id == fulfillment_id and o.status.value in allowed
            ]
            return [self._apply(order, to_status, fields) for order in matching]

    async def get_orders_by_fulfillment(self, fulfillment_id: str) -> List[Order]:
        async with self._lock:
            return [
                o.model_copy(deep=True)
                for o in self._orders.values()
                if o.fulfillment_id == fulfillment_id
            ]

    async def get_stale_orders(
        self,
        status: OrderStatus,
        minutes_threshold: int,
        limit: int = 10,
        exclude_event_type: Optional[str] = None,
    ) -> List[Order]:
        cutoff = utc_now() - timedelta(minutes=minutes_threshold)
        async with self._lock:
            settled = set()
            if exclude_event_type:
                settled = {e.order_id for e in self._events if e.type == exclude_event_type}
            stale = [
                o for o in self._orders.values()
                if o.status is OrderStatus(status)
                and o.updated_at < cutoff
                and o.id not in settled
            ]
        stale.sort(key=lambda o: o.updated_at)
        return [o.model_copy(deep=True) for o in stale[:limit]]

    async def append_payment_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        order_id: Optional[str] = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            id=str(uuid.uuid4()),
            type=event_type,
            payload=payload,
            order_id=order_id,
        )
        async with self._lock:
            self._events.append(event)
        return event

    async def get_payment_events(
        self,
        order_id: str,
        event_types: Optional[Sequence[str]] = None,
    ) -> List[PaymentEvent]:
        async with self._lock:
            return [
                e for e in self._events
                if e.order_id == order_id and (not event_types or e.type in event_types)
            ]

    async def count_payment_events(self, order_id: str, event_type: str) -> int:
        return len(await self.get_payment_events(order_id, [event_type]))
