# storage/__init__.py
# ============================================================================
# ORDER RELAY: STORAGE MODULE
# ============================================================================
# Order store interface with PostgreSQL and in-memory backends
# ============================================================================

from storage.order_store import (
    IOrderStore,
    InMemoryOrderStore,
    PostgresOrderStore,
)

__all__ = [
    "IOrderStore",
    "InMemoryOrderStore",
    "PostgresOrderStore",
]
