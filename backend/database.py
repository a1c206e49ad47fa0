"""
Database Module
===============
PostgreSQL persistence for the order relay.

This module provides:
- AsyncPG connection pool with idempotent migrations
- Product catalog reads
- Order + line item creation in a single transaction
- Compare-and-set status transitions (no blind overwrites)
- The payment_events audit log (append-only)

pip install asyncpg
"""

import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
import structlog

from config import Settings

logger = structlog.get_logger(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _settings: Optional[Settings] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, settings: Settings):
        """Initialize the connection pool and run migrations"""
        if cls._initialized:
            return
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not configured")

        try:
            cls._pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=settings.db_min_pool_size,
                max_size=settings.db_max_pool_size,
            )
            cls._settings = settings
            cls._initialized = True
            logger.info("database_pool_initialized",
                        min_size=settings.db_min_pool_size,
                        max_size=settings.db_max_pool_size)

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            raise RuntimeError("Database pool is not initialized")

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def fetch_value(cls, query: str, *args) -> Any:
        async with cls.acquire() as conn:
            return await conn.fetchval(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Create tables and indexes if missing"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                sku VARCHAR(100) NOT NULL,
                price INTEGER NOT NULL CHECK (price >= 0),
                currency VARCHAR(3) NOT NULL DEFAULT 'usd',
                active BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS orders (
                id UUID PRIMARY KEY,
                email TEXT NOT NULL,
                total INTEGER NOT NULL CHECK (total >= 0),
                currency VARCHAR(3) NOT NULL DEFAULT 'usd',
                status VARCHAR(32) NOT NULL DEFAULT 'PENDING',
                stripe_session_id VARCHAR(255) UNIQUE,
                stripe_payment_intent_id VARCHAR(255),
                fulfillment_id VARCHAR(255),
                tracking_number VARCHAR(255),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS line_items (
                id UUID PRIMARY KEY,
                order_id UUID NOT NULL REFERENCES orders(id),
                product_id TEXT NOT NULL REFERENCES products(id),
                position INTEGER NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity > 0),
                unit_price INTEGER NOT NULL CHECK (unit_price >= 0)
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS payment_events (
                id UUID PRIMARY KEY,
                type VARCHAR(100) NOT NULL,
                payload JSONB NOT NULL DEFAULT '{}',
                order_id UUID REFERENCES orders(id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, updated_at)",
            "CREATE INDEX IF NOT EXISTS idx_orders_fulfillment ON orders(fulfillment_id)",
            "CREATE INDEX IF NOT EXISTS idx_line_items_order ON line_items(order_id, position)",
            "CREATE INDEX IF NOT EXISTS idx_payment_events_order ON payment_events(order_id, type)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                await conn.execute(migration)

        logger.info("database_migrations_complete")


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _normalize(row: asyncpg.Record) -> Dict[str, Any]:
    result = dict(row)
    for key in ("id", "order_id"):
        if isinstance(result.get(key), uuid.UUID):
            result[key] = str(result[key])
    if isinstance(result.get("payload"), str):
        result["payload"] = json.loads(result["payload"])
    return result


def is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# =============================================================================
# PRODUCTS
# =============================================================================

async def list_active_products() -> List[Dict[str, Any]]:
    rows = await Database.fetch_all(
        "SELECT * FROM products WHERE active = TRUE ORDER BY title"
    )
    return [_normalize(row) for row in rows]


async def get_products(product_ids: Sequence[str]) -> List[Dict[str, Any]]:
    if not product_ids:
        return []
    rows = await Database.fetch_all(
        "SELECT * FROM products WHERE id = ANY($1::text[])",
        list(product_ids),
    )
    return [_normalize(row) for row in rows]


# =============================================================================
# ORDER CRUD
# =============================================================================

async def create_order(
    email: str,
    currency: str,
    total: int,
    line_items: Sequence[Dict[str, Any]],
) -> str:
    """Insert an order and its line items atomically. Returns the order id."""
    order_id = str(uuid.uuid4())

    async with Database.acquire() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO orders (id, email, total, currency, status)
                VALUES ($1, $2, $3, $4, 'PENDING')
                """,
                order_id,
                email,
                total,
                currency,
            )
            await conn.executemany(
                """
                INSERT INTO line_items
                (id, order_id, product_id, position, quantity, unit_price)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                [
                    (
                        str(uuid.uuid4()),
                        order_id,
                        item["product_id"],
                        position,
                        item["quantity"],
                        item["unit_price"],
                    )
                    for position, item in enumerate(line_items)
                ],
            )

    return order_id


async def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    """Get order by ID with its line items"""
    if not is_valid_uuid(order_id):
        return None

    row = await Database.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
    if not row:
        return None

    result = _normalize(row)
    result["line_items"] = await get_line_items(result["id"])
    return result


async def get_line_items(order_id: str) -> List[Dict[str, Any]]:
    rows = await Database.fetch_all(
        """
        SELECT id, order_id, product_id, quantity, unit_price
        FROM line_items
        WHERE order_id = $1
        ORDER BY position
        """,
        order_id,
    )
    return [_normalize(row) for row in rows]


async def set_payment_session(order_id: str, session_id: str) -> bool:
    """Attach the payment session id once, while the order is still PENDING"""
    if not is_valid_uuid(order_id):
        return False
    result = await Database.execute(
        """
        UPDATE orders
        SET stripe_session_id = $2, updated_at = NOW()
        WHERE id = $1
          AND status = 'PENDING'
          AND stripe_session_id IS NULL
        """,
        order_id,
        session_id,
    )
    return result == "UPDATE 1"


_TRANSITION_FIELDS = ("stripe_payment_intent_id", "fulfillment_id", "tracking_number")


def _transition_sets(fields: Dict[str, Any], first_param: int):
    set_clauses = ["status = $1", "updated_at = NOW()"]
    params: List[Any] = []
    param_num = first_param

    for key, value in fields.items():
        if key not in _TRANSITION_FIELDS:
            raise ValueError(f"Field cannot be set on transition: {key}")
        set_clauses.append(f"{key} = ${param_num}")
        params.append(value)
        param_num += 1

    return set_clauses, params


async def transition_order(
    order_id: str,
    to_status: str,
    from_statuses: Sequence[str],
    **fields,
) -> Optional[Dict[str, Any]]:
    """
    Compare-and-set status update for one order.

    Returns the updated row, or None when the order was not in one of
    ``from_statuses`` (already advanced, or never eligible).
    """
    set_clauses, params = _transition_sets(fields, first_param=4)
    if not is_valid_uuid(order_id):
        return None

    row = await Database.fetch_one(
        f"""
        UPDATE orders
        SET {', '.join(set_clauses)}
        WHERE id = $2 AND status = ANY($3::text[])
        RETURNING *
        """,
        to_status,
        order_id,
        list(from_statuses),
        *params,
    )
    return _normalize(row) if row else None


async def transition_orders_by_fulfillment(
    fulfillment_id: str,
    to_status: str,
    from_statuses: Sequence[str],
    **fields,
) -> List[Dict[str, Any]]:
    """Compare-and-set status update for every order carrying ``fulfillment_id``"""
    set_clauses, params = _transition_sets(fields, first_param=4)

    rows = await Database.fetch_all(
        f"""
        UPDATE orders
        SET {', '.join(set_clauses)}
        WHERE fulfillment_id = $2 AND status = ANY($3::text[])
        RETURNING *
        """,
        to_status,
        fulfillment_id,
        list(from_statuses),
        *params,
    )
    return [_normalize(row) for row in rows]


async def get_orders_by_fulfillment(fulfillment_id: str) -> List[Dict[str, Any]]:
    rows = await Database.fetch_all(
        "SELECT * FROM orders WHERE fulfillment_id = $1",
        fulfillment_id,
    )
    return [_normalize(row) for row in rows]


async def get_stale_orders(
    status: str,
    minutes_threshold: int,
    limit: int = 10,
    exclude_event_type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Orders sitting at ``status`` without an update for ``minutes_threshold``.

    Orders with an audit record of ``exclude_event_type`` are skipped.
    """
    rows = await Database.fetch_all(
        """
        SELECT o.*
        FROM orders o
        WHERE o.status = $1
          AND o.updated_at < NOW() - make_interval(mins => $2::int)
          AND ($4::text IS NULL OR NOT EXISTS (
                SELECT 1 FROM payment_events e
                WHERE e.order_id = o.id AND e.type = $4::text
          ))
        ORDER BY o.updated_at
        LIMIT $3
        """,
        status,
        minutes_threshold,
        limit,
        exclude_event_type,
    )
    return [_normalize(row) for row in rows]


# =============================================================================
# PAYMENT EVENT AUDIT LOG
# =============================================================================

async def insert_payment_event(
    event_type: str,
    payload: Dict[str, Any],
    order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Append one audit record. Never updated or deleted afterwards."""
    row = await Database.fetch_one(
        """
        INSERT INTO payment_events (id, type, payload, order_id)
        VALUES ($1, $2, $3::jsonb, $4)
        RETURNING *
        """,
        str(uuid.uuid4()),
        event_type,
        json.dumps(payload),
        order_id,
    )
    return _normalize(row)


async def get_payment_events(
    order_id: str,
    event_types: Optional[Sequence[str]] = None,
) -> List[Dict[str, Any]]:
    """Audit records for an order, oldest first"""
    if not is_valid_uuid(order_id):
        return []

    if event_types:
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_events
            WHERE order_id = $1 AND type = ANY($2::text[])
            ORDER BY created_at
            """,
            order_id,
            list(event_types),
        )
    else:
        rows = await Database.fetch_all(
            "SELECT * FROM payment_events WHERE order_id = $1 ORDER BY created_at",
            order_id,
        )
    return [_normalize(row) for row in rows]


async def count_payment_events(order_id: str, event_type: str) -> int:
    if not is_valid_uuid(order_id):
        return 0
    count = await Database.fetch_value(
        "SELECT COUNT(*) FROM payment_events WHERE order_id = $1 AND type = $2",
        order_id,
        event_type,
    )
    return int(count or 0)


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(settings: Settings):
    """Initialize database on app startup"""
    await Database.initialize(settings)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
