"""
Reconciliation Sweep - The Safety Net
=====================================
Background task for orders the webhook path left behind.

- PAID orders that never reached the manufacturer get their fulfillment
  push retried, up to RECONCILIATION_MAX_ATTEMPTS times
- Past that they are escalated once for manual review
- PENDING orders older than RECONCILIATION_PENDING_THRESHOLD are reported
  only; an unpaid order never changes state here
"""

import asyncio
from typing import Any, Dict

import structlog

from config import Settings
from pipeline.errors import OrderRelayError
from pipeline.order_state_machine import OrderStateMachine
from schemas.orders import OrderStatus

logger = structlog.get_logger(component="reconciliation")

RETRY_EVENT = "reconciliation.fulfillment_retry"
MANUAL_REVIEW_EVENT = "reconciliation.manual_review"


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

async def _escalate(machine: OrderStateMachine, order_id: str, attempts: int) -> bool:
    """Flag an order for manual review. Returns False if it already was."""
    if await machine.store.count_payment_events(order_id, MANUAL_REVIEW_EVENT):
        return False

    await machine.store.append_payment_event(
        MANUAL_REVIEW_EVENT,
        {"order_id": order_id, "attempts": attempts, "reason": "fulfillment_retries_exhausted"},
        order_id,
    )
    logger.critical("order_requires_manual_review", order_id=order_id, attempts=attempts)
    return True


async def run_reconciliation_cycle(machine: OrderStateMachine, settings: Settings) -> Dict[str, int]:
    """One sweep over stuck orders. Returns per-cycle counters."""
    stats = {"retried": 0, "forwarded": 0, "escalated": 0, "stale_pending": 0}
    store = machine.store

    stuck_paid = await store.get_stale_orders(
        OrderStatus.PAID,
        minutes_threshold=settings.reconciliation_paid_threshold,
        limit=settings.reconciliation_batch_size,
        exclude_event_type=MANUAL_REVIEW_EVENT,
    )
    if stuck_paid:
        logger.warning("stuck_paid_orders_found", count=len(stuck_paid))

    for order in stuck_paid:
        attempts = await store.count_payment_events(order.id, RETRY_EVENT)

        if attempts >= settings.reconciliation_max_attempts:
            if await _escalate(machine, order.id, attempts):
                stats["escalated"] += 1
            continue

        await store.append_payment_event(
            RETRY_EVENT, {"order_id": order.id, "attempt": attempts + 1}, order.id
        )
        stats["retried"] += 1

        try:
            forwarded = await machine.retry_fulfillment(order.id)
        except OrderRelayError as e:
            logger.error("fulfillment_retry_error", order_id=order.id, error=e.message)
            continue

        if forwarded:
            stats["forwarded"] += 1
            logger.info("fulfillment_retry_succeeded", order_id=order.id, attempt=attempts + 1)
        else:
            logger.warning("fulfillment_retry_failed", order_id=order.id, attempt=attempts + 1)

    stale_pending = await store.get_stale_orders(
        OrderStatus.PENDING,
        minutes_threshold=settings.reconciliation_pending_threshold,
        limit=settings.reconciliation_batch_size,
    )
    for order in stale_pending:
        logger.info("stale_pending_order",
                    order_id=order.id,
                    session_id=order.stripe_session_id,
                    created_at=order.created_at.isoformat())
    stats["stale_pending"] = len(stale_pending)

    logger.info("reconciliation_cycle_complete", **stats)
    return stats


async def reconciliation_loop(machine: OrderStateMachine, settings: Settings):
    """Run a cycle every RECONCILIATION_INTERVAL seconds until cancelled."""
    logger.info(
        "reconciliation_loop_started",
        interval=settings.reconciliation_interval,
        paid_threshold=settings.reconciliation_paid_threshold,
    )

    while True:
        try:
            await run_reconciliation_cycle(machine, settings)
        except Exception as e:
            logger.error("reconciliation_loop_error", error=str(e), exc_info=True)

        await asyncio.sleep(settings.reconciliation_interval)


# =============================================================================
# HEALTH CHECK
# =============================================================================

async def get_reconciliation_stats(machine: OrderStateMachine, settings: Settings) -> Dict[str, Any]:
    """Configuration plus current stuck counts, for monitoring"""
    stuck_paid = await machine.store.get_stale_orders(
        OrderStatus.PAID,
        settings.reconciliation_paid_threshold,
        limit=1000,
        exclude_event_type=MANUAL_REVIEW_EVENT,
    )
    stale_pending = await machine.store.get_stale_orders(
        OrderStatus.PENDING, settings.reconciliation_pending_threshold, limit=1000
    )
    return {
        "enabled": settings.reconciliation_enabled,
        "interval_seconds": settings.reconciliation_interval,
        "paid_threshold_minutes": settings.reconciliation_paid_threshold,
        "pending_threshold_minutes": settings.reconciliation_pending_threshold,
        "max_attempts": settings.reconciliation_max_attempts,
        "stuck_paid": len(stuck_paid),
        "stale_pending": len(stale_pending),
    }
