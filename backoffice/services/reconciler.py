# backoffice/services/reconciler.py
"""
Stock effect reconciler.

An order transition commits its status together with a ``stock`` outbox event that lists
the movements it requires. This module applies such an event:

- all movements of one event are written in a single transaction (all or nothing),
  under the stock locks of every (product, warehouse) pair involved;
- the event is marked ``sent`` in the same transaction, so a retry never applies it twice,
  and the order's ``stock_held`` flag flips only here, together with the movements;
- effects of one order apply strictly in id order: a later effect waits while an earlier
  one is still open;
- on failure the movement transaction is rolled back and the event is marked ``failed``
  with the error and the next attempt time; the committed order status is untouched.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.locks import keys_for_stock, order_key, outbox_key
from backoffice.core.logging import get_logger
from backoffice.models.base import for_update_by_id, locked_transaction
from backoffice.models.order import Order
from backoffice.models.outbox import CHANNEL_STOCK, OutboxEvent
from backoffice.models.warehouse import MovementType
from backoffice.services.stock_ledger import apply_movement

logger = get_logger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
FAILED = "failed"

_OPEN = ("pending", "failed")


def _effect_keys(event_id: int, payload: dict[str, Any]) -> list[str]:
    wh = int(payload.get("warehouse_id") or 0)
    pairs = [(int(ln["product_id"]), wh) for ln in payload.get("lines") or []]
    keys = keys_for_stock(pairs) + [outbox_key(event_id)]
    if payload.get("order_id"):
        keys.append(order_key(int(payload["order_id"])))
    return keys


def _record_failure(session: Session, event_id: int, error: str) -> None:
    with locked_transaction(session, [outbox_key(event_id)]):
        ev = for_update_by_id(session, OutboxEvent, event_id)
        if ev is not None and ev.status in _OPEN:
            ev.mark_failed(error, retry_in_seconds=settings.STOCK_EFFECT_RETRY_SECONDS)
            logger.warning(
                "stock_effect_failed",
                effect_id=event_id,
                attempts=ev.attempts,
                next_attempt_at=ev.next_attempt_at.isoformat() if ev.next_attempt_at else None,
                error=error,
            )


def apply_stock_effect(session: Session, effect_id: int) -> str:
    """
    Apply one stock effect. Returns "applied", "skipped" (missing, already applied, cancelled
    or waiting behind an earlier open effect of the same order)
    or "failed" (recorded on the event for a later retry).
    """
    ev: Optional[OutboxEvent] = session.get(OutboxEvent, effect_id)
    if ev is None or ev.channel != CHANNEL_STOCK:
        return SKIPPED
    payload = dict(ev.payload or {})
    keys = _effect_keys(effect_id, payload)

    try:
        with locked_transaction(session, keys):
            ev = for_update_by_id(session, OutboxEvent, effect_id)
            if ev is None or ev.status not in _OPEN:
                return SKIPPED
            order: Optional[Order] = None
            order_id = payload.get("order_id")
            if order_id:
                earlier = OutboxEvent.open_events(
                    session,
                    channel=CHANNEL_STOCK,
                    aggregate_type="order",
                    aggregate_id=order_id,
                    before_id=effect_id,
                )
                if earlier:
                    logger.info("stock_effect_blocked", effect_id=effect_id, blocked_by=earlier[0].id)
                    return SKIPPED
                order = for_update_by_id(session, Order, int(order_id))
            for line in payload.get("lines") or []:
                apply_movement(
                    session,
                    product_id=int(line["product_id"]),
                    warehouse_id=int(payload["warehouse_id"]),
                    movement_type=payload["movement_type"],
                    reason=payload["reason"],
                    quantity=int(line["quantity"]),
                    user_id=payload.get("actor_id"),
                    order_id=payload.get("order_id"),
                    effect_id=effect_id,
                    metadata={
                        "order_id": payload.get("order_id"),
                        "order_number": payload.get("order_number"),
                        "status": payload.get("status"),
                    },
                )
            if order is not None:
                order.stock_held = payload["movement_type"] == MovementType.DECREASE.value
            ev.mark_sent()
    except Exception as e:  # recorded on the event and retried
        _record_failure(session, effect_id, f"{type(e).__name__}: {e}")
        return FAILED

    logger.info(
        "stock_effect_applied",
        effect_id=effect_id,
        order_id=payload.get("order_id"),
        movement_type=payload.get("movement_type"),
        lines=len(payload.get("lines") or []),
    )
    return APPLIED


def reconcile_pending_stock_effects(session: Session, *, limit: Optional[int] = None) -> dict[str, int]:
    """Retry every due stock effect that is not applied yet and not parked."""
    batch = OutboxEvent.batch_fetch(
        session,
        channel=CHANNEL_STOCK,
        statuses=("pending", "failed"),
        limit=limit or settings.OUTBOX_BATCH_SIZE,
        max_attempts=settings.STOCK_EFFECT_MAX_ATTEMPTS,
    )
    ids = [ev.id for ev in batch]
    session.rollback()

    stats = {APPLIED: 0, FAILED: 0, SKIPPED: 0}
    for effect_id in ids:
        stats[apply_stock_effect(session, effect_id)] += 1
    if ids:
        logger.info("stock_effects_reconciled", **stats)
    return stats


__all__ = ["APPLIED", "SKIPPED", "FAILED", "apply_stock_effect", "reconcile_pending_stock_effects"]
