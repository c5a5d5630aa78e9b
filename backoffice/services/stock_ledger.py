# backoffice/services/stock_ledger.py
"""
Stock ledger: append-only movements + the per-(product, warehouse) projection.

Write path
----------
apply_movement() is the only code that touches ProductStock / Product.total_stock /
StockMovement. It runs inside the caller's transaction, which must hold the
stock lock for (product, warehouse) (see record_stock_movement() and the stock
effect reconciler). Projection and ledger entry are written together, so every entry's
previous_stock equals the prior entry's new_stock.

Read path
---------
get_stock_history / get_stock_summary / get_stock_movement_chart_data / verify_ledger.
"""

from __future__ import annotations

import calendar
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import (
    BackofficeValidationError,
    InsufficientStockError,
    NotFoundError,
)
from backoffice.core.locks import stock_key
from backoffice.core.logging import audit_logger, get_logger
from backoffice.core.permissions import STOCK_WRITERS, require_owner_or_admin, require_role
from backoffice.models.base import locked_transaction, paginate, utc_now
from backoffice.models.outbox import OutboxEvent
from backoffice.models.user import User
from backoffice.models.warehouse import (
    MovementType,
    Product,
    ProductStatus,
    ProductStock,
    StockMovement,
    StockMovementReason,
    Warehouse,
    reason_matches_type,
)
from backoffice.services.notifications import NotificationDispatcher, relay_after_commit

logger = get_logger(__name__)

MAX_NOTES_LENGTH = 500


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _parse_movement_type(value: Any) -> MovementType:
    try:
        return value if isinstance(value, MovementType) else MovementType(str(value).strip().lower())
    except ValueError as e:
        raise BackofficeValidationError(f"Invalid movement type: {value!r}", "INVALID_MOVEMENT_TYPE") from e


def _parse_reason(value: Any) -> StockMovementReason:
    try:
        return (
            value if isinstance(value, StockMovementReason) else StockMovementReason(str(value).strip().lower())
        )
    except ValueError as e:
        raise BackofficeValidationError(f"Invalid movement reason: {value!r}", "INVALID_REASON") from e


def validate_movement(
    movement_type: Any, reason: Any, quantity: Any, notes: Optional[str] = None
) -> tuple[MovementType, StockMovementReason, int]:
    mt = _parse_movement_type(movement_type)
    rs = _parse_reason(reason)
    if not reason_matches_type(mt, rs):
        raise BackofficeValidationError(
            f"Reason '{rs.value}' is not valid for a {mt.value} movement", "REASON_TYPE_MISMATCH"
        )
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise BackofficeValidationError("Quantity must be an integer", "INVALID_QUANTITY")
    if quantity < 1:
        raise BackofficeValidationError("Quantity must be at least 1", "INVALID_QUANTITY")
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise BackofficeValidationError(
            f"Notes cannot exceed {MAX_NOTES_LENGTH} characters", "NOTES_TOO_LONG"
        )
    return mt, rs, int(quantity)


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------
def apply_movement(
    session: Session,
    *,
    product_id: int,
    warehouse_id: int,
    movement_type: Any,
    reason: Any,
    quantity: int,
    user_id: Optional[int],
    metadata: Optional[dict[str, Any]] = None,
    notes: Optional[str] = None,
    order_id: Optional[int] = None,
    effect_id: Optional[int] = None,
) -> StockMovement:
    """
    Write projection + ledger entry inside the current transaction.
    The caller holds the (product, warehouse) lock and commits.
    """
    mt, rs, qty = validate_movement(movement_type, reason, quantity, notes)

    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": product_id})
    warehouse = session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFoundError("Warehouse not found", "WAREHOUSE_NOT_FOUND", extra={"warehouse_id": warehouse_id})

    row = session.execute(
        select(ProductStock)
        .where(ProductStock.product_id == product_id, ProductStock.warehouse_id == warehouse_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if row is None:
        if mt == MovementType.DECREASE:
            raise NotFoundError(
                "Product has no stock in this warehouse",
                "STOCK_NOT_FOUND",
                extra={"product_id": product_id, "warehouse_id": warehouse_id},
            )
        row = ProductStock(product_id=product_id, warehouse_id=warehouse_id, stock=0)
        session.add(row)

    previous = int(row.stock or 0)
    delta = qty if mt == MovementType.INCREASE else -qty
    new = previous + delta
    if new < 0:
        raise InsufficientStockError(
            f"Insufficient stock: available {previous}, requested {qty}",
            extra={
                "product_id": product_id,
                "warehouse_id": warehouse_id,
                "available": previous,
                "requested": qty,
            },
        )

    # projection
    row.stock = new
    session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(total_stock=Product.total_stock + delta, updated_at=utc_now())
    )
    if mt == MovementType.INCREASE and new > 0 and product.status == ProductStatus.OUT_OF_STOCK.value:
        product.status = ProductStatus.ACTIVE.value
    elif mt == MovementType.DECREASE and product.status == ProductStatus.ACTIVE.value:
        # total_stock считается по всем складам
        total = session.execute(select(Product.total_stock).where(Product.id == product_id)).scalar_one()
        if int(total or 0) <= 0:
            product.status = ProductStatus.OUT_OF_STOCK.value

    # ledger
    entry = StockMovement(
        product_id=product_id,
        warehouse_id=warehouse_id,
        movement_type=mt.value,
        reason=rs.value,
        quantity=qty,
        previous_stock=previous,
        new_stock=new,
        user_id=user_id,
        order_id=order_id,
        effect_id=effect_id,
        notes=notes,
        meta=dict(metadata or {}),
    )
    session.add(entry)

    threshold = int(settings.LOW_STOCK_THRESHOLD)
    if 0 < new <= threshold:
        OutboxEvent.notify(
            session,
            user_id=product.seller_id,
            type="low_stock",
            title="Low Stock Warning",
            message=(
                f"Product '{product.name}' ({product.code}) is running low in "
                f"{warehouse.name}: {new} unit(s) left."
            ),
            action_link=f"/products/{product.id}/stock",
            aggregate_type="product",
            aggregate_id=product.id,
        )

    session.flush()
    logger.info(
        "stock_movement_applied",
        product_id=product_id,
        warehouse_id=warehouse_id,
        movement_type=mt.value,
        reason=rs.value,
        quantity=qty,
        previous_stock=previous,
        new_stock=new,
        order_id=order_id,
        effect_id=effect_id,
    )
    return entry


def record_stock_movement(
    session: Session,
    actor: User,
    *,
    product_id: int,
    warehouse_id: int,
    movement_type: Any,
    reason: Any,
    quantity: int,
    metadata: Optional[dict[str, Any]] = None,
    notes: Optional[str] = None,
    order_id: Optional[int] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> StockMovement:
    """Manual stock movement (restock, damage, correction, ...) as its own transaction."""
    require_role(actor, STOCK_WRITERS, resource="stock_movement")
    validate_movement(movement_type, reason, quantity, notes)

    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": product_id})
    require_owner_or_admin(actor, product.seller_id, resource=f"product:{product_id}")

    with locked_transaction(session, [stock_key(product_id, warehouse_id)]):
        entry = apply_movement(
            session,
            product_id=product_id,
            warehouse_id=warehouse_id,
            movement_type=movement_type,
            reason=reason,
            quantity=quantity,
            user_id=actor.id,
            metadata=metadata,
            notes=notes,
            order_id=order_id,
        )

    audit_logger.log_data_change(
        actor.id,
        "stock_movement",
        "product_stock",
        f"{product_id}:{warehouse_id}",
        {
            "movement_type": entry.movement_type,
            "reason": entry.reason,
            "quantity": entry.quantity,
            "previous_stock": entry.previous_stock,
            "new_stock": entry.new_stock,
        },
    )
    relay_after_commit(session, dispatcher)
    return entry


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------
def _visible_products_clause(actor: User):
    if actor.role in ("admin", "moderator"):
        return None
    return Product.seller_id == actor.id


def get_stock_history(
    session: Session,
    actor: User,
    *,
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    movement_type: Optional[str] = None,
    reason: Optional[str] = None,
    user_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[StockMovement], int]:
    """Ledger entries, newest first, paginated."""
    require_role(actor, STOCK_WRITERS, resource="stock_history")

    stmt = select(StockMovement).join(Product, Product.id == StockMovement.product_id)
    owner = _visible_products_clause(actor)
    if owner is not None:
        stmt = stmt.where(owner)
    if product_id is not None:
        stmt = stmt.where(StockMovement.product_id == product_id)
    if warehouse_id is not None:
        stmt = stmt.where(StockMovement.warehouse_id == warehouse_id)
    if movement_type:
        stmt = stmt.where(StockMovement.movement_type == _parse_movement_type(movement_type).value)
    if reason:
        stmt = stmt.where(StockMovement.reason == _parse_reason(reason).value)
    if user_id is not None:
        stmt = stmt.where(StockMovement.user_id == user_id)
    if date_from is not None:
        stmt = stmt.where(StockMovement.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(StockMovement.created_at <= date_to)
    if search:
        stmt = stmt.where(StockMovement.notes.ilike(f"%{search.strip()}%"))

    return paginate(
        session,
        stmt,
        page=page,
        per_page=per_page,
        order_by=(StockMovement.created_at.desc(), StockMovement.id.desc()),
    )


def get_stock_summary(
    session: Session,
    actor: User,
    product_id: int,
    *,
    warehouse_id: Optional[int] = None,
) -> dict[str, Any]:
    require_role(actor, STOCK_WRITERS, resource="stock_summary")
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": product_id})
    require_owner_or_admin(actor, product.seller_id, resource=f"product:{product_id}")

    conds = [StockMovement.product_id == product_id]
    if warehouse_id is not None:
        conds.append(StockMovement.warehouse_id == warehouse_id)
    where = and_(*conds)

    total = session.execute(select(func.count(StockMovement.id)).where(where)).scalar() or 0
    increases = (
        session.execute(
            select(func.count(StockMovement.id)).where(
                where, StockMovement.movement_type == MovementType.INCREASE.value
            )
        ).scalar()
        or 0
    )
    decreases = (
        session.execute(
            select(func.count(StockMovement.id)).where(
                where, StockMovement.movement_type == MovementType.DECREASE.value
            )
        ).scalar()
        or 0
    )
    last_movement = session.execute(select(func.max(StockMovement.created_at)).where(where)).scalar()
    last_restock = session.execute(
        select(func.max(StockMovement.created_at)).where(
            where, StockMovement.reason == StockMovementReason.RESTOCK.value
        )
    ).scalar()

    stock_rows = list(
        session.execute(
            select(ProductStock, Warehouse)
            .join(Warehouse, Warehouse.id == ProductStock.warehouse_id)
            .where(ProductStock.product_id == product_id)
            .order_by(ProductStock.warehouse_id)
        ).all()
    )
    breakdown = [
        {
            "warehouse_id": wh.id,
            "warehouse_name": wh.name,
            "country": wh.country,
            "stock": int(ps.stock or 0),
        }
        for ps, wh in stock_rows
        if warehouse_id is None or wh.id == warehouse_id
    ]
    if warehouse_id is not None:
        current = sum(b["stock"] for b in breakdown)
    else:
        current = int(product.total_stock or 0)

    return {
        "product_id": product.id,
        "warehouse_id": warehouse_id,
        "total_movements": int(total),
        "total_increases": int(increases),
        "total_decreases": int(decreases),
        "current_stock": current,
        "last_movement_date": last_movement.isoformat() if last_movement else None,
        "last_restock_date": last_restock.isoformat() if last_restock else None,
        "warehouses": breakdown,
    }


CHART_RANGES = ("today", "this_week", "this_month", "this_year", "last_30_days", "custom")


def _chart_window(
    date_range: str,
    now: datetime,
    custom_start: Optional[date],
    custom_end: Optional[date],
) -> tuple[datetime, datetime, str]:
    """(start, end, bucket) where bucket is hour|day|month."""
    day_start = datetime.combine(now.date(), time.min)
    day_end = datetime.combine(now.date(), time.max)

    if date_range == "custom":
        if custom_start is None or custom_end is None:
            raise BackofficeValidationError("Custom range requires start and end dates", "INVALID_RANGE")
        start = datetime.combine(custom_start, time.min)
        end = datetime.combine(custom_end, time.max)
        if start > end:
            raise BackofficeValidationError("Start date must be before end date", "INVALID_RANGE")
        bucket = "month" if (end - start).days > 365 else "day"
        return start, end, bucket
    if date_range == "today":
        return day_start, day_end, "hour"
    if date_range == "this_week":
        days_since_sunday = (now.weekday() + 1) % 7
        return day_start - timedelta(days=days_since_sunday), day_end, "day"
    if date_range == "this_month":
        last_day = calendar.monthrange(now.year, now.month)[1]
        return (
            datetime(now.year, now.month, 1),
            datetime.combine(date(now.year, now.month, last_day), time.max),
            "day",
        )
    if date_range == "this_year":
        return datetime(now.year, 1, 1), datetime.combine(date(now.year, 12, 31), time.max), "month"
    if date_range == "last_30_days":
        return day_start - timedelta(days=30), day_end, "day"
    raise BackofficeValidationError(f"Unknown date range: {date_range!r}", "INVALID_RANGE")


_BUCKET_FORMATS = {"hour": "%Y-%m-%d %H:00:00", "day": "%Y-%m-%d", "month": "%Y-%m"}


def get_stock_movement_chart_data(
    session: Session,
    actor: User,
    product_id: int,
    *,
    date_range: str = "last_30_days",
    warehouse_id: Optional[int] = None,
    custom_start: Optional[date] = None,
    custom_end: Optional[date] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """
    Per bucket: stock_in / stock_out quantities and total_in / total_out movement counts,
    ordered by bucket key.
    """
    require_role(actor, STOCK_WRITERS, resource="stock_chart")
    product = session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": product_id})
    require_owner_or_admin(actor, product.seller_id, resource=f"product:{product_id}")

    start, end, bucket = _chart_window(date_range or "last_30_days", now or utc_now(), custom_start, custom_end)
    fmt = _BUCKET_FORMATS[bucket]

    stmt = select(StockMovement.created_at, StockMovement.movement_type, StockMovement.quantity).where(
        StockMovement.product_id == product_id,
        StockMovement.created_at >= start,
        StockMovement.created_at <= end,
    )
    if warehouse_id is not None:
        stmt = stmt.where(StockMovement.warehouse_id == warehouse_id)

    buckets: dict[str, dict[str, int]] = {}
    for created_at, mtype, qty in session.execute(stmt).all():
        key = created_at.strftime(fmt)
        b = buckets.setdefault(key, {"stock_in": 0, "stock_out": 0, "total_in": 0, "total_out": 0})
        if mtype == MovementType.INCREASE.value:
            b["stock_in"] += int(qty)
            b["total_in"] += 1
        else:
            b["stock_out"] += int(qty)
            b["total_out"] += 1

    ordered = OrderedDict(sorted(buckets.items()))
    return [{"date": k, **v} for k, v in ordered.items()]


@dataclass
class LedgerReport:
    product_id: int
    warehouse_id: int
    entries: int = 0
    projection: Optional[int] = None
    last_new_stock: Optional[int] = None
    issues: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "ok": self.ok,
            "entries": self.entries,
            "projection": self.projection,
            "last_new_stock": self.last_new_stock,
            "issues": list(self.issues),
        }


def verify_ledger(session: Session, product_id: int, warehouse_id: int) -> LedgerReport:
    """
    Audit one (product, warehouse) chain: each entry's previous_stock equals the prior
    entry's new_stock, new = previous ± quantity, never negative, and the projection
    equals the last new_stock.
    """
    report = LedgerReport(product_id=product_id, warehouse_id=warehouse_id)
    rows = session.execute(
        select(StockMovement)
        .where(StockMovement.product_id == product_id, StockMovement.warehouse_id == warehouse_id)
        .order_by(StockMovement.id.asc())
    ).scalars()

    prev_new: Optional[int] = None
    for m in rows:
        report.entries += 1
        sign = 1 if m.movement_type == MovementType.INCREASE.value else -1
        if m.new_stock != m.previous_stock + sign * m.quantity:
            report.issues.append(f"entry {m.id}: new_stock != previous_stock {'+' if sign > 0 else '-'} quantity")
        if m.new_stock < 0:
            report.issues.append(f"entry {m.id}: negative new_stock")
        expected_prev = 0 if prev_new is None else prev_new
        if m.previous_stock != expected_prev:
            report.issues.append(
                f"entry {m.id}: previous_stock {m.previous_stock} != prior new_stock {expected_prev}"
            )
        prev_new = m.new_stock
    report.last_new_stock = prev_new

    row = session.execute(
        select(ProductStock).where(
            ProductStock.product_id == product_id, ProductStock.warehouse_id == warehouse_id
        )
    ).scalar_one_or_none()
    report.projection = int(row.stock) if row is not None else None
    if (report.projection or 0) != (prev_new or 0):
        report.issues.append(f"projection {report.projection} != last new_stock {prev_new}")

    if not report.ok:
        logger.warning("ledger_verification_failed", **report.to_dict())
    return report


__all__ = [
    "MAX_NOTES_LENGTH",
    "CHART_RANGES",
    "validate_movement",
    "apply_movement",
    "record_stock_movement",
    "get_stock_history",
    "get_stock_summary",
    "get_stock_movement_chart_data",
    "LedgerReport",
    "verify_ledger",
]
