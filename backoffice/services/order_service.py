# backoffice/services/order_service.py
"""
Order service: creation, status transitions (with discounts) and reads.

transition_order_status() commits, in one transaction under the order lock:
  status + history entry + price adjustments + the pending stock effect (outbox)
  + the seller notification (outbox).
After commit the stock effect is applied eagerly (EAGER_STOCK_EFFECTS); a failure there
is recorded on the effect and retried by the reconciler, the status stays committed.
A stock movement opposite to a still unapplied effect cancels that effect instead.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import BackofficeValidationError, NotFoundError
from backoffice.core.locks import order_key
from backoffice.core.logging import audit_logger, get_logger
from backoffice.core.permissions import (
    ORDER_CREATORS,
    STATUS_CHANGERS,
    require_owner_or_admin,
    require_role,
)
from backoffice.models.base import for_update_by_id, locked_transaction, paginate, to_money, utc_now
from backoffice.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory, PriceAdjustment
from backoffice.models.outbox import CHANNEL_STOCK, OutboxEvent
from backoffice.models.user import ROLE_SELLER, User
from backoffice.models.warehouse import MovementType, Product, Warehouse
from backoffice.services.duplicate_detection import DuplicateDetector, NullDuplicateDetector
from backoffice.services.notifications import NotificationDispatcher, relay_after_commit
from backoffice.services.order_state_machine import (
    DiscountLine,
    LineSnapshot,
    apply_discounts,
    parse_status,
    plan_transition,
)
from backoffice.services.reconciler import apply_stock_effect

logger = get_logger(__name__)

SYSTEM_ROLE = "system"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def generate_order_number() -> str:
    return f"ORD-{utc_now():%y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def _coerce_discount(d: Any) -> DiscountLine:
    if isinstance(d, DiscountLine):
        return d
    if not isinstance(d, Mapping):
        raise BackofficeValidationError("Invalid discount line", "INVALID_DISCOUNT")
    try:
        return DiscountLine(
            product_id=int(d["product_id"]),
            original_price=to_money(d["original_price"]),
            new_price=to_money(d["new_price"]),
            reason=str(d.get("reason") or ""),
            notes=d.get("notes"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise BackofficeValidationError(f"Invalid discount line: {e}", "INVALID_DISCOUNT") from e


def _minutes_between(start, end) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() // 60))


def _load_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", "ORDER_NOT_FOUND", extra={"order_id": order_id})
    return order


def _check_order_access(actor: User, order: Order) -> None:
    if actor.role == ROLE_SELLER:
        require_owner_or_admin(actor, order.seller_id, resource=f"order:{order.id}")


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------
@dataclass
class TransitionResult:
    changed: bool
    order: Order
    history: Optional[OrderStatusHistory] = None
    effect_id: Optional[int] = None
    effect_status: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "order": self.order.to_public_dict(),
            "history": self.history.to_public_dict() if self.history is not None else None,
            "stock_effect": (
                {"id": self.effect_id, "status": self.effect_status} if self.effect_id is not None else None
            ),
        }


def transition_order_status(
    session: Session,
    order_id: int,
    new_status: Any,
    actor: User,
    *,
    comment: Optional[str] = None,
    discounts: Optional[Iterable[Any]] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> TransitionResult:
    require_role(actor, STATUS_CHANGERS, resource=f"order:{order_id}")
    requested = parse_status(new_status)
    discount_lines = [_coerce_discount(d) for d in (discounts or [])]

    with locked_transaction(session, [order_key(order_id)]):
        order = for_update_by_id(session, Order, order_id)
        if order is None:
            raise NotFoundError("Order not found", "ORDER_NOT_FOUND", extra={"order_id": order_id})

        # stock_held отражает применённые движения; ещё не применённый эффект задаёт намерение
        open_effects = OutboxEvent.open_events(
            session, channel=CHANNEL_STOCK, aggregate_type="order", aggregate_id=order.id
        )
        held = bool(order.stock_held)
        if open_effects:
            held = (open_effects[-1].payload or {}).get("movement_type") == MovementType.DECREASE.value

        plan = plan_transition(
            order.status,
            requested,
            stock_held=held,
            has_discount=bool(discount_lines),
        )
        if not plan.changed:
            logger.info("order_transition_noop", order_id=order.id, status=order.status)
            return TransitionResult(changed=False, order=order)

        now = utc_now()
        discount_summary: Optional[str] = None
        if discount_lines:
            outcome = apply_discounts(
                [LineSnapshot(int(it.product_id), int(it.quantity), to_money(it.unit_price)) for it in order.items],
                discount_lines,
            )
            for applied in outcome.applied:
                line = order.line_for_product(applied.product_id)
                line.unit_price = applied.adjusted_price
                order.price_adjustments.append(
                    PriceAdjustment(
                        product_id=applied.product_id,
                        original_price=applied.original_price,
                        adjusted_price=applied.adjusted_price,
                        discount_amount=applied.discount_amount,
                        discount_percentage=applied.discount_percentage,
                        reason=applied.reason,
                        notes=applied.notes,
                        applied_by=actor.id,
                        applied_at=now,
                    )
                )
            order.total_discount_amount = to_money(
                to_money(order.total_discount_amount) + outcome.discount_increment
            )
            order.total_price = outcome.new_total
            order.final_total_price = outcome.new_total
            discount_summary = outcome.summary()

        history_comment = "\n".join(p for p in ((comment or "").strip(), discount_summary) if p) or None
        history = OrderStatusHistory(
            order_id=order.id,
            previous_status=plan.current.value,
            current_status=plan.requested.value,
            changed_by=actor.id,
            changed_by_role=actor.role,
            change_date=now,
            comment=history_comment,
            automatic_change=False,
            change_reason="price_adjustment" if plan.price_only else None,
            time_consumed_in_previous_status=_minutes_between(order.status_changed_at, now),
        )
        session.add(history)

        order.status_comment = history_comment
        if not plan.price_only:
            order.status = plan.requested.value
            order.status_changed_by = actor.id
            order.status_changed_at = now

        effect: Optional[OutboxEvent] = None
        superseded: list[OutboxEvent] = []
        if plan.movement is not None and open_effects:
            # встречное движение к неприменённому эффекту: отменяем эффект, склад не трогаем
            for ev in open_effects:
                ev.mark_cancelled(f"superseded by transition to {plan.requested.value}")
            superseded = open_effects
        elif plan.movement is not None:
            effect = OutboxEvent.enqueue(
                session,
                aggregate_type="order",
                aggregate_id=order.id,
                event_type="order.stock_effect",
                channel=CHANNEL_STOCK,
                payload={
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "status": plan.requested.value,
                    "warehouse_id": order.warehouse_id,
                    "movement_type": plan.movement.movement_type.value,
                    "reason": plan.movement.reason.value,
                    "lines": [
                        {"product_id": int(it.product_id), "quantity": int(it.quantity)} for it in order.items
                    ],
                    "actor_id": actor.id,
                },
            )

        if plan.price_only:
            title, message = (
                "Order prices adjusted",
                f"Prices of order {order.order_number} were adjusted.",
            )
        else:
            title, message = (
                "Order status updated",
                f"Order {order.order_number} moved from {plan.current.value} to {plan.requested.value}.",
            )
        OutboxEvent.notify(
            session,
            user_id=order.seller_id,
            type="order_status_changed",
            title=title,
            message=message,
            action_link=f"/orders/{order.id}",
            aggregate_type="order",
            aggregate_id=order.id,
        )
        session.flush()

    result = TransitionResult(changed=True, order=order, history=history)
    audit_logger.log_data_change(
        actor.id,
        "order_status_change",
        "order",
        order.id,
        {
            "from": plan.current.value,
            "to": plan.requested.value,
            "price_only": plan.price_only,
            "discounts": len(discount_lines),
            "movement": plan.movement.movement_type.value if plan.movement else None,
        },
    )

    if superseded:
        result.effect_id = superseded[-1].id
        result.effect_status = "cancelled"
        logger.info(
            "stock_effect_superseded",
            order_id=order.id,
            effect_ids=[ev.id for ev in superseded],
            status=plan.requested.value,
        )
    if effect is not None:
        result.effect_id = effect.id
        result.effect_status = "pending"
        if settings.EAGER_STOCK_EFFECTS:
            try:
                result.effect_status = apply_stock_effect(session, effect.id)
            except Exception as e:  # stays pending for the reconciler
                session.rollback()
                logger.error("stock_effect_eager_error", effect_id=effect.id, order_id=order.id, error=str(e))

    relay_after_commit(session, dispatcher)
    return result


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def _validate_customer(customer: Mapping[str, Any]) -> dict[str, Any]:
    name = str(customer.get("name") or "").strip()
    address = str(customer.get("shipping_address") or "").strip()
    phones = [str(p).strip() for p in customer.get("phone_numbers") or [] if str(p).strip()]
    if not name:
        raise BackofficeValidationError("Customer name is required", "INVALID_CUSTOMER")
    if not phones:
        raise BackofficeValidationError("At least one phone number is required", "INVALID_CUSTOMER")
    if not address:
        raise BackofficeValidationError("Shipping address is required", "INVALID_CUSTOMER")
    return {"name": name, "phone_numbers": phones, "shipping_address": address}


def create_order(
    session: Session,
    actor: User,
    *,
    seller_id: int,
    warehouse_id: int,
    customer: Mapping[str, Any],
    lines: Sequence[Mapping[str, Any]],
    detector: Optional[DuplicateDetector] = None,
) -> Order:
    require_role(actor, ORDER_CREATORS, resource="order")
    if seller_id is None:
        raise BackofficeValidationError("Seller is required", "MISSING_FIELDS")
    if actor.role == ROLE_SELLER:
        require_owner_or_admin(actor, seller_id, resource="order")

    seller = session.get(User, seller_id)
    if seller is None or seller.role != ROLE_SELLER:
        raise NotFoundError("Seller not found", "SELLER_NOT_FOUND", extra={"seller_id": seller_id})
    warehouse = session.get(Warehouse, warehouse_id)
    if warehouse is None or not warehouse.is_active:
        raise NotFoundError("Warehouse not found", "WAREHOUSE_NOT_FOUND", extra={"warehouse_id": warehouse_id})

    cust = _validate_customer(customer)
    if not lines:
        raise BackofficeValidationError("Order must contain at least one product", "INVALID_ORDER_LINES")

    parsed: list[tuple[int, int, Decimal]] = []
    seen: set[int] = set()
    for ln in lines:
        try:
            pid = int(ln["product_id"])
            qty = ln["quantity"]
            price = to_money(ln["unit_price"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackofficeValidationError(f"Invalid order line: {e}", "INVALID_ORDER_LINES") from e
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise BackofficeValidationError("Quantity must be an integer >= 1", "INVALID_ORDER_LINES")
        if price < 0:
            raise BackofficeValidationError("Unit price must be >= 0", "INVALID_ORDER_LINES")
        if pid in seen:
            raise BackofficeValidationError(
                f"Product {pid} appears more than once", "INVALID_ORDER_LINES", extra={"product_id": pid}
            )
        seen.add(pid)
        parsed.append((pid, qty, price))

    products = {
        p.id: p for p in session.execute(select(Product).where(Product.id.in_(sorted(seen)))).scalars()
    }
    for pid in seen:
        product = products.get(pid)
        if product is None:
            raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": pid})
        if int(product.seller_id) != int(seller_id):
            raise BackofficeValidationError(
                f"Product {pid} does not belong to the seller", "PRODUCT_NOT_OWNED", extra={"product_id": pid}
            )

    total = to_money(sum((price * qty for _, qty, price in parsed), Decimal("0.00")))
    check = (detector or NullDuplicateDetector()).detect(
        session,
        customer=cust,
        products=[{"product_id": pid, "quantity": qty} for pid, qty, _ in parsed],
        total_price=total,
        warehouse_id=warehouse_id,
        seller_id=seller_id,
    )

    now = utc_now()
    with locked_transaction(session):
        order = Order(
            order_number=generate_order_number(),
            seller_id=seller_id,
            warehouse_id=warehouse_id,
            customer_name=cust["name"],
            customer_phones=cust["phone_numbers"],
            shipping_address=cust["shipping_address"],
            status=OrderStatus.PENDING.value,
            status_changed_at=now,
            total_price=total,
            final_total_price=total,
            total_discount_amount=Decimal("0.00"),
            stock_held=False,
            is_double=False,
        )
        for pid, qty, price in parsed:
            order.items.append(OrderItem(product_id=pid, quantity=qty, unit_price=price, original_unit_price=price))
        session.add(order)
        session.flush()

        if check.is_duplicate:
            matches = [m.to_dict() for m in check.duplicate_orders]
            order.status = OrderStatus.DOUBLE.value
            order.is_double = True
            order.duplicate_matches = matches
            session.add(
                OrderStatusHistory(
                    order_id=order.id,
                    previous_status=OrderStatus.PENDING.value,
                    current_status=OrderStatus.DOUBLE.value,
                    changed_by=None,
                    changed_by_role=SYSTEM_ROLE,
                    change_date=now,
                    comment="Duplicate of: " + ", ".join(m["order_number"] for m in matches),
                    automatic_change=True,
                    change_reason="duplicate_detected",
                    time_consumed_in_previous_status=0,
                )
            )

    audit_logger.log_data_change(
        actor.id,
        "order_created",
        "order",
        order.id,
        {"order_number": order.order_number, "total_price": str(total), "status": order.status},
    )
    logger.info("order_created", order_id=order.id, order_number=order.order_number, status=order.status)
    return order


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_order(session: Session, actor: User, order_id: int) -> Order:
    require_role(actor, ORDER_CREATORS, resource=f"order:{order_id}")
    order = _load_order(session, order_id)
    _check_order_access(actor, order)
    return order


def get_order_history(session: Session, actor: User, order_id: int) -> list[OrderStatusHistory]:
    """History entries in chronological order."""
    order = get_order(session, actor, order_id)
    return list(
        session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order.id)
            .order_by(OrderStatusHistory.id.asc())
        ).scalars()
    )


def list_orders(
    session: Session,
    actor: User,
    *,
    status: Optional[str] = None,
    seller_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Order], int]:
    require_role(actor, ORDER_CREATORS, resource="orders")
    stmt = select(Order)
    if actor.role == ROLE_SELLER:
        stmt = stmt.where(Order.seller_id == actor.id)
    elif seller_id is not None:
        stmt = stmt.where(Order.seller_id == seller_id)
    if status:
        stmt = stmt.where(Order.status == parse_status(status).value)
    if warehouse_id is not None:
        stmt = stmt.where(Order.warehouse_id == warehouse_id)
    return paginate(session, stmt, page=page, per_page=per_page, order_by=(Order.id.desc(),))


__all__ = [
    "SYSTEM_ROLE",
    "TransitionResult",
    "generate_order_number",
    "transition_order_status",
    "create_order",
    "get_order",
    "get_order_history",
    "list_orders",
]
