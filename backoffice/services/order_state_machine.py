# backoffice/services/order_state_machine.py
"""
Order status state machine: чистая логика, без БД и побочных эффектов.

- TRANSITIONS: явная таблица (from -> {to}); всё, чего в ней нет, запрещено.
- MOVEMENT_BY_TARGET: какой складской эффект подразумевает целевой статус.
- plan_transition(): решает, допустим ли переход, является ли он no-op или
  "ценовым" событием, и какое движение (если есть) нужно запросить.
- apply_discounts(): проверяет и считает скидки по позициям (всё или ничего).

Инвариант склада: DECREASE планируется только если заказ сейчас НЕ держит сток,
INCREASE - только если держит (stock_held), так что сток не изымается дважды и не
возвращается, если не изымался.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from backoffice.core.exceptions import BackofficeValidationError, IllegalTransitionError
from backoffice.models.base import to_money
from backoffice.models.order import OrderStatus
from backoffice.models.warehouse import MovementType, StockMovementReason

S = OrderStatus

# ---------------------------------------------------------------------------
# Группы статусов
# ---------------------------------------------------------------------------
PRE_CONFIRM_ACTIVE: frozenset[OrderStatus] = frozenset(
    {S.PENDING, S.BUSY, S.UNREACHABLE, S.NO_ANSWER, S.ASKING_FOR_DISCOUNT, S.NOT_READY}
)

# Закрытые исходы обзвона: заказ можно только вернуть в работу или отменить.
CALL_OUTCOME_CLOSED: frozenset[OrderStatus] = frozenset(
    {S.UNREACHED, S.WRONG_NUMBER, S.MISTAKEN_ORDER, S.OUT_OF_DELIVERY_ZONE, S.EXPIRED, S.ALREADY_RECEIVED}
)

FULFILMENT_CHAIN: tuple[OrderStatus, ...] = (
    S.CONFIRMED,
    S.IN_PREPARATION,
    S.AWAITING_DISPATCH,
    S.SHIPPED,
    S.ASSIGNED_TO_DELIVERY,
    S.ACCEPTED_BY_DELIVERY,
    S.IN_TRANSIT,
    S.OUT_FOR_DELIVERY,
)
_SHIPPED_IDX = FULFILMENT_CHAIN.index(S.SHIPPED)
_HANDED_TO_COURIER_IDX = FULFILMENT_CHAIN.index(S.ASSIGNED_TO_DELIVERY)

TERMINAL: frozenset[OrderStatus] = frozenset({S.RETURNED, S.REFUNDED, S.CANCELLED})

# Зарезервирован за системой (детектор дублей при создании).
SYSTEM_ONLY: frozenset[OrderStatus] = frozenset({S.DOUBLE})


def _build_transitions() -> dict[OrderStatus, frozenset[OrderStatus]]:
    table: dict[OrderStatus, set[OrderStatus]] = {s: set() for s in OrderStatus}

    for s in PRE_CONFIRM_ACTIVE:
        table[s] |= (PRE_CONFIRM_ACTIVE - {s}) | CALL_OUTCOME_CLOSED | {S.CONFIRMED, S.CANCELLED}

    for s in CALL_OUTCOME_CLOSED:
        table[s] |= {S.PENDING, S.CANCELLED}

    table[S.DOUBLE] |= {S.PENDING, S.CONFIRMED, S.CANCELLED}

    for idx, s in enumerate(FULFILMENT_CHAIN):
        table[s] |= set(FULFILMENT_CHAIN[idx + 1 :])
        table[s].add(S.UNREACHED)
        if idx < _SHIPPED_IDX:
            table[s].add(S.CANCELLED)
        if idx >= _SHIPPED_IDX:
            table[s] |= {S.DELIVERED, S.DELIVERY_FAILED}
        if idx >= _HANDED_TO_COURIER_IDX:
            table[s].add(S.CANCELLED_AT_DELIVERY)

    table[S.DELIVERED] |= {
        S.PAID,
        S.PROCESSED,
        S.RETURN_IN_PROGRESS,
        S.REFUND_IN_PROGRESS,
        S.REFUNDED,
        S.DELIVERY_FAILED,
    }
    table[S.PAID] |= {S.PROCESSED, S.REFUND_IN_PROGRESS, S.REFUNDED, S.RETURN_IN_PROGRESS}
    table[S.PROCESSED] |= {S.REFUND_IN_PROGRESS, S.REFUNDED, S.RETURN_IN_PROGRESS}
    table[S.RETURN_IN_PROGRESS] |= {S.RETURNED, S.REFUNDED}
    table[S.REFUND_IN_PROGRESS] |= {S.REFUNDED}
    table[S.DELIVERY_FAILED] |= {S.RETURN_IN_PROGRESS, S.RETURNED}
    table[S.CANCELLED_AT_DELIVERY] |= {S.DELIVERY_FAILED, S.RETURN_IN_PROGRESS, S.RETURNED}

    for s in TERMINAL:
        table[s].clear()
    for targets in table.values():
        targets -= SYSTEM_ONLY
    return {k: frozenset(v) for k, v in table.items()}


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = _build_transitions()


@dataclass(frozen=True)
class MovementSpec:
    movement_type: MovementType
    reason: StockMovementReason


MOVEMENT_BY_TARGET: dict[OrderStatus, MovementSpec] = {
    S.CONFIRMED: MovementSpec(MovementType.DECREASE, StockMovementReason.ORDER_CONFIRMED),
    S.DELIVERY_FAILED: MovementSpec(MovementType.INCREASE, StockMovementReason.DELIVERY_FAILED),
    S.REFUNDED: MovementSpec(MovementType.INCREASE, StockMovementReason.RETURN_FROM_CUSTOMER),
    S.UNREACHED: MovementSpec(MovementType.INCREASE, StockMovementReason.CUSTOMER_UNREACHABLE),
    S.CANCELLED: MovementSpec(MovementType.INCREASE, StockMovementReason.ORDER_CANCELLED),
}


# ---------------------------------------------------------------------------
# Парсинг / проверки
# ---------------------------------------------------------------------------
def parse_status(value: Any) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value or "").strip().lower())
    except ValueError as e:
        raise BackofficeValidationError(f"Unknown order status: {value!r}", "INVALID_STATUS") from e


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def allowed_targets(current: OrderStatus) -> list[str]:
    return sorted(s.value for s in TRANSITIONS.get(current, frozenset()))


@dataclass(frozen=True)
class TransitionPlan:
    current: OrderStatus
    requested: OrderStatus
    changed: bool
    price_only: bool
    movement: Optional[MovementSpec]


def plan_transition(
    current: OrderStatus | str,
    requested: OrderStatus | str,
    *,
    stock_held: bool,
    has_discount: bool = False,
) -> TransitionPlan:
    """
    Decide what a status change request means:
      - same status, no discount  -> no-op (changed=False);
      - same status with discount -> price-only event (no movement);
      - otherwise the pair must be in TRANSITIONS (else IllegalTransitionError).
    """
    cur = parse_status(current)
    req = parse_status(requested)

    if req in SYSTEM_ONLY:
        raise BackofficeValidationError(
            f"Status '{req.value}' is reserved for the system", "RESERVED_STATUS"
        )

    if cur == req:
        if not has_discount:
            return TransitionPlan(cur, req, changed=False, price_only=False, movement=None)
        if cur in TERMINAL:
            raise IllegalTransitionError(
                f"Cannot adjust prices of an order in terminal status '{cur.value}'",
                extra={"from": cur.value, "to": req.value},
            )
        return TransitionPlan(cur, req, changed=True, price_only=True, movement=None)

    if not can_transition(cur, req):
        raise IllegalTransitionError(
            f"Transition '{cur.value}' -> '{req.value}' is not allowed",
            extra={"from": cur.value, "to": req.value, "allowed": allowed_targets(cur)},
        )

    movement = MOVEMENT_BY_TARGET.get(req)
    if movement is not None:
        if movement.movement_type == MovementType.DECREASE and stock_held:
            movement = None
        elif movement.movement_type == MovementType.INCREASE and not stock_held:
            movement = None
    return TransitionPlan(cur, req, changed=True, price_only=False, movement=movement)


# ---------------------------------------------------------------------------
# Скидки
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LineSnapshot:
    product_id: int
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class DiscountLine:
    product_id: int
    original_price: Decimal
    new_price: Decimal
    reason: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class AppliedDiscount:
    product_id: int
    quantity: int
    original_price: Decimal
    adjusted_price: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    reason: str
    notes: Optional[str]

    @property
    def line_discount_total(self) -> Decimal:
        return to_money(self.discount_amount * self.quantity)


@dataclass
class DiscountOutcome:
    applied: list[AppliedDiscount] = field(default_factory=list)
    new_unit_prices: dict[int, Decimal] = field(default_factory=dict)
    discount_increment: Decimal = Decimal("0.00")
    new_total: Decimal = Decimal("0.00")

    def summary(self) -> str:
        parts = [
            f"product {a.product_id}: {a.original_price} -> {a.adjusted_price} "
            f"(-{a.discount_amount} x{a.quantity}, {a.reason})"
            for a in self.applied
        ]
        return "Discount applied: " + "; ".join(parts) + f". Total discount: {self.discount_increment}"


def apply_discounts(lines: Sequence[LineSnapshot], discounts: Iterable[DiscountLine]) -> DiscountOutcome:
    """
    Validate every discount line first, then compute the new prices.
    Any invalid line rejects the whole payload (nothing is partially applied).
    """
    by_product = {int(ln.product_id): ln for ln in lines}
    requested = list(discounts)
    if not requested:
        raise BackofficeValidationError("Discount payload is empty", "INVALID_DISCOUNT")

    seen: set[int] = set()
    for d in requested:
        pid = int(d.product_id)
        line = by_product.get(pid)
        if line is None:
            raise BackofficeValidationError(
                f"Product {pid} is not part of this order", "INVALID_DISCOUNT", extra={"product_id": pid}
            )
        if pid in seen:
            raise BackofficeValidationError(
                f"Duplicate discount for product {pid}", "INVALID_DISCOUNT", extra={"product_id": pid}
            )
        seen.add(pid)
        original = to_money(d.original_price)
        new = to_money(d.new_price)
        if original != to_money(line.unit_price):
            raise BackofficeValidationError(
                f"Original price {original} does not match current unit price {to_money(line.unit_price)}",
                "INVALID_DISCOUNT",
                extra={"product_id": pid},
            )
        if new < 0 or new >= original:
            raise BackofficeValidationError(
                "New price must be >= 0 and lower than the original price",
                "INVALID_DISCOUNT",
                extra={"product_id": pid},
            )
        if not (d.reason or "").strip():
            raise BackofficeValidationError(
                "Discount reason is required", "INVALID_DISCOUNT", extra={"product_id": pid}
            )

    out = DiscountOutcome()
    for d in requested:
        pid = int(d.product_id)
        line = by_product[pid]
        original = to_money(d.original_price)
        new = to_money(d.new_price)
        amount = to_money(original - new)
        pct = to_money(amount * 100 / original) if original > 0 else Decimal("0.00")
        applied = AppliedDiscount(
            product_id=pid,
            quantity=int(line.quantity),
            original_price=original,
            adjusted_price=new,
            discount_amount=amount,
            discount_percentage=pct,
            reason=d.reason.strip(),
            notes=d.notes,
        )
        out.applied.append(applied)
        out.new_unit_prices[pid] = new
        out.discount_increment = to_money(out.discount_increment + applied.line_discount_total)

    total = Decimal("0.00")
    for ln in lines:
        price = out.new_unit_prices.get(int(ln.product_id), to_money(ln.unit_price))
        total += price * int(ln.quantity)
    out.new_total = to_money(total)
    return out


__all__ = [
    "TRANSITIONS",
    "MOVEMENT_BY_TARGET",
    "TERMINAL",
    "FULFILMENT_CHAIN",
    "MovementSpec",
    "TransitionPlan",
    "LineSnapshot",
    "DiscountLine",
    "AppliedDiscount",
    "DiscountOutcome",
    "parse_status",
    "can_transition",
    "allowed_targets",
    "plan_transition",
    "apply_discounts",
]
