from decimal import Decimal

import pytest

from backoffice.core.exceptions import BackofficeValidationError, IllegalTransitionError
from backoffice.models.order import OrderStatus
from backoffice.models.warehouse import MovementType, StockMovementReason
from backoffice.services.order_state_machine import (
    TERMINAL,
    TRANSITIONS,
    DiscountLine,
    LineSnapshot,
    allowed_targets,
    apply_discounts,
    can_transition,
    parse_status,
    plan_transition,
)

S = OrderStatus


def test_every_status_has_a_row():
    assert set(TRANSITIONS) == set(OrderStatus)


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL:
        assert TRANSITIONS[status] == frozenset()


def test_double_is_never_a_target():
    for targets in TRANSITIONS.values():
        assert S.DOUBLE not in targets


@pytest.mark.parametrize(
    "current,requested",
    [
        (S.PENDING, S.CONFIRMED),
        (S.CONFIRMED, S.SHIPPED),
        (S.SHIPPED, S.DELIVERED),
        (S.DELIVERED, S.PAID),
        (S.RETURN_IN_PROGRESS, S.RETURNED),
        (S.DOUBLE, S.PENDING),
    ],
)
def test_allowed_pairs(current, requested):
    assert can_transition(current, requested)


@pytest.mark.parametrize(
    "current,requested",
    [
        (S.PENDING, S.DELIVERED),
        (S.SHIPPED, S.CANCELLED),
        (S.CANCELLED, S.PENDING),
        (S.REFUNDED, S.DELIVERED),
    ],
)
def test_forbidden_pairs(current, requested):
    assert not can_transition(current, requested)
    with pytest.raises(IllegalTransitionError) as exc:
        plan_transition(current, requested, stock_held=False)
    assert exc.value.code == "ILLEGAL_TRANSITION"
    assert exc.value.extra["allowed"] == allowed_targets(current)


def test_parse_status_accepts_strings_and_rejects_unknown():
    assert parse_status(" Confirmed ") is S.CONFIRMED
    with pytest.raises(BackofficeValidationError) as exc:
        parse_status("teleported")
    assert exc.value.code == "INVALID_STATUS"


def test_double_is_reserved_for_the_system():
    with pytest.raises(BackofficeValidationError) as exc:
        plan_transition(S.PENDING, S.DOUBLE, stock_held=False)
    assert exc.value.code == "RESERVED_STATUS"


def test_same_status_without_discount_is_noop():
    plan = plan_transition("pending", "pending", stock_held=False)
    assert plan.changed is False
    assert plan.movement is None


def test_same_status_with_discount_is_price_only():
    plan = plan_transition(S.CONFIRMED, S.CONFIRMED, stock_held=True, has_discount=True)
    assert plan.changed is True
    assert plan.price_only is True
    assert plan.movement is None


def test_price_event_rejected_in_terminal_status():
    with pytest.raises(IllegalTransitionError):
        plan_transition(S.CANCELLED, S.CANCELLED, stock_held=False, has_discount=True)


def test_confirm_takes_stock_once():
    plan = plan_transition(S.PENDING, S.CONFIRMED, stock_held=False)
    assert plan.movement.movement_type == MovementType.DECREASE
    assert plan.movement.reason == StockMovementReason.ORDER_CONFIRMED

    # stock already taken by an earlier confirmation
    again = plan_transition(S.PENDING, S.CONFIRMED, stock_held=True)
    assert again.movement is None


def test_release_only_when_held():
    held = plan_transition(S.CONFIRMED, S.CANCELLED, stock_held=True)
    assert held.movement.movement_type == MovementType.INCREASE
    assert held.movement.reason == StockMovementReason.ORDER_CANCELLED

    not_held = plan_transition(S.PENDING, S.CANCELLED, stock_held=False)
    assert not_held.changed is True
    assert not_held.movement is None


@pytest.mark.parametrize(
    "current,requested,reason",
    [
        (S.SHIPPED, S.DELIVERY_FAILED, StockMovementReason.DELIVERY_FAILED),
        (S.DELIVERED, S.REFUNDED, StockMovementReason.RETURN_FROM_CUSTOMER),
        (S.IN_PREPARATION, S.UNREACHED, StockMovementReason.CUSTOMER_UNREACHABLE),
    ],
)
def test_stock_returning_targets(current, requested, reason):
    plan = plan_transition(current, requested, stock_held=True)
    assert plan.movement.movement_type == MovementType.INCREASE
    assert plan.movement.reason == reason


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------
LINES = [
    LineSnapshot(product_id=1, quantity=2, unit_price=Decimal("100.00")),
    LineSnapshot(product_id=2, quantity=1, unit_price=Decimal("50.00")),
]


def test_apply_discounts_computes_prices_and_totals():
    outcome = apply_discounts(
        LINES,
        [DiscountLine(1, Decimal("100.00"), Decimal("80.00"), "loyal customer")],
    )
    [applied] = outcome.applied
    assert applied.discount_amount == Decimal("20.00")
    assert applied.discount_percentage == Decimal("20.00")
    assert outcome.new_unit_prices == {1: Decimal("80.00")}
    assert outcome.discount_increment == Decimal("40.00")
    assert outcome.new_total == Decimal("210.00")
    assert outcome.summary().startswith("Discount applied: product 1: 100.00 -> 80.00")


def test_discount_to_zero_is_allowed():
    outcome = apply_discounts(LINES, [DiscountLine(2, Decimal("50.00"), Decimal("0"), "gift")])
    assert outcome.applied[0].discount_percentage == Decimal("100.00")
    assert outcome.new_total == Decimal("200.00")


@pytest.mark.parametrize(
    "discount",
    [
        DiscountLine(1, Decimal("99.00"), Decimal("80.00"), "stale original"),
        DiscountLine(1, Decimal("100.00"), Decimal("100.00"), "not lower"),
        DiscountLine(1, Decimal("100.00"), Decimal("-1.00"), "negative"),
        DiscountLine(3, Decimal("10.00"), Decimal("5.00"), "not in order"),
        DiscountLine(1, Decimal("100.00"), Decimal("80.00"), "   "),
    ],
)
def test_invalid_discount_rejected(discount):
    with pytest.raises(BackofficeValidationError) as exc:
        apply_discounts(LINES, [discount])
    assert exc.value.code == "INVALID_DISCOUNT"


def test_one_bad_line_rejects_the_whole_payload():
    with pytest.raises(BackofficeValidationError):
        apply_discounts(
            LINES,
            [
                DiscountLine(1, Decimal("100.00"), Decimal("80.00"), "ok"),
                DiscountLine(1, Decimal("100.00"), Decimal("70.00"), "duplicate"),
            ],
        )


def test_empty_discount_payload_rejected():
    with pytest.raises(BackofficeValidationError):
        apply_discounts(LINES, [])
