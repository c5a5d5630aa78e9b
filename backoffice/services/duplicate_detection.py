# backoffice/services/duplicate_detection.py
"""
Duplicate order detection, consulted only when an order is created.

The detector is a collaborator behind a small protocol so deployments can plug their
own rule engine. Two implementations ship here:

- NullDuplicateDetector: never reports a duplicate;
- RecentPhoneDuplicateDetector: same seller, same customer phone, within a time window
  (rule ``same_phone_same_product`` when a product overlaps, else ``same_phone``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.models.base import utc_now
from backoffice.models.order import Order, OrderStatus

_DIGITS = re.compile(r"\D+")


def normalize_phone(phone: Any) -> str:
    return _DIGITS.sub("", str(phone or ""))


@dataclass(frozen=True)
class DuplicateMatch:
    order_id: int
    order_number: str
    matched_rule: str

    def to_dict(self) -> dict[str, Any]:
        return {"order_id": self.order_id, "order_number": self.order_number, "matched_rule": self.matched_rule}


@dataclass
class DuplicateCheck:
    is_duplicate: bool = False
    duplicate_orders: list[DuplicateMatch] = field(default_factory=list)


class DuplicateDetector(Protocol):
    def detect(
        self,
        session: Session,
        *,
        customer: dict[str, Any],
        products: Sequence[dict[str, Any]],
        total_price: Decimal,
        warehouse_id: int,
        seller_id: int,
    ) -> DuplicateCheck: ...


class NullDuplicateDetector:
    def detect(self, session: Session, **kwargs: Any) -> DuplicateCheck:
        return DuplicateCheck()


class RecentPhoneDuplicateDetector:
    """Flags an order whose customer phone matches a recent live order of the same seller."""

    IGNORED_STATUSES = frozenset(
        {OrderStatus.CANCELLED.value, OrderStatus.DOUBLE.value, OrderStatus.MISTAKEN_ORDER.value}
    )

    def __init__(self, window_hours: int = 24, max_candidates: int = 500) -> None:
        self.window = timedelta(hours=window_hours)
        self.max_candidates = max_candidates

    def detect(
        self,
        session: Session,
        *,
        customer: dict[str, Any],
        products: Sequence[dict[str, Any]],
        total_price: Optional[Decimal] = None,
        warehouse_id: Optional[int] = None,
        seller_id: int,
    ) -> DuplicateCheck:
        phones = {normalize_phone(p) for p in customer.get("phone_numbers") or []} - {""}
        if not phones:
            return DuplicateCheck()
        product_ids = {int(p["product_id"]) for p in products}

        candidates = session.execute(
            select(Order)
            .where(
                Order.seller_id == seller_id,
                Order.created_at >= utc_now() - self.window,
                Order.status.not_in(self.IGNORED_STATUSES),
            )
            .order_by(Order.id.desc())
            .limit(self.max_candidates)
        ).scalars()

        matches: list[DuplicateMatch] = []
        for order in candidates:
            their_phones = {normalize_phone(p) for p in order.customer_phones or []}
            if not phones & their_phones:
                continue
            overlap = product_ids & {int(it.product_id) for it in order.items}
            rule = "same_phone_same_product" if overlap else "same_phone"
            matches.append(DuplicateMatch(order.id, order.order_number, rule))
        return DuplicateCheck(is_duplicate=bool(matches), duplicate_orders=matches)


__all__ = [
    "normalize_phone",
    "DuplicateMatch",
    "DuplicateCheck",
    "DuplicateDetector",
    "NullDuplicateDetector",
    "RecentPhoneDuplicateDetector",
]
