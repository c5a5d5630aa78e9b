# backoffice/services/expedition_service.py
"""
Expeditions (inbound shipments of a seller's goods to a warehouse).
Delivered expeditions are billable alongside delivered orders.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.core.exceptions import BackofficeValidationError, IllegalTransitionError, NotFoundError
from backoffice.core.logging import audit_logger, get_logger
from backoffice.core.permissions import (
    BILLING_ADMINS,
    EXPEDITION_CREATORS,
    STOCK_WRITERS,
    require_owner_or_admin,
    require_role,
)
from backoffice.models.base import for_update_by_id, locked_transaction, paginate, to_money, utc_now
from backoffice.models.expedition import EXPEDITION_TRANSITIONS, Expedition, ExpeditionItem, ExpeditionStatus
from backoffice.models.outbox import OutboxEvent
from backoffice.models.user import ROLE_SELLER, User
from backoffice.models.warehouse import Product, Warehouse
from backoffice.services.notifications import NotificationDispatcher, relay_after_commit

logger = get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_expedition_code(when: Optional[datetime] = None) -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"EXP-{(when or utc_now()):%Y%m%d}-{suffix}"


def _parse_status(value: Any) -> ExpeditionStatus:
    try:
        return ExpeditionStatus(str(value or "").strip().lower())
    except ValueError as e:
        raise BackofficeValidationError(f"Unknown expedition status: {value!r}", "INVALID_STATUS") from e


def create_expedition(
    session: Session,
    actor: User,
    *,
    warehouse_id: int,
    expedition_date: datetime,
    items: Sequence[Mapping[str, Any]],
    seller_id: Optional[int] = None,
) -> Expedition:
    require_role(actor, EXPEDITION_CREATORS, resource="expedition")
    seller_id = actor.id if seller_id is None and actor.role == ROLE_SELLER else seller_id
    if seller_id is None:
        raise BackofficeValidationError("Seller is required", "MISSING_FIELDS")
    if actor.role == ROLE_SELLER:
        require_owner_or_admin(actor, seller_id, resource="expedition")

    seller = session.get(User, seller_id)
    if seller is None or seller.role != ROLE_SELLER:
        raise NotFoundError("Seller not found", "SELLER_NOT_FOUND", extra={"seller_id": seller_id})
    if session.get(Warehouse, warehouse_id) is None:
        raise NotFoundError("Warehouse not found", "WAREHOUSE_NOT_FOUND", extra={"warehouse_id": warehouse_id})
    if expedition_date is None:
        raise BackofficeValidationError("Expedition date is required", "MISSING_FIELDS")
    if not items:
        raise BackofficeValidationError("Expedition must contain at least one product", "INVALID_ITEMS")

    lines: list[ExpeditionItem] = []
    product_ids: set[int] = set()
    total_quantity = 0
    total_value = Decimal("0.00")
    for raw in items:
        try:
            pid = int(raw["product_id"])
            qty = raw["quantity"]
            price = to_money(raw.get("unit_price", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise BackofficeValidationError(f"Invalid expedition item: {e}", "INVALID_ITEMS") from e
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise BackofficeValidationError("Quantity must be an integer >= 1", "INVALID_ITEMS")
        if price < 0:
            raise BackofficeValidationError("Unit price must be >= 0", "INVALID_ITEMS")
        product = session.get(Product, pid)
        if product is None:
            raise NotFoundError("Product not found", "PRODUCT_NOT_FOUND", extra={"product_id": pid})
        if int(product.seller_id) != int(seller_id):
            raise BackofficeValidationError(
                f"Product {pid} does not belong to the seller", "PRODUCT_NOT_OWNED", extra={"product_id": pid}
            )
        product_ids.add(pid)
        total_quantity += qty
        total_value = to_money(total_value + price * qty)
        lines.append(ExpeditionItem(product_id=pid, quantity=qty, unit_price=price))

    with locked_transaction(session):
        expedition = Expedition(
            expedition_code=generate_expedition_code(),
            seller_id=seller_id,
            warehouse_id=warehouse_id,
            expedition_date=expedition_date,
            status=ExpeditionStatus.PENDING.value,
            total_products=len(product_ids),
            total_quantity=total_quantity,
            total_value=total_value,
            is_paid=False,
        )
        expedition.items.extend(lines)
        session.add(expedition)

    audit_logger.log_data_change(
        actor.id,
        "expedition_created",
        "expedition",
        expedition.id,
        {"expedition_code": expedition.expedition_code, "total_value": str(total_value)},
    )
    return expedition


def update_expedition_status(
    session: Session,
    actor: User,
    expedition_id: int,
    *,
    status: Optional[str] = None,
    is_paid: Optional[bool] = None,
    rejected_reason: Optional[str] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Expedition:
    """Move along EXPEDITION_TRANSITIONS and/or flip is_paid (admin/moderator)."""
    require_role(actor, BILLING_ADMINS, resource=f"expedition:{expedition_id}")
    if status is None and is_paid is None:
        raise BackofficeValidationError("Nothing to update", "MISSING_FIELDS")
    target = _parse_status(status) if status is not None else None

    with locked_transaction(session, [f"expedition:{int(expedition_id)}"]):
        expedition = for_update_by_id(session, Expedition, expedition_id)
        if expedition is None:
            raise NotFoundError("Expedition not found", "EXPEDITION_NOT_FOUND", extra={"expedition_id": expedition_id})

        previous = ExpeditionStatus(expedition.status)
        if target is not None and target != previous:
            allowed = EXPEDITION_TRANSITIONS.get(previous, frozenset())
            if target not in allowed:
                raise IllegalTransitionError(
                    f"Transition '{previous.value}' -> '{target.value}' is not allowed",
                    extra={"from": previous.value, "to": target.value, "allowed": sorted(s.value for s in allowed)},
                )
            now = utc_now()
            expedition.status = target.value
            if target == ExpeditionStatus.APPROVED:
                expedition.approved_by = actor.id
                expedition.approved_at = now
            elif target == ExpeditionStatus.REJECTED:
                expedition.rejected_reason = (rejected_reason or "").strip() or None
            elif target == ExpeditionStatus.DELIVERED:
                expedition.delivered_at = now
            OutboxEvent.notify(
                session,
                user_id=expedition.seller_id,
                type="expedition_status_changed",
                title="Expedition status updated",
                message=f"Expedition {expedition.expedition_code} is now {target.value}.",
                action_link=f"/expeditions/{expedition.id}",
                aggregate_type="expedition",
                aggregate_id=expedition.id,
            )
        if is_paid is not None:
            expedition.is_paid = bool(is_paid)

    audit_logger.log_data_change(
        actor.id,
        "expedition_status_change",
        "expedition",
        expedition.id,
        {"from": previous.value, "to": expedition.status, "is_paid": bool(expedition.is_paid)},
    )
    relay_after_commit(session, dispatcher)
    return expedition


def get_expedition(session: Session, actor: User, expedition_id: int) -> Expedition:
    require_role(actor, STOCK_WRITERS, resource=f"expedition:{expedition_id}")
    expedition = session.get(Expedition, expedition_id)
    if expedition is None:
        raise NotFoundError("Expedition not found", "EXPEDITION_NOT_FOUND", extra={"expedition_id": expedition_id})
    if actor.role == ROLE_SELLER:
        require_owner_or_admin(actor, expedition.seller_id, resource=f"expedition:{expedition_id}")
    return expedition


def list_expeditions(
    session: Session,
    actor: User,
    *,
    status: Optional[str] = None,
    warehouse_id: Optional[int] = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Expedition], int]:
    require_role(actor, STOCK_WRITERS, resource="expeditions")
    stmt = select(Expedition)
    if actor.role == ROLE_SELLER:
        stmt = stmt.where(Expedition.seller_id == actor.id)
    if status:
        stmt = stmt.where(Expedition.status == _parse_status(status).value)
    if warehouse_id is not None:
        stmt = stmt.where(Expedition.warehouse_id == warehouse_id)
    return paginate(
        session, stmt, page=page, per_page=per_page, order_by=(Expedition.expedition_date.desc(), Expedition.id.desc())
    )


__all__ = [
    "generate_expedition_code",
    "create_expedition",
    "update_expedition_status",
    "get_expedition",
    "list_expeditions",
]
