# backoffice/routers/orders.py
"""
Orders router: creation, status transitions (with discounts), reads.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.core.db import get_db
from backoffice.core.dependencies import Pagination, get_current_actor, get_pagination
from backoffice.models.user import ROLE_SELLER, User
from backoffice.schemas.base import OperationResult, PaginatedResponse
from backoffice.schemas.order import OrderCreate, OrderStatusUpdate
from backoffice.services.duplicate_detection import DuplicateDetector, RecentPhoneDuplicateDetector
from backoffice.services.order_service import (
    create_order,
    get_order,
    get_order_history,
    list_orders,
    transition_order_status,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_duplicate_detector() -> DuplicateDetector:
    return RecentPhoneDuplicateDetector()


# -------------------------------------------------------------------
# POST /orders
# -------------------------------------------------------------------
@router.post(
    "",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    summary="Создать заказ",
)
def create_order_endpoint(
    payload: OrderCreate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
    detector: DuplicateDetector = Depends(get_duplicate_detector),
):
    seller_id = payload.seller_id
    if seller_id is None and actor.role == ROLE_SELLER:
        seller_id = actor.id
    order = create_order(
        db,
        actor,
        seller_id=seller_id,
        warehouse_id=payload.warehouse_id,
        customer=payload.customer.model_dump(),
        lines=[ln.model_dump() for ln in payload.items],
        detector=detector,
    )
    return OperationResult.ok(order.to_public_dict(), message="Order created", code="ORDER_CREATED")


# -------------------------------------------------------------------
# GET /orders
# -------------------------------------------------------------------
@router.get("", response_model=OperationResult, summary="Список заказов")
def list_orders_endpoint(
    status_filter: Optional[str] = Query(None, alias="status"),
    seller_id: Optional[int] = Query(None),
    warehouse_id: Optional[int] = Query(None),
    pagination: Pagination = Depends(get_pagination),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    items, total = list_orders(
        db,
        actor,
        status=status_filter,
        seller_id=seller_id,
        warehouse_id=warehouse_id,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    page = PaginatedResponse.create(
        [o.to_public_dict() for o in items], total, pagination.page, pagination.per_page
    )
    return OperationResult.ok(page.model_dump())


# -------------------------------------------------------------------
# GET /orders/{order_id}
# -------------------------------------------------------------------
@router.get("/{order_id}", response_model=OperationResult, summary="Заказ по ID")
def get_order_endpoint(
    order_id: int,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return OperationResult.ok(get_order(db, actor, order_id).to_public_dict())


@router.get("/{order_id}/history", response_model=OperationResult, summary="История статусов заказа")
def get_order_history_endpoint(
    order_id: int,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return OperationResult.ok([h.to_public_dict() for h in get_order_history(db, actor, order_id)])


# -------------------------------------------------------------------
# PATCH /orders/{order_id}/status
# -------------------------------------------------------------------
@router.patch("/{order_id}/status", response_model=OperationResult, summary="Сменить статус заказа")
def transition_order_status_endpoint(
    order_id: int,
    payload: OrderStatusUpdate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    result = transition_order_status(
        db,
        order_id,
        payload.status,
        actor,
        comment=payload.comment,
        discounts=[d.model_dump() for d in payload.discounts or []],
    )
    if not result.changed:
        return OperationResult.ok(result.to_dict(), message="Status unchanged", code="NO_CHANGE")
    return OperationResult.ok(result.to_dict(), message="Order status updated", code="STATUS_UPDATED")
