# backoffice/routers/stock.py
"""
Stock router: manual movements, ledger history, summary, chart, verification, reconcile.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.core.db import get_db
from backoffice.core.dependencies import Pagination, get_current_actor, get_pagination
from backoffice.core.permissions import BILLING_ADMINS, require_role
from backoffice.models.user import User
from backoffice.schemas.base import OperationResult, PaginatedResponse
from backoffice.schemas.stock import StockMovementCreate
from backoffice.services.reconciler import reconcile_pending_stock_effects
from backoffice.services.stock_ledger import (
    get_stock_history,
    get_stock_movement_chart_data,
    get_stock_summary,
    record_stock_movement,
    verify_ledger,
)

router = APIRouter(prefix="/stock", tags=["stock"])


# -------------------------------------------------------------------
# Movements
# -------------------------------------------------------------------
@router.post(
    "/movements",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    summary="Складское движение",
)
def record_movement_endpoint(
    payload: StockMovementCreate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    entry = record_stock_movement(
        db,
        actor,
        product_id=payload.product_id,
        warehouse_id=payload.warehouse_id,
        movement_type=payload.movement_type,
        reason=payload.reason,
        quantity=payload.quantity,
        metadata=payload.metadata,
        notes=payload.notes,
        order_id=payload.order_id,
    )
    return OperationResult.ok(entry.to_public_dict(), message="Stock updated", code="STOCK_UPDATED")


@router.get("/movements", response_model=OperationResult, summary="История движений")
def stock_history_endpoint(
    product_id: Optional[int] = Query(None),
    warehouse_id: Optional[int] = Query(None),
    movement_type: Optional[str] = Query(None),
    reason: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    pagination: Pagination = Depends(get_pagination),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    items, total = get_stock_history(
        db,
        actor,
        product_id=product_id,
        warehouse_id=warehouse_id,
        movement_type=movement_type,
        reason=reason,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    page = PaginatedResponse.create(
        [m.to_public_dict() for m in items], total, pagination.page, pagination.per_page
    )
    return OperationResult.ok(page.model_dump())


# -------------------------------------------------------------------
# Per-product reads
# -------------------------------------------------------------------
@router.get("/products/{product_id}/summary", response_model=OperationResult, summary="Сводка по остаткам")
def stock_summary_endpoint(
    product_id: int,
    warehouse_id: Optional[int] = Query(None),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return OperationResult.ok(get_stock_summary(db, actor, product_id, warehouse_id=warehouse_id))


@router.get("/products/{product_id}/chart", response_model=OperationResult, summary="График движений")
def stock_chart_endpoint(
    product_id: int,
    date_range: str = Query("last_30_days", alias="range"),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    warehouse_id: Optional[int] = Query(None),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    data = get_stock_movement_chart_data(
        db,
        actor,
        product_id,
        date_range=date_range,
        warehouse_id=warehouse_id,
        custom_start=start,
        custom_end=end,
    )
    return OperationResult.ok(data)


@router.get(
    "/products/{product_id}/warehouses/{warehouse_id}/verify",
    response_model=OperationResult,
    summary="Проверка целостности журнала",
)
def verify_ledger_endpoint(
    product_id: int,
    warehouse_id: int,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, BILLING_ADMINS, resource="ledger_verification")
    report = verify_ledger(db, product_id, warehouse_id)
    return OperationResult.ok(
        report.to_dict(),
        message="Ledger consistent" if report.ok else "Ledger inconsistent",
        code="LEDGER_OK" if report.ok else "LEDGER_INCONSISTENT",
    )


# -------------------------------------------------------------------
# Reconcile
# -------------------------------------------------------------------
@router.post("/reconcile", response_model=OperationResult, summary="Повтор отложенных складских эффектов")
def reconcile_endpoint(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, BILLING_ADMINS, resource="stock_reconcile")
    return OperationResult.ok(reconcile_pending_stock_effects(db, limit=limit))
