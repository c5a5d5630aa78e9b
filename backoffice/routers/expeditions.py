# backoffice/routers/expeditions.py
"""
Expeditions router.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.core.db import get_db
from backoffice.core.dependencies import Pagination, get_current_actor, get_pagination
from backoffice.models.user import User
from backoffice.schemas.base import OperationResult, PaginatedResponse
from backoffice.schemas.expedition import ExpeditionCreate, ExpeditionStatusUpdate
from backoffice.services.expedition_service import (
    create_expedition,
    get_expedition,
    list_expeditions,
    update_expedition_status,
)

router = APIRouter(prefix="/expeditions", tags=["expeditions"])


@router.post(
    "",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    summary="Создать поставку",
)
def create_expedition_endpoint(
    payload: ExpeditionCreate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    expedition = create_expedition(
        db,
        actor,
        seller_id=payload.seller_id,
        warehouse_id=payload.warehouse_id,
        expedition_date=payload.expedition_date,
        items=[it.model_dump() for it in payload.items],
    )
    return OperationResult.ok(expedition.to_public_dict(), message="Expedition created", code="EXPEDITION_CREATED")


@router.get("", response_model=OperationResult, summary="Список поставок")
def list_expeditions_endpoint(
    status_filter: Optional[str] = Query(None, alias="status"),
    warehouse_id: Optional[int] = Query(None),
    pagination: Pagination = Depends(get_pagination),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    items, total = list_expeditions(
        db,
        actor,
        status=status_filter,
        warehouse_id=warehouse_id,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    page = PaginatedResponse.create(
        [e.to_public_dict() for e in items], total, pagination.page, pagination.per_page
    )
    return OperationResult.ok(page.model_dump())


@router.get("/{expedition_id}", response_model=OperationResult, summary="Поставка по ID")
def get_expedition_endpoint(
    expedition_id: int,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return OperationResult.ok(get_expedition(db, actor, expedition_id).to_public_dict())


@router.patch("/{expedition_id}/status", response_model=OperationResult, summary="Сменить статус поставки")
def update_expedition_status_endpoint(
    expedition_id: int,
    payload: ExpeditionStatusUpdate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    expedition = update_expedition_status(
        db,
        actor,
        expedition_id,
        status=payload.status,
        is_paid=payload.is_paid,
        rejected_reason=payload.rejected_reason,
    )
    return OperationResult.ok(expedition.to_public_dict(), message="Expedition updated", code="EXPEDITION_UPDATED")
