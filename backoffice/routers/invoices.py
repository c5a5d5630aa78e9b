# backoffice/routers/invoices.py
"""
Invoices router: preview, generate, list, details, payment status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.core.db import get_db
from backoffice.core.dependencies import Pagination, get_current_actor, get_pagination
from backoffice.models.user import User
from backoffice.schemas.base import OperationResult, PaginatedResponse
from backoffice.schemas.invoice import InvoiceGenerateRequest, InvoicePreviewRequest, InvoiceStatusUpdate
from backoffice.services.invoice_service import (
    generate_invoice,
    generate_invoice_preview,
    get_invoice,
    list_invoices,
    update_invoice_status,
)

router = APIRouter(prefix="/invoices", tags=["invoices"])


# -------------------------------------------------------------------
# Preview / generate
# -------------------------------------------------------------------
@router.post("/preview", response_model=OperationResult, summary="Предпросмотр счёта")
def preview_invoice_endpoint(
    payload: InvoicePreviewRequest,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    preview = generate_invoice_preview(
        db,
        actor,
        seller_id=payload.seller_id,
        warehouse_id=payload.warehouse_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
    )
    return OperationResult.ok(preview.to_dict())


@router.post(
    "",
    response_model=OperationResult,
    status_code=status.HTTP_201_CREATED,
    summary="Сформировать счёт",
)
def generate_invoice_endpoint(
    payload: InvoiceGenerateRequest,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    invoice_id = generate_invoice(
        db,
        actor,
        seller_id=payload.seller_id,
        warehouse_id=payload.warehouse_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        fees=payload.fees.model_dump(),
        notes=payload.notes,
        terms=payload.terms,
        due_date=payload.due_date,
    )
    return OperationResult.ok({"invoice_id": invoice_id}, message="Invoice generated", code="INVOICE_GENERATED")


# -------------------------------------------------------------------
# Reads
# -------------------------------------------------------------------
@router.get("", response_model=OperationResult, summary="Список счетов")
def list_invoices_endpoint(
    status_filter: Optional[str] = Query(None, alias="status"),
    seller_id: Optional[int] = Query(None),
    warehouse_id: Optional[int] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    pagination: Pagination = Depends(get_pagination),
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    items, total = list_invoices(
        db,
        actor,
        status=status_filter,
        seller_id=seller_id,
        warehouse_id=warehouse_id,
        date_from=date_from,
        date_to=date_to,
        page=pagination.page,
        per_page=pagination.per_page,
    )
    page = PaginatedResponse.create(
        [inv.to_public_dict() for inv in items], total, pagination.page, pagination.per_page
    )
    return OperationResult.ok(page.model_dump())


@router.get("/{invoice_id}", response_model=OperationResult, summary="Счёт по ID")
def get_invoice_endpoint(
    invoice_id: int,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return OperationResult.ok(get_invoice(db, actor, invoice_id))


@router.patch("/{invoice_id}/status", response_model=OperationResult, summary="Отметить оплату счёта")
def update_invoice_status_endpoint(
    invoice_id: int,
    payload: InvoiceStatusUpdate,
    actor: User = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    invoice = update_invoice_status(
        db,
        actor,
        invoice_id,
        payload.status,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
        paid_date=payload.paid_date,
    )
    return OperationResult.ok(invoice.to_public_dict(), message="Invoice updated", code="INVOICE_UPDATED")
