"""
Invoice schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from backoffice.schemas.base import BaseSchema


class InvoiceFees(BaseSchema):
    confirmation_fee: Decimal = Field(Decimal("0"), ge=0)
    service_fee: Decimal = Field(Decimal("0"), ge=0)
    warehouse_fee: Decimal = Field(Decimal("0"), ge=0)
    shipping_fee: Decimal = Field(Decimal("0"), ge=0)
    processing_fee: Decimal = Field(Decimal("0"), ge=0)
    expedition_fee: Decimal = Field(Decimal("0"), ge=0)


class InvoicePreviewRequest(BaseSchema):
    seller_id: int
    warehouse_id: int
    period_start: datetime
    period_end: datetime


class InvoiceGenerateRequest(InvoicePreviewRequest):
    fees: InvoiceFees = Field(default_factory=InvoiceFees)
    notes: Optional[str] = None
    terms: Optional[str] = None
    due_date: Optional[datetime] = None


class InvoiceStatusUpdate(BaseSchema):
    status: str = Field(..., min_length=1, max_length=16)
    payment_method: Optional[str] = Field(None, max_length=64)
    payment_reference: Optional[str] = Field(None, max_length=128)
    paid_date: Optional[datetime] = None
