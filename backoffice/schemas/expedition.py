"""
Expedition schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from backoffice.schemas.base import BaseSchema


class ExpeditionItemIn(BaseSchema):
    product_id: int
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(Decimal("0"), ge=0)


class ExpeditionCreate(BaseSchema):
    seller_id: Optional[int] = None
    warehouse_id: int
    expedition_date: datetime
    items: list[ExpeditionItemIn] = Field(..., min_length=1)


class ExpeditionStatusUpdate(BaseSchema):
    status: Optional[str] = Field(None, max_length=16)
    is_paid: Optional[bool] = None
    rejected_reason: Optional[str] = None
