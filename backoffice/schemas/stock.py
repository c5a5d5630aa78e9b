"""
Stock movement schemas.
"""

from typing import Any, Optional

from pydantic import Field

from backoffice.models.warehouse import MovementType, StockMovementReason
from backoffice.schemas.base import BaseSchema


class StockMovementCreate(BaseSchema):
    product_id: int
    warehouse_id: int
    movement_type: MovementType
    reason: StockMovementReason
    quantity: int = Field(..., ge=1)
    notes: Optional[str] = Field(None, max_length=500)
    metadata: Optional[dict[str, Any]] = None
    order_id: Optional[int] = None
