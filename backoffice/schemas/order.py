"""
Order Pydantic schemas.
"""

from decimal import Decimal
from typing import Optional

from pydantic import Field

from backoffice.schemas.base import BaseSchema


class CustomerIn(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    phone_numbers: list[str] = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=1)


class OrderLineIn(BaseSchema):
    product_id: int
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)


class OrderCreate(BaseSchema):
    """Schema for creating an order"""

    seller_id: Optional[int] = Field(None, description="Defaults to the acting seller")
    warehouse_id: int
    customer: CustomerIn
    items: list[OrderLineIn] = Field(..., min_length=1)


class DiscountLineIn(BaseSchema):
    product_id: int
    original_price: Decimal = Field(..., ge=0)
    new_price: Decimal = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=255)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseSchema):
    """Schema for order status update (optionally with per-line discounts)"""

    status: str = Field(..., min_length=1, max_length=32)
    comment: Optional[str] = None
    discounts: Optional[list[DiscountLineIn]] = None
