# backoffice/models/warehouse.py
"""
Warehouse / Product / ProductStock / StockMovement: складской учёт.

- StockMovement: неизменяемый журнал (ledger): одна запись на одно изменение остатка,
  с парой previous_stock -> new_stock.
- ProductStock: проекция "текущий остаток" на (product, warehouse) с optimistic version.
- Product.total_stock: сумма проекций по всем складам.

Журнал и проекция пишутся только через backoffice.services.stock_ledger.

ВНИМАНИЕ по времени: UTC naive (datetime.utcnow), DateTime без timezone=True.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, validates

from backoffice.models.base import BaseModel
from backoffice.models.types import JSONBCompat


# =========================
# Enums
# =========================
class MovementType(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class StockMovementReason(str, Enum):
    # Increases
    INITIAL_STOCK = "initial_stock"
    RESTOCK = "restock"
    RETURN_FROM_CUSTOMER = "return_from_customer"
    WAREHOUSE_TRANSFER_IN = "warehouse_transfer_in"
    MANUAL_ADJUSTMENT_INCREASE = "manual_adjustment_increase"
    INVENTORY_CORRECTION_INCREASE = "inventory_correction_increase"
    DELIVERY_FAILED = "delivery_failed"
    CUSTOMER_UNREACHABLE = "customer_unreachable"
    ORDER_CANCELLED = "order_cancelled"

    # Decreases
    ORDER_CONFIRMED = "order_confirmed"
    DAMAGED_GOODS = "damaged_goods"
    LOST_GOODS = "lost_goods"
    WAREHOUSE_TRANSFER_OUT = "warehouse_transfer_out"
    MANUAL_ADJUSTMENT_DECREASE = "manual_adjustment_decrease"
    INVENTORY_CORRECTION_DECREASE = "inventory_correction_decrease"
    EXPIRED_GOODS = "expired_goods"


INCREASE_REASONS: frozenset[StockMovementReason] = frozenset(
    {
        StockMovementReason.INITIAL_STOCK,
        StockMovementReason.RESTOCK,
        StockMovementReason.RETURN_FROM_CUSTOMER,
        StockMovementReason.WAREHOUSE_TRANSFER_IN,
        StockMovementReason.MANUAL_ADJUSTMENT_INCREASE,
        StockMovementReason.INVENTORY_CORRECTION_INCREASE,
        StockMovementReason.DELIVERY_FAILED,
        StockMovementReason.CUSTOMER_UNREACHABLE,
        StockMovementReason.ORDER_CANCELLED,
    }
)
DECREASE_REASONS: frozenset[StockMovementReason] = frozenset(set(StockMovementReason) - INCREASE_REASONS)


def reason_matches_type(movement_type: MovementType, reason: StockMovementReason) -> bool:
    if movement_type == MovementType.INCREASE:
        return reason in INCREASE_REASONS
    return reason in DECREASE_REASONS


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


# =========================
# Warehouse
# =========================
class Warehouse(BaseModel):
    """Warehouse model"""

    __tablename__ = "warehouses"

    name = Column(String(255), nullable=False)
    country = Column(String(100), nullable=False)
    city = Column(String(100), nullable=True)
    currency = Column(String(3), nullable=False, default="USD", server_default=text("'USD'"))
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    stocks = relationship("ProductStock", back_populates="warehouse")

    __table_args__ = (UniqueConstraint("name", "country", name="uq_warehouse_name_country"),)

    @validates("currency")
    def _norm_currency(self, _key, value: str) -> str:
        v = (value or "").strip().upper()
        if len(v) != 3:
            raise ValueError("currency must be a 3-letter code")
        return v

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "city": self.city,
            "currency": self.currency,
            "is_active": bool(self.is_active),
        }


# =========================
# Product
# =========================
class Product(BaseModel):
    """Seller product; total_stock is the sum of its ProductStock rows."""

    __tablename__ = "products"

    seller_id = Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(64), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=ProductStatus.ACTIVE.value)
    total_stock = Column(Integer, nullable=False, default=0, server_default=text("0"))

    seller = relationship("User")
    stocks = relationship("ProductStock", back_populates="product", order_by="ProductStock.warehouse_id")

    __table_args__ = (
        UniqueConstraint("seller_id", "code", name="uq_product_seller_code"),
        CheckConstraint("total_stock >= 0", name="prod_total_stock_nonneg"),
        CheckConstraint(
            "status IN ('active','inactive','out_of_stock')", name="prod_status_allowed"
        ),
    )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "name": self.name,
            "code": self.code,
            "status": self.status,
            "total_stock": int(self.total_stock or 0),
        }


# =========================
# ProductStock
# =========================
class ProductStock(BaseModel):
    """Product stock in warehouse (projection of the ledger)."""

    __tablename__ = "product_stocks"

    product_id = Column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True)
    stock = Column(Integer, default=0, nullable=False)
    version = Column(Integer, nullable=False, default=0, server_default=text("0"))

    product = relationship("Product", back_populates="stocks")
    warehouse = relationship("Warehouse", back_populates="stocks")

    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_product_warehouse"),
        CheckConstraint("stock >= 0", name="stock_nonneg"),
    )
    __mapper_args__ = {"version_id_col": version}


# =========================
# StockMovement (ledger)
# =========================
class StockMovement(BaseModel):
    """Stock movement ledger entry (append-only)."""

    __tablename__ = "stock_movements"

    product_id = Column(ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True)
    movement_type = Column(String(16), nullable=False, index=True)
    reason = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    user_id = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    order_id = Column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    effect_id = Column(Integer, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    meta = Column("metadata", JSONBCompat, nullable=True)

    product = relationship("Product")
    warehouse = relationship("Warehouse")
    user = relationship("User")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="movement_qty_pos"),
        CheckConstraint("new_stock >= 0", name="movement_newstock_nonneg"),
        CheckConstraint("movement_type IN ('increase','decrease')", name="movement_type_allowed"),
        Index("ix_movements_product_wh_id", "product_id", "warehouse_id", "id"),
        Index("ix_movements_order", "order_id"),
    )

    def __repr__(self):  # pragma: no cover
        return f"<StockMovement(id={self.id}, type='{self.movement_type}', qty={self.quantity})>"

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "movement_type": self.movement_type,
            "reason": self.reason,
            "quantity": int(self.quantity),
            "previous_stock": int(self.previous_stock),
            "new_stock": int(self.new_stock),
            "user_id": self.user_id,
            "order_id": self.order_id,
            "effect_id": self.effect_id,
            "notes": self.notes,
            "metadata": self.meta or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


__all__ = [
    "MovementType",
    "StockMovementReason",
    "INCREASE_REASONS",
    "DECREASE_REASONS",
    "reason_matches_type",
    "ProductStatus",
    "Warehouse",
    "Product",
    "ProductStock",
    "StockMovement",
]
