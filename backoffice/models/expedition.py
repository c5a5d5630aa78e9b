# backoffice/models/expedition.py
"""
Expedition: поставка товаров продавца на склад.

Доставленные (delivered) поставки попадают в счета продавцу; is_paid: информационный
флаг (неоплаченные поставки показываются в сводке счёта).
"""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from backoffice.models.base import BaseModel, to_money


class ExpeditionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


EXPEDITION_TRANSITIONS: dict[ExpeditionStatus, frozenset[ExpeditionStatus]] = {
    ExpeditionStatus.PENDING: frozenset(
        {ExpeditionStatus.APPROVED, ExpeditionStatus.REJECTED, ExpeditionStatus.CANCELLED}
    ),
    ExpeditionStatus.APPROVED: frozenset({ExpeditionStatus.IN_TRANSIT, ExpeditionStatus.CANCELLED}),
    ExpeditionStatus.IN_TRANSIT: frozenset({ExpeditionStatus.DELIVERED, ExpeditionStatus.CANCELLED}),
    ExpeditionStatus.DELIVERED: frozenset(),
    ExpeditionStatus.REJECTED: frozenset(),
    ExpeditionStatus.CANCELLED: frozenset(),
}


class Expedition(BaseModel):
    __tablename__ = "expeditions"

    expedition_code = Column(String(32), nullable=False, unique=True, index=True)
    seller_id = Column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    warehouse_id = Column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True)
    expedition_date = Column(DateTime, nullable=False, index=True)
    status = Column(String(16), nullable=False, default=ExpeditionStatus.PENDING.value, index=True)

    total_products = Column(Integer, nullable=False, default=0)
    total_quantity = Column(Integer, nullable=False, default=0)
    total_value = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    is_paid = Column(Boolean, nullable=False, default=False, server_default=text("false"))

    approved_by = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_reason = Column(Text, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship(
        "ExpeditionItem",
        back_populates="expedition",
        cascade="all, delete-orphan",
        order_by="ExpeditionItem.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("total_value >= 0", name="exp_total_value_nonneg"),
        CheckConstraint(
            "status IN ('pending','approved','rejected','in_transit','delivered','cancelled')",
            name="exp_status_allowed",
        ),
        Index("ix_expeditions_seller_wh_status_date", "seller_id", "warehouse_id", "status", "expedition_date"),
    )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "expedition_code": self.expedition_code,
            "seller_id": self.seller_id,
            "warehouse_id": self.warehouse_id,
            "expedition_date": self.expedition_date.isoformat() if self.expedition_date else None,
            "status": self.status,
            "items": [it.to_public_dict() for it in self.items],
            "total_products": int(self.total_products or 0),
            "total_quantity": int(self.total_quantity or 0),
            "total_value": str(to_money(self.total_value)),
            "is_paid": bool(self.is_paid),
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "rejected_reason": self.rejected_reason,
        }


class ExpeditionItem(BaseModel):
    __tablename__ = "expedition_items"

    expedition_id = Column(ForeignKey("expeditions.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)

    expedition = relationship("Expedition", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="exp_item_qty_pos"),
        CheckConstraint("unit_price >= 0", name="exp_item_price_nonneg"),
    )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": int(self.quantity),
            "unit_price": str(to_money(self.unit_price)),
        }


__all__ = ["ExpeditionStatus", "EXPEDITION_TRANSITIONS", "Expedition", "ExpeditionItem"]
