# backoffice/models/order.py
"""
Order / OrderItem / PriceAdjustment / OrderStatusHistory: заказы.

- Статусы: 31 значение OrderStatus; допустимые переходы описаны в
  backoffice.services.order_state_machine (таблица переходов, без побочных эффектов).
- OrderItem хранит текущую unit_price (уже со скидками) и original_unit_price.
- PriceAdjustment: запись о каждой скидке по позиции (исходная цена восстанавливаема).
- OrderStatusHistory: append-only журнал переходов (в т.ч. "ценовых" событий,
  где previous_status == current_status).
- stock_held: сейчас ли количества заказа изъяты со склада.
- version: optimistic locking (StaleDataError -> ConflictError).

ВНИМАНИЕ по времени: UTC naive (datetime.utcnow), DateTime без timezone=True.
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

from backoffice.models.base import BaseModel, to_money, utc_now
from backoffice.models.types import JSONBCompat


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    BUSY = "busy"
    UNREACHABLE = "unreachable"
    UNREACHED = "unreached"
    NO_ANSWER = "no_answer"
    ASKING_FOR_DISCOUNT = "asking_for_discount"
    NOT_READY = "not_ready"
    MISTAKEN_ORDER = "mistaken_order"
    OUT_OF_DELIVERY_ZONE = "out_of_delivery_zone"
    WRONG_NUMBER = "wrong_number"
    DOUBLE = "double"
    EXPIRED = "expired"
    IN_PREPARATION = "in_preparation"
    AWAITING_DISPATCH = "awaiting_dispatch"
    SHIPPED = "shipped"
    ASSIGNED_TO_DELIVERY = "assigned_to_delivery"
    ACCEPTED_BY_DELIVERY = "accepted_by_delivery"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    CANCELLED_AT_DELIVERY = "cancelled_at_delivery"
    RETURN_IN_PROGRESS = "return_in_progress"
    RETURNED = "returned"
    PROCESSED = "processed"
    REFUND_IN_PROGRESS = "refund_in_progress"
    REFUNDED = "refunded"
    PAID = "paid"
    ALREADY_RECEIVED = "already_received"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------
class Order(BaseModel):
    __tablename__ = "orders"

    order_number = Column(String(32), nullable=False, unique=True, index=True)

    seller_id = Column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    warehouse_id = Column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_phones = Column(JSONBCompat, nullable=False, default=list)
    shipping_address = Column(Text, nullable=False)

    # Status
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    status_comment = Column(Text, nullable=True)
    status_changed_by = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status_changed_at = Column(DateTime, nullable=False, default=utc_now)

    # Money
    total_price = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    final_total_price = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_discount_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Stock
    stock_held = Column(Boolean, nullable=False, default=False, server_default=text("false"))

    # Duplicate detection
    is_double = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    duplicate_matches = Column(JSONBCompat, nullable=True)

    version = Column(Integer, nullable=False, default=0, server_default=text("0"))

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy="selectin",
    )
    price_adjustments = relationship(
        "PriceAdjustment",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PriceAdjustment.id",
        lazy="selectin",
    )
    history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )
    seller = relationship("User", foreign_keys=[seller_id])
    warehouse = relationship("Warehouse")

    __table_args__ = (
        CheckConstraint("total_price >= 0", name="order_total_nonneg"),
        CheckConstraint("final_total_price >= 0", name="order_final_total_nonneg"),
        CheckConstraint("total_discount_amount >= 0", name="order_discount_nonneg"),
        Index("ix_orders_seller_wh_status_created", "seller_id", "warehouse_id", "status", "created_at"),
    )
    __mapper_args__ = {"version_id_col": version}

    # ---------------- helpers ----------------
    def status_enum(self) -> OrderStatus:
        return OrderStatus(self.status)

    def compute_total(self) -> Decimal:
        """Σ unit_price*quantity over current lines."""
        total = Decimal("0.00")
        for it in self.items:
            total += to_money(it.unit_price) * int(it.quantity)
        return to_money(total)

    def line_for_product(self, product_id: int) -> "OrderItem | None":
        for it in self.items:
            if int(it.product_id) == int(product_id):
                return it
        return None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "seller_id": self.seller_id,
            "warehouse_id": self.warehouse_id,
            "customer": {
                "name": self.customer_name,
                "phone_numbers": list(self.customer_phones or []),
                "shipping_address": self.shipping_address,
            },
            "status": self.status,
            "status_comment": self.status_comment,
            "status_changed_by": self.status_changed_by,
            "status_changed_at": self.status_changed_at.isoformat() if self.status_changed_at else None,
            "items": [it.to_public_dict() for it in self.items],
            "total_price": str(to_money(self.total_price)),
            "final_total_price": str(to_money(self.final_total_price)),
            "total_discount_amount": str(to_money(self.total_discount_amount)),
            "price_adjustments": [pa.to_public_dict() for pa in self.price_adjustments],
            "stock_held": bool(self.stock_held),
            "is_double": bool(self.is_double),
            "duplicate_matches": self.duplicate_matches or [],
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Order id={self.id} number={self.order_number} status={self.status}>"


# ---------------------------------------------------------------------------
# OrderItem
# ---------------------------------------------------------------------------
class OrderItem(BaseModel):
    __tablename__ = "order_items"

    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    original_unit_price = Column(Numeric(14, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_item_qty_pos"),
        CheckConstraint("unit_price >= 0", name="order_item_price_nonneg"),
        CheckConstraint("original_unit_price >= 0", name="order_item_orig_price_nonneg"),
    )

    @property
    def line_total(self) -> Decimal:
        return to_money(to_money(self.unit_price) * int(self.quantity))

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": int(self.quantity),
            "unit_price": str(to_money(self.unit_price)),
            "original_unit_price": str(to_money(self.original_unit_price)),
        }


# ---------------------------------------------------------------------------
# PriceAdjustment
# ---------------------------------------------------------------------------
class PriceAdjustment(BaseModel):
    __tablename__ = "price_adjustments"

    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    original_price = Column(Numeric(14, 2), nullable=False)
    adjusted_price = Column(Numeric(14, 2), nullable=False)
    discount_amount = Column(Numeric(14, 2), nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)
    reason = Column(String(255), nullable=False)
    notes = Column(Text, nullable=True)
    applied_by = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    applied_at = Column(DateTime, nullable=False, default=utc_now)

    order = relationship("Order", back_populates="price_adjustments")

    __table_args__ = (
        CheckConstraint("adjusted_price >= 0", name="adj_price_nonneg"),
        CheckConstraint("adjusted_price < original_price", name="adj_price_lt_original"),
    )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "original_price": str(to_money(self.original_price)),
            "adjusted_price": str(to_money(self.adjusted_price)),
            "discount_amount": str(to_money(self.discount_amount)),
            "discount_percentage": str(to_money(self.discount_percentage)),
            "reason": self.reason,
            "notes": self.notes,
            "applied_by": self.applied_by,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


# ---------------------------------------------------------------------------
# OrderStatusHistory
# ---------------------------------------------------------------------------
class OrderStatusHistory(BaseModel):
    __tablename__ = "order_status_history"

    order_id = Column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_status = Column(String(32), nullable=False)
    current_status = Column(String(32), nullable=False)
    changed_by = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_by_role = Column(String(32), nullable=False)
    change_date = Column(DateTime, nullable=False, default=utc_now)
    comment = Column(Text, nullable=True)
    automatic_change = Column(Boolean, nullable=False, default=False)
    change_reason = Column(String(255), nullable=True)
    time_consumed_in_previous_status = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="history")

    __table_args__ = (
        CheckConstraint("time_consumed_in_previous_status >= 0", name="hist_time_nonneg"),
        Index("ix_order_history_order_id", "order_id", "id"),
    )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "previous_status": self.previous_status,
            "current_status": self.current_status,
            "changed_by": self.changed_by,
            "changed_by_role": self.changed_by_role,
            "change_date": self.change_date.isoformat() if self.change_date else None,
            "comment": self.comment,
            "automatic_change": bool(self.automatic_change),
            "change_reason": self.change_reason,
            "time_consumed_in_previous_status": int(self.time_consumed_in_previous_status or 0),
        }


__all__ = ["OrderStatus", "Order", "OrderItem", "PriceAdjustment", "OrderStatusHistory"]
