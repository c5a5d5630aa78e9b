# backoffice/models/invoice.py
"""
Invoice / InvoicedItem: счета продавцам за период по складу.

Идемпотентность биллинга:
- InvoicedItem: индекс "уже выставлено": уникален по
  (seller_id, warehouse_id, item_type, item_id). Заказ или поставка попадает
  максимум в один счёт одного продавца+склада; нарушение индекса при гонке
  генераторов превращается в ConflictError.
- Состав счёта (order_ids / expedition_ids) после создания не меняется;
  жизненный цикл только GENERATED -> PAID.

Деньги: Numeric(14, 2) + Decimal (ROUND_HALF_UP).
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Session, relationship, validates

from backoffice.models.base import BaseModel, to_money, utc_now

FEE_FIELDS: tuple[str, ...] = (
    "confirmation_fee",
    "service_fee",
    "warehouse_fee",
    "shipping_fee",
    "processing_fee",
    "expedition_fee",
)


def _safe_iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class InvoiceStatus(str, enum.Enum):
    GENERATED = "generated"
    PAID = "paid"


class InvoicedItemType(str, enum.Enum):
    ORDER = "order"
    EXPEDITION = "expedition"


class Invoice(BaseModel):
    __tablename__ = "invoices"

    invoice_number = Column(String(32), nullable=False, unique=True, index=True)
    seller_id = Column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    warehouse_id = Column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    # fees
    confirmation_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    service_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    warehouse_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    shipping_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    processing_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    expedition_fee = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # summary
    total_orders = Column(Integer, nullable=False, default=0)
    total_expeditions = Column(Integer, nullable=False, default=0)
    total_products = Column(Integer, nullable=False, default=0)
    total_quantity = Column(Integer, nullable=False, default=0)
    total_sales = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_fees = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    net_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_tax = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    final_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    unpaid_expeditions = Column(Integer, nullable=False, default=0)
    unpaid_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    currency = Column(String(3), nullable=False)
    notes = Column(Text, nullable=True)
    terms = Column(Text, nullable=True)

    status = Column(String(16), nullable=False, default=InvoiceStatus.GENERATED.value, index=True)
    generated_by = Column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    generated_at = Column(DateTime, nullable=False, default=utc_now)
    due_date = Column(DateTime, nullable=True)
    paid_date = Column(DateTime, nullable=True)
    payment_method = Column(String(64), nullable=True)
    payment_reference = Column(String(128), nullable=True)

    items = relationship(
        "InvoicedItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoicedItem.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("period_start < period_end", name="inv_period_order"),
        CheckConstraint("total_fees >= 0", name="inv_fees_nonneg"),
        CheckConstraint("status IN ('generated','paid')", name="inv_status_allowed"),
        Index("ix_invoices_seller_wh_generated", "seller_id", "warehouse_id", "generated_at"),
    )

    @validates("currency")
    def _norm_currency(self, _k: str, v: Optional[str]) -> str:
        vv = (v or "").strip().upper()
        if len(vv) != 3:
            raise ValueError("currency must be a 3-letter code")
        return vv

    # ---------------- numbering ----------------
    @classmethod
    def generate_number(
        cls,
        session: Session,
        *,
        prefix: str = "INV",
        date: Optional[datetime] = None,
        width: int = 5,
    ) -> str:
        """INV-YYYYMMDD-00001: первый свободный номер за дату."""
        dt = date or utc_now()
        base = f"{(prefix or 'INV').upper()}-{dt.strftime('%Y%m%d')}"
        q = select(cls.invoice_number).where(cls.invoice_number.like(f"{base}-%"))
        existing = {row[0] for row in session.execute(q).all()}
        seq = 1
        while True:
            candidate = f"{base}-{str(seq).zfill(width)}"
            if candidate not in existing:
                return candidate
            seq += 1

    # ---------------- derived ----------------
    @property
    def order_ids(self) -> list[int]:
        return sorted(it.item_id for it in self.items if it.item_type == InvoicedItemType.ORDER.value)

    @property
    def expedition_ids(self) -> list[int]:
        return sorted(it.item_id for it in self.items if it.item_type == InvoicedItemType.EXPEDITION.value)

    def fees_dict(self) -> dict[str, str]:
        return {f: str(to_money(getattr(self, f))) for f in FEE_FIELDS}

    def summary_dict(self) -> dict[str, Any]:
        return {
            "total_orders": int(self.total_orders or 0),
            "total_expeditions": int(self.total_expeditions or 0),
            "total_products": int(self.total_products or 0),
            "total_quantity": int(self.total_quantity or 0),
            "total_sales": str(to_money(self.total_sales)),
            "total_fees": str(to_money(self.total_fees)),
            "net_amount": str(to_money(self.net_amount)),
            "total_tax": str(to_money(self.total_tax)),
            "final_amount": str(to_money(self.final_amount)),
            "unpaid_expeditions": int(self.unpaid_expeditions or 0),
            "unpaid_amount": str(to_money(self.unpaid_amount)),
        }

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "seller_id": self.seller_id,
            "warehouse_id": self.warehouse_id,
            "period_start": _safe_iso(self.period_start),
            "period_end": _safe_iso(self.period_end),
            "order_ids": self.order_ids,
            "expedition_ids": self.expedition_ids,
            "fees": self.fees_dict(),
            "summary": self.summary_dict(),
            "currency": self.currency,
            "notes": self.notes,
            "terms": self.terms,
            "status": self.status,
            "generated_by": self.generated_by,
            "generated_at": _safe_iso(self.generated_at),
            "due_date": _safe_iso(self.due_date),
            "paid_date": _safe_iso(self.paid_date),
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Invoice id={self.id} number={self.invoice_number} status={self.status}>"


class InvoicedItem(BaseModel):
    """Set-membership index: an order/expedition already billed to a seller+warehouse."""

    __tablename__ = "invoiced_items"

    invoice_id = Column(ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    seller_id = Column(Integer, nullable=False)
    warehouse_id = Column(Integer, nullable=False)
    item_type = Column(String(16), nullable=False)
    item_id = Column(Integer, nullable=False)

    invoice = relationship("Invoice", back_populates="items")

    __table_args__ = (
        UniqueConstraint("seller_id", "warehouse_id", "item_type", "item_id", name="uq_invoiced_item"),
        CheckConstraint("item_type IN ('order','expedition')", name="invoiced_item_type_allowed"),
    )


__all__ = [
    "FEE_FIELDS",
    "InvoiceStatus",
    "InvoicedItemType",
    "Invoice",
    "InvoicedItem",
]
