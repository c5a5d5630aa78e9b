# backoffice/services/invoice_service.py
"""
Invoice generation (preview + persist) with idempotent billing.

- Preview: delivered orders (created_at in period) and delivered expeditions
  (expedition_date in period) of one seller+warehouse, minus everything already in the
  InvoicedItem index for that seller+warehouse. Output ordering is deterministic.
- Generate: same preview re-run inside one transaction under the (seller, warehouse) lock,
  then Invoice + InvoicedItem rows written atomically. A unique-index violation from a
  concurrent generator surfaces as ConflictError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.exceptions import BackofficeValidationError, IllegalTransitionError, NotFoundError
from backoffice.core.locks import invoice_key
from backoffice.core.logging import audit_logger, get_logger
from backoffice.core.permissions import BILLING_ADMINS, require_owner_or_admin, require_role
from backoffice.models.base import for_update_by_id, locked_transaction, paginate, to_money, utc_now
from backoffice.models.expedition import Expedition, ExpeditionStatus
from backoffice.models.invoice import FEE_FIELDS, Invoice, InvoicedItem, InvoicedItemType, InvoiceStatus
from backoffice.models.order import Order, OrderItem, OrderStatus
from backoffice.models.outbox import OutboxEvent
from backoffice.models.user import ROLE_ADMIN, ROLE_MODERATOR, ROLE_SELLER, User
from backoffice.models.warehouse import Product, Warehouse
from backoffice.services.notifications import NotificationDispatcher, relay_after_commit

logger = get_logger(__name__)

INVOICE_READERS = frozenset({ROLE_ADMIN, ROLE_MODERATOR, ROLE_SELLER})


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------
def _as_datetime(value: Any, *, end_of_day: bool = False) -> datetime:
    if value is None:
        raise BackofficeValidationError("Period start and end are required", "INVALID_PERIOD")
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise BackofficeValidationError(f"Invalid date: {value!r}", "INVALID_PERIOD") from e
    if len(text) <= 10:
        # "YYYY-MM-DD": целый день, как и для date
        return datetime.combine(parsed.date(), time.max if end_of_day else time.min)
    return parsed



def _validate_period(period_start: Any, period_end: Any) -> tuple[datetime, datetime]:
    start = _as_datetime(period_start)
    end = _as_datetime(period_end, end_of_day=True)
    if start >= end:
        raise BackofficeValidationError("Start date must be before end date", "INVALID_PERIOD")
    return start, end


def _validate_fees(fees: Optional[Mapping[str, Any]]) -> dict[str, Decimal]:
    fees = dict(fees or {})
    unknown = sorted(set(fees) - set(FEE_FIELDS))
    if unknown:
        raise BackofficeValidationError(f"Unknown fee fields: {', '.join(unknown)}", "INVALID_FEES")
    out: dict[str, Decimal] = {}
    for name in FEE_FIELDS:
        try:
            value = to_money(fees.get(name, 0))
        except ValueError as e:
            raise BackofficeValidationError(f"Invalid {name}", "INVALID_FEES") from e
        if value < 0:
            raise BackofficeValidationError(f"{name} must be >= 0", "INVALID_FEES", extra={"field": name})
        out[name] = value
    return out


def _load_parties(session: Session, seller_id: int, warehouse_id: int) -> tuple[User, Warehouse]:
    if seller_id is None or warehouse_id is None:
        raise BackofficeValidationError("Seller and warehouse are required", "MISSING_FIELDS")
    seller = session.get(User, seller_id)
    if seller is None or seller.role != ROLE_SELLER:
        raise NotFoundError("Seller not found", "SELLER_NOT_FOUND", extra={"seller_id": seller_id})
    warehouse = session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFoundError("Warehouse not found", "WAREHOUSE_NOT_FOUND", extra={"warehouse_id": warehouse_id})
    return seller, warehouse


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------
@dataclass
class InvoicePreview:
    seller: dict[str, Any]
    warehouse: dict[str, Any]
    currency: str
    period_start: datetime
    period_end: datetime
    order_ids: list[int] = field(default_factory=list)
    expedition_ids: list[int] = field(default_factory=list)
    total_products: int = 0
    total_quantity: int = 0
    total_sales: Decimal = Decimal("0.00")
    products: list[dict[str, Any]] = field(default_factory=list)
    expeditions: list[dict[str, Any]] = field(default_factory=list)
    unpaid_expeditions: int = 0
    unpaid_amount: Decimal = Decimal("0.00")

    @property
    def total_orders(self) -> int:
        return len(self.order_ids)

    @property
    def total_expeditions(self) -> int:
        return len(self.expedition_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "seller": self.seller,
            "warehouse": self.warehouse,
            "currency": self.currency,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_orders": self.total_orders,
            "total_expeditions": self.total_expeditions,
            "total_products": self.total_products,
            "total_quantity": self.total_quantity,
            "total_sales": str(self.total_sales),
            "products": [dict(p, sales=str(p["sales"])) for p in self.products],
            "expeditions": [dict(e, total_value=str(e["total_value"])) for e in self.expeditions],
            "unpaid_expeditions": self.unpaid_expeditions,
            "unpaid_amount": str(self.unpaid_amount),
            "order_ids": list(self.order_ids),
            "expedition_ids": list(self.expedition_ids),
        }


def _already_invoiced(seller_id: int, warehouse_id: int, item_type: InvoicedItemType):
    return select(InvoicedItem.item_id).where(
        InvoicedItem.seller_id == seller_id,
        InvoicedItem.warehouse_id == warehouse_id,
        InvoicedItem.item_type == item_type.value,
    )


def _build_preview(
    session: Session, seller: User, warehouse: Warehouse, start: datetime, end: datetime
) -> InvoicePreview:
    orders = list(
        session.execute(
            select(Order)
            .where(
                Order.seller_id == seller.id,
                Order.warehouse_id == warehouse.id,
                Order.status == OrderStatus.DELIVERED.value,
                Order.created_at >= start,
                Order.created_at <= end,
                Order.id.not_in(_already_invoiced(seller.id, warehouse.id, InvoicedItemType.ORDER)),
            )
            .order_by(Order.id.asc())
        ).scalars()
    )
    expeditions = list(
        session.execute(
            select(Expedition)
            .where(
                Expedition.seller_id == seller.id,
                Expedition.warehouse_id == warehouse.id,
                Expedition.status == ExpeditionStatus.DELIVERED.value,
                Expedition.expedition_date >= start,
                Expedition.expedition_date <= end,
                Expedition.id.not_in(_already_invoiced(seller.id, warehouse.id, InvoicedItemType.EXPEDITION)),
            )
            .order_by(Expedition.id.asc())
        ).scalars()
    )

    preview = InvoicePreview(
        seller={"id": seller.id, "name": seller.name, "email": seller.email, "business_name": seller.business_name},
        warehouse={
            "id": warehouse.id,
            "name": warehouse.name,
            "country": warehouse.country,
            "city": warehouse.city,
            "currency": warehouse.currency,
        },
        currency=warehouse.currency or settings.DEFAULT_CURRENCY,
        period_start=start,
        period_end=end,
        order_ids=[o.id for o in orders],
        expedition_ids=[e.id for e in expeditions],
    )

    per_product: dict[int, dict[str, Any]] = {}
    if orders:
        rows = session.execute(
            select(OrderItem.product_id, OrderItem.quantity, OrderItem.unit_price, Product.name, Product.code)
            .join(Product, Product.id == OrderItem.product_id)
            .where(OrderItem.order_id.in_(preview.order_ids))
            .order_by(OrderItem.id.asc())
        ).all()
        for product_id, qty, unit_price, name, code in rows:
            line_sales = to_money(to_money(unit_price) * int(qty))
            bucket = per_product.setdefault(
                int(product_id),
                {"product_id": int(product_id), "name": name, "code": code, "quantity": 0, "sales": Decimal("0.00")},
            )
            bucket["quantity"] += int(qty)
            bucket["sales"] = to_money(bucket["sales"] + line_sales)
            preview.total_quantity += int(qty)
            preview.total_sales = to_money(preview.total_sales + line_sales)
    preview.products = [per_product[k] for k in sorted(per_product)]
    preview.total_products = len(preview.products)

    for e in expeditions:
        value = to_money(e.total_value)
        preview.expeditions.append(
            {
                "expedition_id": e.id,
                "expedition_code": e.expedition_code,
                "expedition_date": e.expedition_date.isoformat(),
                "total_value": value,
                "is_paid": bool(e.is_paid),
                "status": e.status,
            }
        )
        if not e.is_paid:
            preview.unpaid_expeditions += 1
            preview.unpaid_amount = to_money(preview.unpaid_amount + value)
    return preview


def generate_invoice_preview(
    session: Session,
    actor: User,
    *,
    seller_id: int,
    warehouse_id: int,
    period_start: Any,
    period_end: Any,
) -> InvoicePreview:
    require_role(actor, BILLING_ADMINS, resource="invoice_preview")
    start, end = _validate_period(period_start, period_end)
    seller, warehouse = _load_parties(session, seller_id, warehouse_id)
    return _build_preview(session, seller, warehouse, start, end)


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------
def generate_invoice(
    session: Session,
    actor: User,
    *,
    seller_id: int,
    warehouse_id: int,
    period_start: Any,
    period_end: Any,
    fees: Optional[Mapping[str, Any]] = None,
    notes: Optional[str] = None,
    terms: Optional[str] = None,
    due_date: Optional[datetime] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> int:
    """Persist an invoice for the not-yet-billed items of the period. Returns its id."""
    require_role(actor, BILLING_ADMINS, resource="invoice")
    start, end = _validate_period(period_start, period_end)
    fee_values = _validate_fees(fees)
    seller, warehouse = _load_parties(session, seller_id, warehouse_id)

    with locked_transaction(session, [invoice_key(seller.id, warehouse.id)]):
        preview = _build_preview(session, seller, warehouse, start, end)

        total_fees = to_money(sum(fee_values.values(), Decimal("0.00")))
        net = to_money(preview.total_sales - total_fees)
        now = utc_now()
        invoice = Invoice(
            invoice_number=Invoice.generate_number(session, date=now),
            seller_id=seller.id,
            warehouse_id=warehouse.id,
            period_start=start,
            period_end=end,
            total_orders=preview.total_orders,
            total_expeditions=preview.total_expeditions,
            total_products=preview.total_products,
            total_quantity=preview.total_quantity,
            total_sales=preview.total_sales,
            total_fees=total_fees,
            net_amount=net,
            total_tax=Decimal("0.00"),
            final_amount=net,
            unpaid_expeditions=preview.unpaid_expeditions,
            unpaid_amount=preview.unpaid_amount,
            currency=preview.currency,
            notes=notes,
            terms=terms,
            status=InvoiceStatus.GENERATED.value,
            generated_by=actor.id,
            generated_at=now,
            due_date=due_date or now + timedelta(days=int(settings.INVOICE_DUE_DAYS)),
            **fee_values,
        )
        for oid in preview.order_ids:
            invoice.items.append(
                InvoicedItem(
                    seller_id=seller.id,
                    warehouse_id=warehouse.id,
                    item_type=InvoicedItemType.ORDER.value,
                    item_id=oid,
                )
            )
        for eid in preview.expedition_ids:
            invoice.items.append(
                InvoicedItem(
                    seller_id=seller.id,
                    warehouse_id=warehouse.id,
                    item_type=InvoicedItemType.EXPEDITION.value,
                    item_id=eid,
                )
            )
        session.add(invoice)
        session.flush()

        OutboxEvent.notify(
            session,
            user_id=seller.id,
            type="invoice_generated",
            title="New Invoice Generated",
            message=(
                f"Invoice {invoice.invoice_number} for {start:%Y-%m-%d} - {end:%Y-%m-%d} "
                f"has been generated: {net} {invoice.currency}."
            ),
            action_link=f"/invoices/{invoice.id}",
            aggregate_type="invoice",
            aggregate_id=invoice.id,
        )

    audit_logger.log_data_change(
        actor.id,
        "invoice_generated",
        "invoice",
        invoice.id,
        {
            "invoice_number": invoice.invoice_number,
            "seller_id": seller.id,
            "warehouse_id": warehouse.id,
            "orders": preview.total_orders,
            "expeditions": preview.total_expeditions,
            "final_amount": str(net),
        },
    )
    relay_after_commit(session, dispatcher)
    return invoice.id


# ---------------------------------------------------------------------------
# Reads / status
# ---------------------------------------------------------------------------
def list_invoices(
    session: Session,
    actor: User,
    *,
    status: Optional[str] = None,
    seller_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Invoice], int]:
    require_role(actor, INVOICE_READERS, resource="invoices")
    stmt = select(Invoice)
    if actor.role == ROLE_SELLER:
        stmt = stmt.where(Invoice.seller_id == actor.id)
    elif seller_id is not None:
        stmt = stmt.where(Invoice.seller_id == seller_id)
    if status:
        try:
            stmt = stmt.where(Invoice.status == InvoiceStatus(status).value)
        except ValueError as e:
            raise BackofficeValidationError(f"Unknown invoice status: {status!r}", "INVALID_STATUS") from e
    if warehouse_id is not None:
        stmt = stmt.where(Invoice.warehouse_id == warehouse_id)
    if date_from is not None:
        stmt = stmt.where(Invoice.generated_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(Invoice.generated_at <= date_to)
    return paginate(session, stmt, page=page, per_page=per_page, order_by=(Invoice.generated_at.desc(), Invoice.id.desc()))


def get_invoice(session: Session, actor: User, invoice_id: int) -> dict[str, Any]:
    """Invoice with the orders and expeditions it bills."""
    require_role(actor, INVOICE_READERS, resource=f"invoice:{invoice_id}")
    invoice = session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found", "INVOICE_NOT_FOUND", extra={"invoice_id": invoice_id})
    if actor.role == ROLE_SELLER:
        require_owner_or_admin(actor, invoice.seller_id, resource=f"invoice:{invoice_id}")

    orders: list[Order] = []
    if invoice.order_ids:
        orders = list(
            session.execute(select(Order).where(Order.id.in_(invoice.order_ids)).order_by(Order.id)).scalars()
        )
    expeditions: list[Expedition] = []
    if invoice.expedition_ids:
        expeditions = list(
            session.execute(
                select(Expedition).where(Expedition.id.in_(invoice.expedition_ids)).order_by(Expedition.id)
            ).scalars()
        )

    data = invoice.to_public_dict()
    data["orders"] = [
        {
            "id": o.id,
            "order_number": o.order_number,
            "customer_name": o.customer_name,
            "final_total_price": str(to_money(o.final_total_price)),
            "created_at": o.created_at.isoformat() if o.created_at else None,
        }
        for o in orders
    ]
    data["expeditions"] = [e.to_public_dict() for e in expeditions]
    return data


def update_invoice_status(
    session: Session,
    actor: User,
    invoice_id: int,
    status: str,
    *,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    paid_date: Optional[datetime] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Invoice:
    """GENERATED -> PAID (admin/moderator)."""
    require_role(actor, BILLING_ADMINS, resource=f"invoice:{invoice_id}")
    try:
        target = InvoiceStatus(str(status or "").strip().lower())
    except ValueError as e:
        raise BackofficeValidationError(f"Unknown invoice status: {status!r}", "INVALID_STATUS") from e

    with locked_transaction(session, [f"invoice-row:{int(invoice_id)}"]):
        invoice = for_update_by_id(session, Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found", "INVOICE_NOT_FOUND", extra={"invoice_id": invoice_id})
        if not (invoice.status == InvoiceStatus.GENERATED.value and target == InvoiceStatus.PAID):
            raise IllegalTransitionError(
                f"Cannot change invoice status from '{invoice.status}' to '{target.value}'"
            )
        invoice.status = target.value
        invoice.paid_date = paid_date or utc_now()
        invoice.payment_method = payment_method
        invoice.payment_reference = payment_reference
        OutboxEvent.notify(
            session,
            user_id=invoice.seller_id,
            type="invoice_paid",
            title="Invoice Paid",
            message=f"Invoice {invoice.invoice_number} has been marked as paid.",
            action_link=f"/invoices/{invoice.id}",
            aggregate_type="invoice",
            aggregate_id=invoice.id,
        )

    audit_logger.log_data_change(
        actor.id,
        "invoice_status_change",
        "invoice",
        invoice.id,
        {"status": invoice.status, "payment_method": payment_method, "payment_reference": payment_reference},
    )
    relay_after_commit(session, dispatcher)
    return invoice


__all__ = [
    "INVOICE_READERS",
    "InvoicePreview",
    "generate_invoice_preview",
    "generate_invoice",
    "list_invoices",
    "get_invoice",
    "update_invoice_status",
]
