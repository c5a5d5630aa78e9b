"""
Models package: importing it registers every mapper on Base.metadata
(create_all / alembic autogenerate see the full schema).
"""

from backoffice.models.base import Base, BaseModel
from backoffice.models.expedition import EXPEDITION_TRANSITIONS, Expedition, ExpeditionItem, ExpeditionStatus
from backoffice.models.invoice import FEE_FIELDS, Invoice, InvoicedItem, InvoicedItemType, InvoiceStatus
from backoffice.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory, PriceAdjustment
from backoffice.models.outbox import CHANNEL_NOTIFICATION, CHANNEL_STOCK, OutboxEvent
from backoffice.models.user import ALLOWED_ROLES, User
from backoffice.models.warehouse import (
    MovementType,
    Product,
    ProductStatus,
    ProductStock,
    StockMovement,
    StockMovementReason,
    Warehouse,
)

__all__ = [
    "Base",
    "BaseModel",
    "User",
    "ALLOWED_ROLES",
    "Warehouse",
    "Product",
    "ProductStatus",
    "ProductStock",
    "StockMovement",
    "MovementType",
    "StockMovementReason",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusHistory",
    "PriceAdjustment",
    "Expedition",
    "ExpeditionItem",
    "ExpeditionStatus",
    "EXPEDITION_TRANSITIONS",
    "Invoice",
    "InvoicedItem",
    "InvoicedItemType",
    "InvoiceStatus",
    "FEE_FIELDS",
    "OutboxEvent",
    "CHANNEL_STOCK",
    "CHANNEL_NOTIFICATION",
]
