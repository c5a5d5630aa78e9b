# alembic/versions/20261019_initial_schema.py
"""initial back-office schema: users, warehouses, stock ledger, orders, expeditions, invoices, outbox"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "20261019_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
MONEY = sa.Numeric(14, 2)


def _base_columns():
    return [
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    ]


def _fk(column, target, ondelete, nullable=False):
    return sa.Column(column, sa.Integer, sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def _indexes(table, *columns):
    for col in columns:
        op.create_index(f"ix__{table}__{col}", table, [col])


def upgrade():
    # ------------------------------------------------------------------ users
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("business_name", sa.String(255)),
        sa.Column("role", sa.String(32), nullable=False, server_default=sa.text("'seller'")),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint(
            "role IN ('admin','moderator','call_center','seller','provider')",
            name="ck__users__user_role_allowed",
        ),
    )
    op.create_index("ix__users__email", "users", ["email"], unique=True)
    op.create_index("ix_users_active_role", "users", ["is_active", "role"])

    # ------------------------------------------------------------- warehouses
    op.create_table(
        "warehouses",
        *_base_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("country", sa.String(100), nullable=False),
        sa.Column("city", sa.String(100)),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("is_active", sa.Boolean, nullable=False),
        sa.UniqueConstraint("name", "country", name="uq_warehouse_name_country"),
    )
    _indexes("warehouses", "is_active")

    # --------------------------------------------------------------- products
    op.create_table(
        "products",
        *_base_columns(),
        _fk("seller_id", "users.id", "CASCADE"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("total_stock", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("seller_id", "code", name="uq_product_seller_code"),
        sa.CheckConstraint("total_stock >= 0", name="ck__products__prod_total_stock_nonneg"),
        sa.CheckConstraint(
            "status IN ('active','inactive','out_of_stock')", name="ck__products__prod_status_allowed"
        ),
    )
    _indexes("products", "seller_id", "code")

    op.create_table(
        "product_stocks",
        *_base_columns(),
        _fk("product_id", "products.id", "CASCADE"),
        _fk("warehouse_id", "warehouses.id", "CASCADE"),
        sa.Column("stock", sa.Integer, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("product_id", "warehouse_id", name="uq_product_warehouse"),
        sa.CheckConstraint("stock >= 0", name="ck__product_stocks__stock_nonneg"),
    )
    _indexes("product_stocks", "product_id", "warehouse_id")

    # ----------------------------------------------------------------- orders
    op.create_table(
        "orders",
        *_base_columns(),
        sa.Column("order_number", sa.String(32), nullable=False),
        _fk("seller_id", "users.id", "RESTRICT"),
        _fk("warehouse_id", "warehouses.id", "RESTRICT"),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_phones", JSONB, nullable=False),
        sa.Column("shipping_address", sa.Text, nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("status_comment", sa.Text),
        _fk("status_changed_by", "users.id", "SET NULL", nullable=True),
        sa.Column("status_changed_at", sa.DateTime, nullable=False),
        sa.Column("total_price", MONEY, nullable=False),
        sa.Column("final_total_price", MONEY, nullable=False),
        sa.Column("total_discount_amount", MONEY, nullable=False),
        sa.Column("stock_held", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("is_double", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("duplicate_matches", JSONB),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("total_price >= 0", name="ck__orders__order_total_nonneg"),
        sa.CheckConstraint("final_total_price >= 0", name="ck__orders__order_final_total_nonneg"),
        sa.CheckConstraint("total_discount_amount >= 0", name="ck__orders__order_discount_nonneg"),
    )
    op.create_index("ix__orders__order_number", "orders", ["order_number"], unique=True)
    _indexes("orders", "seller_id", "warehouse_id", "status", "created_at")
    op.create_index(
        "ix_orders_seller_wh_status_created", "orders", ["seller_id", "warehouse_id", "status", "created_at"]
    )

    op.create_table(
        "order_items",
        *_base_columns(),
        _fk("order_id", "orders.id", "CASCADE"),
        _fk("product_id", "products.id", "RESTRICT"),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("original_unit_price", MONEY, nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck__order_items__order_item_qty_pos"),
        sa.CheckConstraint("unit_price >= 0", name="ck__order_items__order_item_price_nonneg"),
        sa.CheckConstraint("original_unit_price >= 0", name="ck__order_items__order_item_orig_price_nonneg"),
    )
    _indexes("order_items", "order_id", "product_id")

    op.create_table(
        "price_adjustments",
        *_base_columns(),
        _fk("order_id", "orders.id", "CASCADE"),
        _fk("product_id", "products.id", "RESTRICT"),
        sa.Column("original_price", MONEY, nullable=False),
        sa.Column("adjusted_price", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column("notes", sa.Text),
        _fk("applied_by", "users.id", "SET NULL", nullable=True),
        sa.Column("applied_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("adjusted_price >= 0", name="ck__price_adjustments__adj_price_nonneg"),
        sa.CheckConstraint("adjusted_price < original_price", name="ck__price_adjustments__adj_price_lt_original"),
    )
    _indexes("price_adjustments", "order_id")

    op.create_table(
        "order_status_history",
        *_base_columns(),
        _fk("order_id", "orders.id", "CASCADE"),
        sa.Column("previous_status", sa.String(32), nullable=False),
        sa.Column("current_status", sa.String(32), nullable=False),
        _fk("changed_by", "users.id", "SET NULL", nullable=True),
        sa.Column("changed_by_role", sa.String(32), nullable=False),
        sa.Column("change_date", sa.DateTime, nullable=False),
        sa.Column("comment", sa.Text),
        sa.Column("automatic_change", sa.Boolean, nullable=False),
        sa.Column("change_reason", sa.String(255)),
        sa.Column("time_consumed_in_previous_status", sa.Integer, nullable=False),
        sa.CheckConstraint(
            "time_consumed_in_previous_status >= 0", name="ck__order_status_history__hist_time_nonneg"
        ),
    )
    op.create_index("ix_order_history_order_id", "order_status_history", ["order_id", "id"])

    # ---------------------------------------------------------- stock ledger
    op.create_table(
        "stock_movements",
        *_base_columns(),
        _fk("product_id", "products.id", "CASCADE"),
        _fk("warehouse_id", "warehouses.id", "CASCADE"),
        sa.Column("movement_type", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("previous_stock", sa.Integer, nullable=False),
        sa.Column("new_stock", sa.Integer, nullable=False),
        _fk("user_id", "users.id", "SET NULL", nullable=True),
        _fk("order_id", "orders.id", "SET NULL", nullable=True),
        sa.Column("effect_id", sa.Integer),
        sa.Column("notes", sa.Text),
        sa.Column("metadata", JSONB),
        sa.CheckConstraint("quantity > 0", name="ck__stock_movements__movement_qty_pos"),
        sa.CheckConstraint("new_stock >= 0", name="ck__stock_movements__movement_newstock_nonneg"),
        sa.CheckConstraint(
            "movement_type IN ('increase','decrease')", name="ck__stock_movements__movement_type_allowed"
        ),
    )
    _indexes("stock_movements", "movement_type", "reason", "user_id", "effect_id", "created_at")
    op.create_index("ix_movements_product_wh_id", "stock_movements", ["product_id", "warehouse_id", "id"])
    op.create_index("ix_movements_order", "stock_movements", ["order_id"])

    # ------------------------------------------------------------ expeditions
    op.create_table(
        "expeditions",
        *_base_columns(),
        sa.Column("expedition_code", sa.String(32), nullable=False),
        _fk("seller_id", "users.id", "RESTRICT"),
        _fk("warehouse_id", "warehouses.id", "RESTRICT"),
        sa.Column("expedition_date", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("total_products", sa.Integer, nullable=False),
        sa.Column("total_quantity", sa.Integer, nullable=False),
        sa.Column("total_value", MONEY, nullable=False),
        sa.Column("is_paid", sa.Boolean, nullable=False, server_default=sa.text("false")),
        _fk("approved_by", "users.id", "SET NULL", nullable=True),
        sa.Column("approved_at", sa.DateTime),
        sa.Column("rejected_reason", sa.Text),
        sa.Column("delivered_at", sa.DateTime),
        sa.CheckConstraint("total_value >= 0", name="ck__expeditions__exp_total_value_nonneg"),
        sa.CheckConstraint(
            "status IN ('pending','approved','rejected','in_transit','delivered','cancelled')",
            name="ck__expeditions__exp_status_allowed",
        ),
    )
    op.create_index("ix__expeditions__expedition_code", "expeditions", ["expedition_code"], unique=True)
    _indexes("expeditions", "seller_id", "warehouse_id", "expedition_date", "status")
    op.create_index(
        "ix_expeditions_seller_wh_status_date",
        "expeditions",
        ["seller_id", "warehouse_id", "status", "expedition_date"],
    )

    op.create_table(
        "expedition_items",
        *_base_columns(),
        _fk("expedition_id", "expeditions.id", "CASCADE"),
        _fk("product_id", "products.id", "RESTRICT"),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck__expedition_items__exp_item_qty_pos"),
        sa.CheckConstraint("unit_price >= 0", name="ck__expedition_items__exp_item_price_nonneg"),
    )
    _indexes("expedition_items", "expedition_id", "product_id")

    # --------------------------------------------------------------- invoices
    fee_columns = [
        sa.Column(name, MONEY, nullable=False)
        for name in (
            "confirmation_fee",
            "service_fee",
            "warehouse_fee",
            "shipping_fee",
            "processing_fee",
            "expedition_fee",
        )
    ]
    op.create_table(
        "invoices",
        *_base_columns(),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        _fk("seller_id", "users.id", "RESTRICT"),
        _fk("warehouse_id", "warehouses.id", "RESTRICT"),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        *fee_columns,
        sa.Column("total_orders", sa.Integer, nullable=False),
        sa.Column("total_expeditions", sa.Integer, nullable=False),
        sa.Column("total_products", sa.Integer, nullable=False),
        sa.Column("total_quantity", sa.Integer, nullable=False),
        sa.Column("total_sales", MONEY, nullable=False),
        sa.Column("total_fees", MONEY, nullable=False),
        sa.Column("net_amount", MONEY, nullable=False),
        sa.Column("total_tax", MONEY, nullable=False),
        sa.Column("final_amount", MONEY, nullable=False),
        sa.Column("unpaid_expeditions", sa.Integer, nullable=False),
        sa.Column("unpaid_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("terms", sa.Text),
        sa.Column("status", sa.String(16), nullable=False),
        _fk("generated_by", "users.id", "SET NULL", nullable=True),
        sa.Column("generated_at", sa.DateTime, nullable=False),
        sa.Column("due_date", sa.DateTime),
        sa.Column("paid_date", sa.DateTime),
        sa.Column("payment_method", sa.String(64)),
        sa.Column("payment_reference", sa.String(128)),
        sa.CheckConstraint("period_start < period_end", name="ck__invoices__inv_period_order"),
        sa.CheckConstraint("total_fees >= 0", name="ck__invoices__inv_fees_nonneg"),
        sa.CheckConstraint("status IN ('generated','paid')", name="ck__invoices__inv_status_allowed"),
    )
    op.create_index("ix__invoices__invoice_number", "invoices", ["invoice_number"], unique=True)
    _indexes("invoices", "seller_id", "warehouse_id", "status")
    op.create_index("ix_invoices_seller_wh_generated", "invoices", ["seller_id", "warehouse_id", "generated_at"])

    op.create_table(
        "invoiced_items",
        *_base_columns(),
        _fk("invoice_id", "invoices.id", "CASCADE"),
        sa.Column("seller_id", sa.Integer, nullable=False),
        sa.Column("warehouse_id", sa.Integer, nullable=False),
        sa.Column("item_type", sa.String(16), nullable=False),
        sa.Column("item_id", sa.Integer, nullable=False),
        sa.UniqueConstraint("seller_id", "warehouse_id", "item_type", "item_id", name="uq_invoiced_item"),
        sa.CheckConstraint(
            "item_type IN ('order','expedition')", name="ck__invoiced_items__invoiced_item_type_allowed"
        ),
    )
    _indexes("invoiced_items", "invoice_id")

    # ----------------------------------------------------------------- outbox
    op.create_table(
        "outbox_events",
        *_base_columns(),
        sa.Column("aggregate_type", sa.String(64), nullable=False),
        sa.Column("aggregate_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("payload", JSONB),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime),
        sa.Column("last_error", sa.Text),
        sa.Column("processed_at", sa.DateTime),
        sa.CheckConstraint("attempts >= 0", name="ck__outbox_events__outbox_attempts_nonneg"),
        sa.CheckConstraint("status in ('pending','sent','failed','cancelled')", name="ck__outbox_events__outbox_status_allowed"),
        sa.CheckConstraint(
            "channel in ('stock','notification')", name="ck__outbox_events__outbox_channel_allowed"
        ),
    )
    _indexes("outbox_events", "event_type", "status", "processed_at")
    op.create_index("ix_outbox_channel_status_due", "outbox_events", ["channel", "status", "next_attempt_at"])
    op.create_index(
        "ix_outbox_aggregate_created", "outbox_events", ["aggregate_type", "aggregate_id", "created_at"]
    )


def downgrade():
    for table in (
        "outbox_events",
        "invoiced_items",
        "invoices",
        "expedition_items",
        "expeditions",
        "stock_movements",
        "order_status_history",
        "price_adjustments",
        "order_items",
        "orders",
        "product_stocks",
        "products",
        "warehouses",
        "users",
    ):
        op.drop_table(table)
