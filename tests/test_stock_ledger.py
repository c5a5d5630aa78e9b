from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime

import pytest
from sqlalchemy import func, select, update

from backoffice.core.exceptions import (
    AuthorizationError,
    BackofficeValidationError,
    InsufficientStockError,
    NotFoundError,
)
from backoffice.models.user import ROLE_ADMIN, ROLE_CALL_CENTER, ROLE_SELLER, User
from backoffice.models.warehouse import Product, ProductStock, StockMovement
from backoffice.services.stock_ledger import (
    _chart_window,
    get_stock_history,
    get_stock_movement_chart_data,
    get_stock_summary,
    record_stock_movement,
    validate_movement,
    verify_ledger,
)


def _move(db, actor, product, warehouse, movement_type, reason, quantity, **kw):
    return record_stock_movement(
        db,
        actor,
        product_id=product.id,
        warehouse_id=warehouse.id,
        movement_type=movement_type,
        reason=reason,
        quantity=quantity,
        **kw,
    )


def _stock(db, product, warehouse) -> int:
    return db.execute(
        select(ProductStock.stock).where(
            ProductStock.product_id == product.id, ProductStock.warehouse_id == warehouse.id
        )
    ).scalar_one()


# ---------------------------------------------------------------------------
# validation
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "args,code",
    [
        (("sideways", "restock", 1), "INVALID_MOVEMENT_TYPE"),
        (("increase", "found_on_street", 1), "INVALID_REASON"),
        (("increase", "damaged_goods", 1), "REASON_TYPE_MISMATCH"),
        (("decrease", "restock", 1), "REASON_TYPE_MISMATCH"),
        (("increase", "restock", 0), "INVALID_QUANTITY"),
        (("increase", "restock", 2.5), "INVALID_QUANTITY"),
        (("increase", "restock", True), "INVALID_QUANTITY"),
    ],
)
def test_validate_movement_codes(args, code):
    with pytest.raises(BackofficeValidationError) as exc:
        validate_movement(*args)
    assert exc.value.code == code


def test_notes_length_limit():
    validate_movement("increase", "restock", 1, "x" * 500)
    with pytest.raises(BackofficeValidationError) as exc:
        validate_movement("increase", "restock", 1, "x" * 501)
    assert exc.value.code == "NOTES_TOO_LONG"


# ---------------------------------------------------------------------------
# write path
# ---------------------------------------------------------------------------
def test_increase_creates_projection_and_entry(db, factory, seller, warehouse):
    product = factory.product(seller)
    entry = _move(db, seller, product, warehouse, "increase", "initial_stock", 40, notes="first batch")

    assert (entry.previous_stock, entry.new_stock, entry.quantity) == (0, 40, 40)
    assert entry.user_id == seller.id
    assert _stock(db, product, warehouse) == 40
    db.refresh(product)
    assert product.total_stock == 40


def test_decrease_chains_previous_to_new(db, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 30)
    first = _move(db, seller, product, warehouse, "decrease", "damaged_goods", 4)
    second = _move(db, seller, product, warehouse, "decrease", "lost_goods", 6)

    assert (first.previous_stock, first.new_stock) == (30, 26)
    assert (second.previous_stock, second.new_stock) == (26, 20)
    assert _stock(db, product, warehouse) == 20


def test_total_stock_spans_warehouses(db, factory, seller):
    product = factory.product(seller)
    almaty = factory.warehouse(city="Almaty")
    astana = factory.warehouse(city="Astana")
    factory.stock(product, almaty, 12)
    factory.stock(product, astana, 8)

    db.refresh(product)
    assert product.total_stock == 20


def test_insufficient_stock_writes_nothing(db, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 3)

    with pytest.raises(InsufficientStockError) as exc:
        _move(db, seller, product, warehouse, "decrease", "damaged_goods", 5)
    assert exc.value.code == "INSUFFICIENT_STOCK"
    assert exc.value.extra["available"] == 3
    assert exc.value.extra["requested"] == 5

    assert _stock(db, product, warehouse) == 3
    assert db.execute(select(func.count(StockMovement.id))).scalar() == 1
    assert db.execute(select(Product.total_stock).where(Product.id == product.id)).scalar_one() == 3


def test_decrease_without_stock_row(db, factory, seller, warehouse):
    product = factory.product(seller)
    with pytest.raises(NotFoundError) as exc:
        _move(db, seller, product, warehouse, "decrease", "damaged_goods", 1)
    assert exc.value.code == "STOCK_NOT_FOUND"


def test_unknown_product(db, factory, warehouse):
    with pytest.raises(NotFoundError) as exc:
        record_stock_movement(
            db,
            factory.admin,
            product_id=9999,
            warehouse_id=warehouse.id,
            movement_type="increase",
            reason="restock",
            quantity=1,
        )
    assert exc.value.code == "PRODUCT_NOT_FOUND"


def test_role_and_ownership_checks(db, factory, seller, warehouse):
    product = factory.product(seller)
    other_seller = factory.user(ROLE_SELLER)
    operator = factory.user(ROLE_CALL_CENTER)

    with pytest.raises(AuthorizationError) as exc:
        _move(db, operator, product, warehouse, "increase", "restock", 1)
    assert exc.value.code == "INSUFFICIENT_PERMISSIONS"

    with pytest.raises(AuthorizationError) as exc:
        _move(db, other_seller, product, warehouse, "increase", "restock", 1)
    assert exc.value.code == "ACCESS_DENIED"

    moderator = factory.user("moderator")
    _move(db, moderator, product, warehouse, "increase", "restock", 1)
    assert _stock(db, product, warehouse) == 1


def test_low_stock_warning_goes_to_seller(db, factory, seller, warehouse, dispatcher):
    product = factory.product(seller, name="Kumis")
    factory.stock(product, warehouse, 50)
    assert not [n for n in dispatcher.delivered if n["type"] == "low_stock"]

    _move(db, seller, product, warehouse, "decrease", "damaged_goods", 42)

    [warning] = [n for n in dispatcher.delivered if n["type"] == "low_stock"]
    assert warning["user_id"] == seller.id
    assert warning["title"] == "Low Stock Warning"
    assert "8 unit(s) left" in warning["message"]


def test_no_low_stock_warning_at_zero(db, factory, seller, warehouse, dispatcher):
    product = factory.product(seller)
    factory.stock(product, warehouse, 20)
    _move(db, seller, product, warehouse, "decrease", "expired_goods", 20)
    assert not [n for n in dispatcher.delivered if n["type"] == "low_stock"]


def test_out_of_stock_product_reactivated_by_increase(db, factory, seller, warehouse):
    product = factory.product(seller, status="out_of_stock")
    _move(db, seller, product, warehouse, "increase", "restock", 15)
    db.refresh(product)
    assert product.status == "active"


def test_product_goes_out_of_stock_when_all_warehouses_are_empty(db, factory, seller, warehouse):
    product = factory.product(seller)
    second = factory.warehouse()
    factory.stock(product, warehouse, 3)
    factory.stock(product, second, 2)

    _move(db, seller, product, warehouse, "decrease", "damaged_goods", 3)
    db.refresh(product)
    assert product.status == "active"

    _move(db, seller, product, second, "decrease", "damaged_goods", 2)
    db.refresh(product)
    assert product.status == "out_of_stock"
    assert product.total_stock == 0

    _move(db, seller, product, second, "increase", "restock", 4)
    db.refresh(product)
    assert product.status == "active"


def test_metadata_is_stored(db, factory, seller, warehouse):
    product = factory.product(seller)
    entry = _move(db, seller, product, warehouse, "increase", "restock", 5, metadata={"supplier": "Tengri"})
    assert entry.to_public_dict()["metadata"] == {"supplier": "Tengri"}


# ---------------------------------------------------------------------------
# read path
# ---------------------------------------------------------------------------
def test_history_filters_and_pagination(db, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 100)
    _move(db, seller, product, warehouse, "decrease", "damaged_goods", 1, notes="forklift accident")
    _move(db, seller, product, warehouse, "decrease", "lost_goods", 2)
    _move(db, seller, product, warehouse, "increase", "restock", 3)

    items, total = get_stock_history(db, seller, product_id=product.id, per_page=2)
    assert total == 4
    assert [m.reason for m in items] == ["restock", "lost_goods"]

    items, total = get_stock_history(db, seller, product_id=product.id, page=2, per_page=2)
    assert [m.reason for m in items] == ["damaged_goods", "initial_stock"]

    items, total = get_stock_history(db, seller, movement_type="decrease")
    assert total == 2

    items, total = get_stock_history(db, seller, search="FORKLIFT")
    assert [m.reason for m in items] == ["damaged_goods"]

    items, total = get_stock_history(db, seller, user_id=factory.admin.id)
    assert [m.reason for m in items] == ["initial_stock"]


def test_history_is_scoped_to_seller(db, factory, seller, warehouse):
    mine = factory.product(seller)
    other = factory.user(ROLE_SELLER)
    theirs = factory.product(other)
    factory.stock(mine, warehouse, 1)
    factory.stock(theirs, warehouse, 1)

    _, total = get_stock_history(db, seller)
    assert total == 1
    _, total = get_stock_history(db, factory.admin)
    assert total == 2


def test_summary(db, factory, seller):
    product = factory.product(seller)
    north = factory.warehouse(city="Pavlodar")
    south = factory.warehouse(city="Shymkent")
    factory.stock(product, north, 10)
    _move(db, seller, product, south, "increase", "restock", 7)
    _move(db, seller, product, north, "decrease", "damaged_goods", 2)

    summary = get_stock_summary(db, seller, product.id)
    assert summary["total_movements"] == 3
    assert summary["total_increases"] == 2
    assert summary["total_decreases"] == 1
    assert summary["current_stock"] == 15
    assert summary["last_restock_date"] is not None
    assert [w["stock"] for w in summary["warehouses"]] == [8, 7]

    only_north = get_stock_summary(db, seller, product.id, warehouse_id=north.id)
    assert only_north["current_stock"] == 8
    assert only_north["total_movements"] == 2
    assert only_north["last_restock_date"] is None


def _backdate(db, entry, when):
    db.execute(update(StockMovement).where(StockMovement.id == entry.id).values(created_at=when))
    db.commit()


def test_chart_daily_buckets(db, factory, seller, warehouse):
    product = factory.product(seller)
    a = factory.stock(product, warehouse, 50)
    b = _move(db, seller, product, warehouse, "decrease", "damaged_goods", 5)
    c = _move(db, seller, product, warehouse, "decrease", "lost_goods", 3)
    d = _move(db, seller, product, warehouse, "increase", "restock", 10)
    _backdate(db, a, datetime(2026, 10, 1, 9, 0))
    _backdate(db, b, datetime(2026, 10, 5, 10, 0))
    _backdate(db, c, datetime(2026, 10, 5, 18, 30))
    _backdate(db, d, datetime(2026, 8, 1, 12, 0))

    rows = get_stock_movement_chart_data(
        db, seller, product.id, date_range="last_30_days", now=datetime(2026, 10, 19, 12, 0)
    )
    assert rows == [
        {"date": "2026-10-01", "stock_in": 50, "stock_out": 0, "total_in": 1, "total_out": 0},
        {"date": "2026-10-05", "stock_in": 0, "stock_out": 8, "total_in": 0, "total_out": 2},
    ]


def test_chart_this_year_groups_by_month(db, factory, seller, warehouse):
    product = factory.product(seller)
    a = factory.stock(product, warehouse, 50)
    b = _move(db, seller, product, warehouse, "decrease", "damaged_goods", 5)
    _backdate(db, a, datetime(2026, 2, 3))
    _backdate(db, b, datetime(2026, 2, 20))

    rows = get_stock_movement_chart_data(
        db, seller, product.id, date_range="this_year", now=datetime(2026, 10, 19)
    )
    assert rows == [{"date": "2026-02", "stock_in": 50, "stock_out": 5, "total_in": 1, "total_out": 1}]


def test_chart_custom_range_requires_valid_dates(db, factory, seller):
    product = factory.product(seller)
    with pytest.raises(BackofficeValidationError) as exc:
        get_stock_movement_chart_data(db, seller, product.id, date_range="custom")
    assert exc.value.code == "INVALID_RANGE"
    with pytest.raises(BackofficeValidationError):
        get_stock_movement_chart_data(
            db,
            seller,
            product.id,
            date_range="custom",
            custom_start=date(2026, 10, 10),
            custom_end=date(2026, 10, 1),
        )
    with pytest.raises(BackofficeValidationError):
        get_stock_movement_chart_data(db, seller, product.id, date_range="fortnight")


def test_chart_windows():
    wednesday = datetime(2026, 10, 21, 15, 30)

    start, end, bucket = _chart_window("this_week", wednesday, None, None)
    assert start == datetime(2026, 10, 18)
    assert bucket == "day"

    start, end, bucket = _chart_window("today", wednesday, None, None)
    assert start == datetime(2026, 10, 21) and end.date() == date(2026, 10, 21)
    assert bucket == "hour"

    start, end, bucket = _chart_window("this_month", wednesday, None, None)
    assert start == datetime(2026, 10, 1) and end.date() == date(2026, 10, 31)

    start, end, bucket = _chart_window("custom", wednesday, date(2024, 1, 1), date(2026, 1, 1))
    assert bucket == "month"

    sunday = datetime(2026, 10, 18, 8, 0)
    start, _, _ = _chart_window("this_week", sunday, None, None)
    assert start == datetime(2026, 10, 18)


# ---------------------------------------------------------------------------
# verification
# ---------------------------------------------------------------------------
def test_verify_ledger_ok(db, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 10)
    _move(db, seller, product, warehouse, "decrease", "damaged_goods", 4)
    _move(db, seller, product, warehouse, "increase", "restock", 9)

    report = verify_ledger(db, product.id, warehouse.id)
    assert report.ok
    assert report.entries == 3
    assert report.projection == report.last_new_stock == 15


def test_verify_ledger_detects_tampered_projection(db, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 10)
    db.execute(
        update(ProductStock)
        .where(ProductStock.product_id == product.id, ProductStock.warehouse_id == warehouse.id)
        .values(stock=11)
    )
    db.commit()

    report = verify_ledger(db, product.id, warehouse.id)
    assert not report.ok
    assert report.to_dict()["issues"] == ["projection 11 != last new_stock 10"]


# ---------------------------------------------------------------------------
# concurrency
# ---------------------------------------------------------------------------
def test_concurrent_decrements_keep_the_chain(db, session_factory, factory, seller, warehouse):
    product = factory.product(seller)
    factory.stock(product, warehouse, 100)
    product_id, warehouse_id, seller_id = product.id, warehouse.id, seller.id

    def worker(_):
        session = session_factory()
        try:
            actor = session.get(User, seller_id)
            return record_stock_movement(
                session,
                actor,
                product_id=product_id,
                warehouse_id=warehouse_id,
                movement_type="decrease",
                reason="damaged_goods",
                quantity=5,
            ).new_stock
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(worker, range(10)))

    assert sorted(results) == list(range(50, 100, 5))
    db.expire_all()
    assert _stock(db, product, warehouse) == 50
    assert verify_ledger(db, product_id, warehouse_id).ok
    assert db.execute(select(Product.total_stock).where(Product.id == product_id)).scalar_one() == 50


def test_admin_sees_every_seller(db, factory, warehouse):
    admin = factory.user(ROLE_ADMIN)
    a = factory.product(factory.user(ROLE_SELLER))
    factory.stock(a, warehouse, 3)
    summary = get_stock_summary(db, admin, a.id)
    assert summary["current_stock"] == 3
