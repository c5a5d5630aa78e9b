# tests/conftest.py
"""
Pytest fixtures for the back-office.

- SQLite file per test (tmp_path), so multi-threaded tests get real connections.
- Session factory mirrors backoffice.core.db (autoflush=False, expire_on_commit=False).
- Process-wide notification dispatcher replaced by a recording one.
- Factory for users / warehouses / products / stock / orders / expeditions.
- TestClient with get_db overridden to the test database.
"""

from __future__ import annotations

import itertools
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Optional, Sequence

# Окружение до импорта приложения
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EAGER_NOTIFICATIONS"] = "1"
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backoffice.core.db import get_db
from backoffice.models import Base
from backoffice.models.base import utc_now
from backoffice.models.expedition import Expedition
from backoffice.models.order import Order
from backoffice.models.user import ROLE_ADMIN, ROLE_SELLER, User
from backoffice.models.warehouse import Product, StockMovement, Warehouse
from backoffice.services.expedition_service import create_expedition, update_expedition_status
from backoffice.services.notifications import LoggingNotificationDispatcher, set_dispatcher
from backoffice.services.order_service import create_order, transition_order_status
from backoffice.services.stock_ledger import record_stock_movement


# ======================================================================================
# anyio: только asyncio
# ======================================================================================
@pytest.fixture
def anyio_backend():
    return "asyncio"


# ======================================================================================
# DB
# ======================================================================================
@pytest.fixture
def engine(tmp_path) -> Iterator[Engine]:
    eng = create_engine(
        f"sqlite:///{tmp_path / 'backoffice.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ======================================================================================
# Notifications
# ======================================================================================
@pytest.fixture(autouse=True)
def dispatcher() -> Iterator[LoggingNotificationDispatcher]:
    d = LoggingNotificationDispatcher()
    set_dispatcher(d)
    try:
        yield d
    finally:
        set_dispatcher(None)


# ======================================================================================
# Factory
# ======================================================================================
class Factory:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._seq = itertools.count(1)
        self._admin: Optional[User] = None

    @property
    def admin(self) -> User:
        if self._admin is None:
            self._admin = self.user(ROLE_ADMIN)
        return self._admin

    def user(self, role: str = ROLE_SELLER, **kw: Any) -> User:
        n = next(self._seq)
        u = User(
            name=kw.pop("name", f"{role} {n}"),
            email=kw.pop("email", f"{role}{n}@example.com"),
            role=role,
            is_active=kw.pop("is_active", True),
            **kw,
        )
        self.session.add(u)
        self.session.commit()
        return u

    def warehouse(self, **kw: Any) -> Warehouse:
        n = next(self._seq)
        wh = Warehouse(
            name=kw.pop("name", f"Warehouse {n}"),
            country=kw.pop("country", "KZ"),
            city=kw.pop("city", "Almaty"),
            currency=kw.pop("currency", "KZT"),
            is_active=kw.pop("is_active", True),
        )
        self.session.add(wh)
        self.session.commit()
        return wh

    def product(self, seller: User, **kw: Any) -> Product:
        n = next(self._seq)
        p = Product(
            seller_id=seller.id,
            name=kw.pop("name", f"Product {n}"),
            code=kw.pop("code", f"SKU-{n:04d}"),
            status=kw.pop("status", "active"),
        )
        self.session.add(p)
        self.session.commit()
        return p

    def stock(self, product: Product, warehouse: Warehouse, quantity: int) -> StockMovement:
        return record_stock_movement(
            self.session,
            self.admin,
            product_id=product.id,
            warehouse_id=warehouse.id,
            movement_type="increase",
            reason="initial_stock",
            quantity=quantity,
        )

    def order(
        self,
        seller: User,
        warehouse: Warehouse,
        lines: Sequence[tuple[Product, int, str]],
        *,
        phones: Sequence[str] = ("+7 701 000 0001",),
        actor: Optional[User] = None,
        detector=None,
    ) -> Order:
        return create_order(
            self.session,
            actor or self.admin,
            seller_id=seller.id,
            warehouse_id=warehouse.id,
            customer={"name": "Aigerim", "phone_numbers": list(phones), "shipping_address": "Abay ave 1"},
            lines=[{"product_id": p.id, "quantity": q, "unit_price": Decimal(price)} for p, q, price in lines],
            detector=detector,
        )

    def walk(self, order: Order, *statuses: str, actor: Optional[User] = None) -> Order:
        for st in statuses:
            order = transition_order_status(self.session, order.id, st, actor or self.admin).order
        return order

    def expedition(
        self,
        seller: User,
        warehouse: Warehouse,
        items: Sequence[tuple[Product, int, str]],
        *,
        expedition_date: Optional[datetime] = None,
        deliver: bool = False,
    ) -> Expedition:
        exp = create_expedition(
            self.session,
            self.admin,
            seller_id=seller.id,
            warehouse_id=warehouse.id,
            expedition_date=expedition_date or utc_now(),
            items=[{"product_id": p.id, "quantity": q, "unit_price": Decimal(price)} for p, q, price in items],
        )
        if deliver:
            for st in ("approved", "in_transit", "delivered"):
                exp = update_expedition_status(self.session, self.admin, exp.id, status=st)
        return exp


@pytest.fixture
def factory(db) -> Factory:
    return Factory(db)


@pytest.fixture
def seller(factory) -> User:
    return factory.user(ROLE_SELLER, business_name="Steppe Goods")


@pytest.fixture
def warehouse(factory) -> Warehouse:
    return factory.warehouse()


# ======================================================================================
# HTTP
# ======================================================================================
@pytest.fixture
def app(session_factory):
    from backoffice.main import app as fastapi_app

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    try:
        yield fastapi_app
    finally:
        fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
