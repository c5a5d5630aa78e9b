from datetime import timedelta

import httpx
import pytest

from backoffice.models.base import utc_now
from backoffice.models.user import ROLE_CALL_CENTER, ROLE_SELLER


def auth(user) -> dict[str, str]:
    return {"X-Actor-Id": str(user.id)}


def _order_payload(product, warehouse, *, quantity=2, phone="+7 701 000 0001"):
    return {
        "warehouse_id": warehouse.id,
        "customer": {"name": "Dana", "phone_numbers": [phone], "shipping_address": "Dostyk 5"},
        "items": [{"product_id": product.id, "quantity": quantity, "unit_price": "15.00"}],
    }


@pytest.fixture
def stocked(factory, seller, warehouse):
    product = factory.product(seller, name="Tea", code="TEA")
    factory.stock(product, warehouse, 20)
    return product


def test_requests_without_actor_are_rejected(client):
    r = client.get("/orders")
    assert r.status_code == 401
    assert r.headers["content-type"].startswith("application/problem+json")
    body = r.json()
    assert body["success"] is False
    assert body["code"] == "AUTH_REQUIRED"


def test_unknown_actor(client):
    r = client.get("/orders", headers={"X-Actor-Id": "9999"})
    assert r.status_code == 401
    assert r.json()["code"] == "USER_NOT_FOUND"


def test_seller_creates_order_for_itself(client, seller, warehouse, stocked):
    r = client.post("/orders", json=_order_payload(stocked, warehouse), headers=auth(seller))
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["code"] == "ORDER_CREATED"
    assert body["data"]["seller_id"] == seller.id
    assert body["data"]["status"] == "pending"
    assert body["data"]["final_total_price"] == "30.00"


def test_body_validation(client, seller, warehouse, stocked):
    payload = _order_payload(stocked, warehouse, quantity=0)
    r = client.post("/orders", json=payload, headers=auth(seller))
    assert r.status_code == 422
    assert r.json()["code"] == "REQUEST_VALIDATION_ERROR"


def test_http_duplicate_detection_flags_doubles(client, seller, warehouse, stocked):
    first = client.post("/orders", json=_order_payload(stocked, warehouse), headers=auth(seller))
    second = client.post("/orders", json=_order_payload(stocked, warehouse), headers=auth(seller))
    assert first.json()["data"]["status"] == "pending"
    assert second.json()["data"]["status"] == "double"


def test_status_flow_over_http(client, factory, seller, warehouse, stocked):
    order_id = client.post("/orders", json=_order_payload(stocked, warehouse), headers=auth(seller)).json()["data"]["id"]
    operator = factory.user(ROLE_CALL_CENTER)

    r = client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(operator))
    assert r.status_code == 200
    body = r.json()
    assert body["code"] == "STATUS_UPDATED"
    assert body["data"]["order"]["status"] == "confirmed"
    assert body["data"]["stock_effect"]["status"] == "applied"

    r = client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(operator))
    assert r.json()["code"] == "NO_CHANGE"
    assert r.json()["data"]["changed"] is False

    r = client.patch(f"/orders/{order_id}/status", json={"status": "pending"}, headers=auth(operator))
    assert r.status_code == 422
    assert r.json()["code"] == "ILLEGAL_TRANSITION"

    r = client.patch(f"/orders/{order_id}/status", json={"status": "shipped"}, headers=auth(seller))
    assert r.status_code == 403

    history = client.get(f"/orders/{order_id}/history", headers=auth(seller)).json()["data"]
    assert [h["current_status"] for h in history] == ["confirmed"]

    summary = client.get(f"/stock/products/{stocked.id}/summary", headers=auth(seller)).json()["data"]
    assert summary["current_stock"] == 18


def test_discounts_over_http(client, factory, seller, warehouse, stocked):
    order_id = client.post("/orders", json=_order_payload(stocked, warehouse), headers=auth(seller)).json()["data"]["id"]
    discount = {
        "product_id": stocked.id,
        "original_price": "15.00",
        "new_price": "12.00",
        "reason": "loyal customer",
    }
    r = client.patch(
        f"/orders/{order_id}/status",
        json={"status": "confirmed", "discounts": [discount]},
        headers=auth(factory.admin),
    )
    assert r.status_code == 200
    order = r.json()["data"]["order"]
    assert order["final_total_price"] == "24.00"
    assert order["total_discount_amount"] == "6.00"


def test_manual_stock_movements(client, factory, seller, warehouse):
    product = factory.product(seller)
    movement = {
        "product_id": product.id,
        "warehouse_id": warehouse.id,
        "movement_type": "increase",
        "reason": "restock",
        "quantity": 12,
    }
    r = client.post("/stock/movements", json=movement, headers=auth(seller))
    assert r.status_code == 201
    assert r.json()["code"] == "STOCK_UPDATED"
    assert r.json()["data"]["new_stock"] == 12

    too_many = {**movement, "movement_type": "decrease", "reason": "damaged_goods", "quantity": 50}
    r = client.post("/stock/movements", json=too_many, headers=auth(seller))
    assert r.status_code == 409
    assert r.json()["code"] == "INSUFFICIENT_STOCK"

    r = client.post("/stock/movements", json=movement, headers=auth(factory.user(ROLE_CALL_CENTER)))
    assert r.status_code == 403

    page = client.get("/stock/movements", params={"product_id": product.id}, headers=auth(seller)).json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["reason"] == "restock"


def test_ledger_verification_endpoint(client, factory, seller, warehouse, stocked):
    url = f"/stock/products/{stocked.id}/warehouses/{warehouse.id}/verify"
    r = client.get(url, headers=auth(factory.admin))
    assert r.status_code == 200
    assert r.json()["code"] == "LEDGER_OK"

    assert client.get(url, headers=auth(seller)).status_code == 403


def test_chart_endpoint(client, seller, stocked):
    r = client.get(f"/stock/products/{stocked.id}/chart", headers=auth(seller))
    assert r.status_code == 200
    [bucket] = r.json()["data"]
    assert (bucket["stock_in"], bucket["total_in"], bucket["stock_out"]) == (20, 1, 0)

    r = client.get(f"/stock/products/{stocked.id}/chart", params={"range": "fortnight"}, headers=auth(seller))
    assert r.status_code == 422
    assert r.json()["code"] == "INVALID_RANGE"


def test_invoice_flow(client, factory, seller, warehouse, stocked):
    order = factory.order(seller, warehouse, [(stocked, 2, "15.00")])
    factory.walk(order, "confirmed", "shipped", "delivered")
    today = utc_now().date()
    period = {
        "seller_id": seller.id,
        "warehouse_id": warehouse.id,
        "period_start": (today - timedelta(days=1)).isoformat() + "T00:00:00",
        "period_end": (today + timedelta(days=1)).isoformat() + "T00:00:00",
    }
    admin = auth(factory.admin)

    preview = client.post("/invoices/preview", json=period, headers=admin)
    assert preview.status_code == 200
    assert preview.json()["data"]["total_sales"] == "30.00"

    r = client.post("/invoices", json={**period, "fees": {"service_fee": "3.00"}}, headers=admin)
    assert r.status_code == 201
    assert r.json()["code"] == "INVOICE_GENERATED"
    invoice_id = r.json()["data"]["invoice_id"]

    assert client.post("/invoices", json=period, headers=auth(seller)).status_code == 403

    details = client.get(f"/invoices/{invoice_id}", headers=auth(seller)).json()["data"]
    assert [o["id"] for o in details["orders"]] == [order.id]

    r = client.patch(
        f"/invoices/{invoice_id}/status",
        json={"status": "paid", "payment_method": "cash"},
        headers=admin,
    )
    assert r.json()["code"] == "INVOICE_UPDATED"
    assert r.json()["data"]["status"] == "paid"

    r = client.patch(f"/invoices/{invoice_id}/status", json={"status": "paid"}, headers=admin)
    assert r.status_code == 422
    assert r.json()["code"] == "ILLEGAL_TRANSITION"


def test_expedition_flow(client, factory, seller, warehouse, stocked):
    payload = {
        "warehouse_id": warehouse.id,
        "expedition_date": utc_now().isoformat(),
        "items": [{"product_id": stocked.id, "quantity": 5, "unit_price": "2.00"}],
    }
    r = client.post("/expeditions", json=payload, headers=auth(seller))
    assert r.status_code == 201
    assert r.json()["code"] == "EXPEDITION_CREATED"
    expedition_id = r.json()["data"]["id"]

    r = client.patch(f"/expeditions/{expedition_id}/status", json={"status": "approved"}, headers=auth(factory.admin))
    assert r.json()["code"] == "EXPEDITION_UPDATED"
    assert r.json()["data"]["status"] == "approved"

    other = factory.user(ROLE_SELLER)
    assert client.get(f"/expeditions/{expedition_id}", headers=auth(other)).status_code == 403
    assert client.get("/expeditions", headers=auth(other)).json()["data"]["total"] == 0


def test_missing_resources_are_404(client, factory):
    r = client.get("/orders/424242", headers=auth(factory.admin))
    assert r.status_code == 404
    assert r.json()["code"] == "ORDER_NOT_FOUND"


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] in ("ok", "degraded")
    assert body["scheduler"]["running"] is False
    assert "version" in body["build"]


@pytest.mark.anyio
async def test_async_client(app, factory, seller):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        r = await ac.get("/orders", headers=auth(seller))
    assert r.status_code == 200
    assert r.json()["data"]["total"] == 0


def test_uvicorn_settings(monkeypatch):
    from backoffice.core.config import settings

    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    monkeypatch.setattr(settings, "UVICORN_WORKERS", 4)
    kwargs = settings.uvicorn_kwargs
    assert kwargs["reload"] is False
    assert kwargs["workers"] == 4
    assert kwargs["port"] == settings.PORT


def test_init_db_creates_schema():
    from sqlalchemy import inspect

    from backoffice.core import db as core_db

    core_db.dispose_engine()
    core_db.init_db()
    try:
        tables = set(inspect(core_db._engine).get_table_names())
        assert {"orders", "stock_movements", "invoices", "invoiced_items", "outbox_events"} <= tables
    finally:
        core_db.dispose_engine()
