import json

import httpx
import pytest
from sqlalchemy import select

from backoffice.core.config import settings
from backoffice.models.base import utc_now
from backoffice.models.outbox import CHANNEL_NOTIFICATION, OutboxEvent
from backoffice.services.notifications import (
    LoggingNotificationDispatcher,
    NotificationDeliveryError,
    WebhookNotificationDispatcher,
    dispatch_pending_notifications,
    get_dispatcher,
    set_dispatcher,
)
from backoffice.services.stock_ledger import record_stock_movement


class FailingDispatcher:
    def __init__(self):
        self.calls = 0

    def notify(self, user_id, type, title, message, action_link=None):
        self.calls += 1
        raise NotificationDeliveryError("webhook down")


def _queue(db, user_id, **kw):
    ev = OutboxEvent.notify(
        db,
        user_id=user_id,
        type=kw.get("type", "low_stock"),
        title=kw.get("title", "Low Stock Warning"),
        message=kw.get("message", "3 left"),
        action_link=kw.get("action_link"),
    )
    db.commit()
    return ev


def test_webhook_posts_json_with_bearer_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    hook = WebhookNotificationDispatcher("https://hooks.example.com/notify", token="s3cret", client=client)
    hook.notify(7, "invoice_generated", "New Invoice Generated", "INV-1", "/invoices/1")

    [request] = seen
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer s3cret"
    assert json.loads(request.content) == {
        "user_id": 7,
        "type": "invoice_generated",
        "title": "New Invoice Generated",
        "message": "INV-1",
        "action_link": "/invoices/1",
    }


def test_webhook_errors_become_delivery_errors():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    hook = WebhookNotificationDispatcher("https://hooks.example.com/notify", client=client)
    with pytest.raises(NotificationDeliveryError):
        hook.notify(1, "low_stock", "t", "m")


def test_webhook_requires_url():
    with pytest.raises(ValueError):
        WebhookNotificationDispatcher("")


def test_relay_sends_pending_events(db, seller, dispatcher):
    ev = _queue(db, seller.id, action_link="/products/1/stock")

    assert dispatch_pending_notifications(db) == {"sent": 1, "failed": 0}
    assert dispatcher.delivered == [
        {
            "user_id": seller.id,
            "type": "low_stock",
            "title": "Low Stock Warning",
            "message": "3 left",
            "action_link": "/products/1/stock",
        }
    ]
    db.refresh(ev)
    assert ev.status == "sent"
    assert ev.processed_at is not None
    assert dispatch_pending_notifications(db) == {"sent": 0, "failed": 0}


def test_failed_delivery_is_retried_later(db, seller, monkeypatch):
    ev = _queue(db, seller.id)
    failing = FailingDispatcher()

    assert dispatch_pending_notifications(db, failing) == {"sent": 0, "failed": 1}
    db.refresh(ev)
    assert ev.status == "failed"
    assert ev.attempts == 1
    assert "webhook down" in ev.last_error
    assert ev.next_attempt_at > utc_now()

    # not due yet
    assert dispatch_pending_notifications(db, failing) == {"sent": 0, "failed": 0}
    assert failing.calls == 1

    ev.next_attempt_at = utc_now()
    db.commit()
    ok = LoggingNotificationDispatcher()
    assert dispatch_pending_notifications(db, ok) == {"sent": 1, "failed": 0}
    assert len(ok.delivered) == 1


def test_parked_notifications_are_skipped(db, seller, monkeypatch):
    monkeypatch.setattr(settings, "STOCK_EFFECT_MAX_ATTEMPTS", 1)
    monkeypatch.setattr(settings, "NOTIFY_INTERVAL_SECONDS", 0)
    _queue(db, seller.id)
    failing = FailingDispatcher()

    dispatch_pending_notifications(db, failing)
    assert dispatch_pending_notifications(db, failing) == {"sent": 0, "failed": 0}
    assert failing.calls == 1


def test_failed_notification_does_not_undo_the_operation(db, factory, seller, warehouse):
    product = factory.product(seller)
    entry = record_stock_movement(
        db,
        factory.admin,
        product_id=product.id,
        warehouse_id=warehouse.id,
        movement_type="increase",
        reason="initial_stock",
        quantity=4,
        dispatcher=FailingDispatcher(),
    )
    assert entry.id is not None
    assert entry.new_stock == 4

    [ev] = db.execute(select(OutboxEvent).where(OutboxEvent.channel == CHANNEL_NOTIFICATION)).scalars().all()
    assert ev.event_type == "low_stock"
    assert ev.status == "failed"


def test_eager_relay_can_be_disabled(db, factory, seller, warehouse, dispatcher, monkeypatch):
    monkeypatch.setattr(settings, "EAGER_NOTIFICATIONS", False)
    product = factory.product(seller)
    factory.stock(product, warehouse, 2)

    assert dispatcher.delivered == []
    assert dispatch_pending_notifications(db) == {"sent": 1, "failed": 0}
    assert dispatcher.delivered[0]["type"] == "low_stock"


def test_eager_relay_sends_only_own_events(db, session_factory, factory, seller, warehouse, dispatcher):
    with session_factory() as other:
        backlog = _queue(other, seller.id, type="invoice_generated", message="INV-1")

    product = factory.product(seller)
    factory.stock(product, warehouse, 2)

    assert [n["type"] for n in dispatcher.delivered] == ["low_stock"]
    assert db.get(OutboxEvent, backlog.id).status == "pending"

    assert dispatch_pending_notifications(db) == {"sent": 1, "failed": 0}
    assert [n["type"] for n in dispatcher.delivered] == ["low_stock", "invoice_generated"]


def test_dispatcher_follows_settings(monkeypatch):
    set_dispatcher(None)
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/notify")
    hook = get_dispatcher()
    assert isinstance(hook, WebhookNotificationDispatcher)
    assert get_dispatcher() is hook
    hook.close()

    set_dispatcher(None)
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", None)
    assert isinstance(get_dispatcher(), LoggingNotificationDispatcher)
