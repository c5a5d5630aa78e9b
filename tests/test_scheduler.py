from contextlib import contextmanager

import pytest
from sqlalchemy import select

from backoffice.core.config import settings
from backoffice.models.warehouse import ProductStock
from backoffice.services.order_service import transition_order_status
from backoffice.worker import scheduler as worker


@pytest.fixture
def scoped_sessions(session_factory, monkeypatch):
    @contextmanager
    def _scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr(worker, "session_scope", _scope)


@pytest.fixture
def clean_jobs():
    yield
    for job_id in (worker.JOB_RECONCILE_STOCK, worker.JOB_RELAY_NOTIFICATIONS):
        if worker.scheduler.get_job(job_id) is not None:
            worker.scheduler.remove_job(job_id)


def test_reconciler_job_applies_pending_effects(db, factory, seller, warehouse, scoped_sessions, monkeypatch):
    monkeypatch.setattr(settings, "EAGER_STOCK_EFFECTS", False)
    product = factory.product(seller)
    factory.stock(product, warehouse, 9)
    order = factory.order(seller, warehouse, [(product, 4, "10")])
    transition_order_status(db, order.id, "confirmed", factory.admin)

    assert worker.run_stock_reconciler() == {"applied": 1, "failed": 0, "skipped": 0}
    assert worker.run_stock_reconciler() == {"applied": 0, "failed": 0, "skipped": 0}

    db.expire_all()
    stock = db.execute(select(ProductStock.stock).where(ProductStock.product_id == product.id)).scalar_one()
    assert stock == 5


def test_relay_job_sends_queued_notifications(factory, seller, warehouse, scoped_sessions, dispatcher, monkeypatch):
    monkeypatch.setattr(settings, "EAGER_NOTIFICATIONS", False)
    product = factory.product(seller)
    factory.stock(product, warehouse, 3)

    assert worker.run_notification_relay() == {"sent": 1, "failed": 0}
    assert [n["type"] for n in dispatcher.delivered] == ["low_stock"]


def test_jobs_are_registered(clean_jobs):
    worker.reload_jobs()
    status = worker.get_status()

    assert status["running"] is False
    assert sorted(j["id"] for j in status["jobs"]) == sorted(
        [worker.JOB_RECONCILE_STOCK, worker.JOB_RELAY_NOTIFICATIONS]
    )

    worker.reload_jobs()
    assert len(worker.get_status()["jobs"]) == 2


def test_stop_without_start_is_harmless():
    worker.stop()
    assert worker.get_status()["running"] is False
