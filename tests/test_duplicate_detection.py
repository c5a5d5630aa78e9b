from datetime import timedelta

import pytest
from sqlalchemy import update

from backoffice.models.base import utc_now
from backoffice.models.order import Order
from backoffice.models.user import ROLE_SELLER
from backoffice.services.duplicate_detection import RecentPhoneDuplicateDetector, normalize_phone
from backoffice.services.order_service import get_order_history, transition_order_status


@pytest.fixture
def detector():
    return RecentPhoneDuplicateDetector(window_hours=24)


@pytest.fixture
def products(factory, seller, warehouse):
    tea = factory.product(seller, name="Tea")
    cups = factory.product(seller, name="Cups")
    factory.stock(tea, warehouse, 50)
    factory.stock(cups, warehouse, 50)
    return tea, cups


def test_normalize_phone():
    assert normalize_phone("+7 (701) 000-00-01") == "77010000001"
    assert normalize_phone(None) == ""


def test_same_phone_same_product_is_double(db, factory, seller, warehouse, products, detector):
    tea, _ = products
    first = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 701 000 0001",), detector=detector)
    second = factory.order(seller, warehouse, [(tea, 2, "10")], phones=("87010000001", "+77010000001"), detector=detector)

    assert first.status == "pending"
    assert second.status == "double"
    assert second.is_double is True
    assert second.duplicate_matches == [
        {"order_id": first.id, "order_number": first.order_number, "matched_rule": "same_phone_same_product"}
    ]

    [entry] = get_order_history(db, factory.admin, second.id)
    assert (entry.previous_status, entry.current_status) == ("pending", "double")
    assert entry.automatic_change is True
    assert entry.changed_by is None
    assert entry.changed_by_role == "system"
    assert first.order_number in entry.comment


def test_same_phone_other_product(factory, seller, warehouse, products, detector):
    tea, cups = products
    factory.order(seller, warehouse, [(tea, 1, "10")], detector=detector)
    second = factory.order(seller, warehouse, [(cups, 1, "10")], detector=detector)
    assert second.duplicate_matches[0]["matched_rule"] == "same_phone"


def test_other_phone_or_seller_is_not_double(factory, seller, warehouse, products, detector):
    tea, _ = products
    factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 701 111 1111",), detector=detector)
    other_phone = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 701 222 2222",), detector=detector)
    assert other_phone.status == "pending"

    other_seller = factory.user(ROLE_SELLER)
    their_tea = factory.product(other_seller)
    theirs = factory.order(other_seller, warehouse, [(their_tea, 1, "10")], phones=("+7 701 111 1111",), detector=detector)
    assert theirs.status == "pending"


def test_orders_outside_window_are_ignored(db, factory, seller, warehouse, products, detector):
    tea, _ = products
    old = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 705 555 5555",), detector=detector)
    db.execute(update(Order).where(Order.id == old.id).values(created_at=utc_now() - timedelta(hours=25)))
    db.commit()
    fresh = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 705 555 5555",), detector=detector)
    assert fresh.status == "pending"


def test_cancelled_original_does_not_flag(factory, seller, warehouse, products, detector):
    tea, _ = products
    original = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 777 123 4567",), detector=detector)
    factory.walk(original, "cancelled")
    again = factory.order(seller, warehouse, [(tea, 1, "10")], phones=("+7 777 123 4567",), detector=detector)
    assert again.status == "pending"


def test_default_detector_never_flags(factory, seller, warehouse, products):
    tea, _ = products
    factory.order(seller, warehouse, [(tea, 1, "10")])
    assert factory.order(seller, warehouse, [(tea, 1, "10")]).status == "pending"


def test_double_can_be_confirmed_by_operator(db, factory, seller, warehouse, products, detector):
    tea, _ = products
    factory.order(seller, warehouse, [(tea, 1, "10")], detector=detector)
    double = factory.order(seller, warehouse, [(tea, 3, "10")], detector=detector)

    result = transition_order_status(db, double.id, "confirmed", factory.admin, comment="not a duplicate")
    assert result.order.status == "confirmed"
    assert result.effect_status == "applied"
