from decimal import Decimal

import pytest

from backoffice.core.exceptions import (
    AuthorizationError,
    BackofficeValidationError,
    IllegalTransitionError,
    NotFoundError,
)
from backoffice.models.base import utc_now
from backoffice.models.user import ROLE_CALL_CENTER, ROLE_SELLER
from backoffice.services.expedition_service import (
    create_expedition,
    get_expedition,
    list_expeditions,
    update_expedition_status,
)


@pytest.fixture
def goods(factory, seller):
    return factory.product(seller, name="Felt boots"), factory.product(seller, name="Shawl")


def test_seller_creates_own_expedition(db, seller, warehouse, goods):
    boots, shawl = goods
    expedition = create_expedition(
        db,
        seller,
        warehouse_id=warehouse.id,
        expedition_date=utc_now(),
        items=[
            {"product_id": boots.id, "quantity": 4, "unit_price": "25.00"},
            {"product_id": shawl.id, "quantity": 2, "unit_price": "10.50"},
        ],
    )
    assert expedition.seller_id == seller.id
    assert expedition.status == "pending"
    assert expedition.expedition_code.startswith("EXP-")
    assert expedition.total_products == 2
    assert expedition.total_quantity == 6
    assert expedition.total_value == Decimal("121.00")
    assert expedition.is_paid is False


def test_creation_rules(db, factory, seller, warehouse, goods):
    boots, _ = goods
    line = [{"product_id": boots.id, "quantity": 1, "unit_price": "1"}]

    with pytest.raises(AuthorizationError):
        create_expedition(db, factory.user(ROLE_CALL_CENTER), seller_id=seller.id, warehouse_id=warehouse.id,
                          expedition_date=utc_now(), items=line)
    with pytest.raises(AuthorizationError) as exc:
        create_expedition(db, factory.user(ROLE_SELLER), seller_id=seller.id, warehouse_id=warehouse.id,
                          expedition_date=utc_now(), items=line)
    assert exc.value.code == "ACCESS_DENIED"
    with pytest.raises(BackofficeValidationError) as exc:
        create_expedition(db, factory.admin, warehouse_id=warehouse.id, expedition_date=utc_now(), items=line)
    assert exc.value.code == "MISSING_FIELDS"
    with pytest.raises(BackofficeValidationError) as exc:
        create_expedition(db, seller, warehouse_id=warehouse.id, expedition_date=utc_now(), items=[])
    assert exc.value.code == "INVALID_ITEMS"
    with pytest.raises(BackofficeValidationError) as exc:
        create_expedition(db, seller, warehouse_id=warehouse.id, expedition_date=utc_now(),
                          items=[{"product_id": boots.id, "quantity": 0}])
    assert exc.value.code == "INVALID_ITEMS"
    with pytest.raises(NotFoundError) as exc:
        create_expedition(db, seller, warehouse_id=404, expedition_date=utc_now(), items=line)
    assert exc.value.code == "WAREHOUSE_NOT_FOUND"

    foreign = factory.product(factory.user(ROLE_SELLER))
    with pytest.raises(BackofficeValidationError) as exc:
        create_expedition(db, seller, warehouse_id=warehouse.id, expedition_date=utc_now(),
                          items=[{"product_id": foreign.id, "quantity": 1}])
    assert exc.value.code == "PRODUCT_NOT_OWNED"


def test_status_workflow(db, factory, seller, warehouse, goods, dispatcher):
    boots, _ = goods
    expedition = factory.expedition(seller, warehouse, [(boots, 3, "20")])

    approved = update_expedition_status(db, factory.admin, expedition.id, status="approved")
    assert approved.approved_by == factory.admin.id
    assert approved.approved_at is not None

    update_expedition_status(db, factory.admin, expedition.id, status="in_transit")
    delivered = update_expedition_status(db, factory.admin, expedition.id, status="delivered", is_paid=True)
    assert delivered.status == "delivered"
    assert delivered.delivered_at is not None
    assert delivered.is_paid is True

    notes = [n for n in dispatcher.delivered if n["type"] == "expedition_status_changed"]
    assert len(notes) == 3
    assert all(n["user_id"] == seller.id for n in notes)

    with pytest.raises(IllegalTransitionError):
        update_expedition_status(db, factory.admin, expedition.id, status="pending")


def test_rejection_and_guards(db, factory, seller, warehouse, goods):
    boots, _ = goods
    expedition = factory.expedition(seller, warehouse, [(boots, 1, "1")])

    with pytest.raises(AuthorizationError):
        update_expedition_status(db, seller, expedition.id, status="approved")
    with pytest.raises(BackofficeValidationError) as exc:
        update_expedition_status(db, factory.admin, expedition.id)
    assert exc.value.code == "MISSING_FIELDS"
    with pytest.raises(IllegalTransitionError):
        update_expedition_status(db, factory.admin, expedition.id, status="delivered")

    rejected = update_expedition_status(
        db, factory.admin, expedition.id, status="rejected", rejected_reason="  damaged on arrival "
    )
    assert rejected.rejected_reason == "damaged on arrival"

    with pytest.raises(NotFoundError):
        update_expedition_status(db, factory.admin, 9999, status="approved")


def test_payment_flag_alone(db, factory, seller, warehouse, goods):
    boots, _ = goods
    expedition = factory.expedition(seller, warehouse, [(boots, 1, "1")], deliver=True)
    paid = update_expedition_status(db, factory.admin, expedition.id, is_paid=True)
    assert paid.is_paid is True
    assert paid.status == "delivered"


def test_reads_scoped_to_seller(db, factory, seller, warehouse, goods):
    boots, _ = goods
    mine = factory.expedition(seller, warehouse, [(boots, 1, "1")])
    other = factory.user(ROLE_SELLER)
    theirs = factory.expedition(other, warehouse, [(factory.product(other), 1, "1")])

    assert get_expedition(db, seller, mine.id).id == mine.id
    with pytest.raises(AuthorizationError):
        get_expedition(db, seller, theirs.id)

    items, total = list_expeditions(db, seller)
    assert total == 1 and items[0].id == mine.id
    _, total = list_expeditions(db, factory.admin, status="pending")
    assert total == 2
