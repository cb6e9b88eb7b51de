from decimal import Decimal

import pytest
from sqlalchemy import func, select

from restopos.errors import ConflictError, NotFoundError, ValidationError
from restopos.models import DiningTable, MenuItem, Order, OrderItem
from restopos.orders import ItemRequest


def _set_status(db, order_id, status):
    order = db.get(Order, order_id)
    order.status = status
    db.commit()


def test_create_dine_in_order_occupies_table(db, pos, seed):
    view = pos.orders.create_order(db, items=[ItemRequest(seed.a, 2)], table_id=seed.t1)

    assert view.order.order_type == "dine-in"
    assert view.order.status == "pending"
    assert view.order.payment_status == "unpaid"
    assert view.order.total == Decimal("20.00")
    assert view.order.version == 0
    assert view.order.table_number == "T1"
    assert [(item.menu_item_id, item.quantity, item.price) for item in view.items] == [
        (seed.a, 2, Decimal("10.00"))
    ]
    assert db.get(DiningTable, seed.t1).status == "occupied"


def test_takeaway_order_skips_kitchen_workflow(db, pos, seed):
    view = pos.orders.create_order(db, items=[ItemRequest(seed.b, 1)])

    assert view.order.order_type == "takeaway"
    assert view.order.status == "served"
    assert view.order.table_id is None


def test_create_order_marked_paid_at_the_counter(db, pos, seed, clock):
    view = pos.orders.create_order(
        db,
        items=[ItemRequest(seed.a, 1), ItemRequest(seed.b, 2)],
        order_type="takeaway",
        is_paid=True,
        payment_method="nakit",
    )

    assert view.order.payment_status == "paid"
    assert view.order.payment_method == "nakit"
    assert view.order.paid_amount == Decimal("20.00")
    assert view.order.paid_at == clock.now()


def test_create_order_with_unavailable_item_writes_nothing(db, pos, seed):
    with pytest.raises(ConflictError) as excinfo:
        pos.orders.create_order(
            db, items=[ItemRequest(seed.a, 1), ItemRequest(seed.unavailable, 1)], table_id=seed.t1
        )

    assert excinfo.value.code == "MENU_ITEM_UNAVAILABLE"
    assert db.scalar(select(func.count(Order.id))) == 0
    assert db.get(DiningTable, seed.t1).status == "available"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"items": [], "order_type": "takeaway"},
        {"items": [ItemRequest(1, 0)], "order_type": "takeaway"},
        {"items": [ItemRequest(1, 1)], "order_type": "dine-in"},
        {"items": [ItemRequest(1, 1)], "order_type": "drive-thru"},
    ],
)
def test_create_order_validation(db, pos, seed, kwargs):
    with pytest.raises(ValidationError):
        pos.orders.create_order(db, **kwargs)


def test_create_order_for_unknown_table(db, pos, seed):
    with pytest.raises(NotFoundError) as excinfo:
        pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=999)
    assert excinfo.value.code == "TABLE_NOT_FOUND"


def test_add_items_recomputes_total_and_bumps_version(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 2)], table_id=seed.t1).order.id

    view = pos.orders.add_items_to_order(
        db, order_id, [ItemRequest(seed.b, 1, notes="cold"), ItemRequest(seed.a, 0)]
    )

    assert view.order.total == Decimal("25.00")
    assert view.order.version == 1
    assert len(view.items) == 2
    assert view.items[-1].notes == "cold"
    assert view.order.total == sum(item.quantity * item.price for item in view.items)


def test_item_price_is_a_snapshot(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    db.get(MenuItem, seed.a).price = Decimal("12.00")
    db.commit()

    view = pos.orders.add_items_to_order(db, order_id, [ItemRequest(seed.a, 1)])

    assert [item.price for item in view.items] == [Decimal("10.00"), Decimal("12.00")]
    assert view.order.total == Decimal("22.00")


@pytest.mark.parametrize("status", ["ready", "served", "paid"])
def test_add_items_is_locked_once_the_kitchen_is_done(db, pos, seed, status):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    _set_status(db, order_id, status)

    with pytest.raises(ConflictError) as excinfo:
        pos.orders.add_items_to_order(db, order_id, [ItemRequest(seed.b, 1)])

    assert excinfo.value.code == "ORDER_LOCKED"
    assert db.scalar(select(func.count(OrderItem.id)).where(OrderItem.order_id == order_id)) == 1


@pytest.mark.parametrize("status", ["pending", "preparing"])
def test_add_items_allowed_while_in_the_kitchen(db, pos, seed, status):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    _set_status(db, order_id, status)

    view = pos.orders.add_items_to_order(db, order_id, [ItemRequest(seed.b, 1)])

    assert view.order.total == Decimal("15.00")


def test_add_unavailable_item_rolls_back_the_whole_call(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id

    with pytest.raises(ConflictError) as excinfo:
        pos.orders.add_items_to_order(db, order_id, [ItemRequest(seed.b, 1), ItemRequest(seed.unavailable, 1)])

    assert excinfo.value.code == "MENU_ITEM_UNAVAILABLE"
    view = pos.orders.get_order(db, order_id)
    assert len(view.items) == 1
    assert view.order.version == 0


def test_add_items_to_missing_order(db, pos, seed):
    with pytest.raises(NotFoundError) as excinfo:
        pos.orders.add_items_to_order(db, 404, [ItemRequest(seed.a, 1)])
    assert excinfo.value.code == "ORDER_NOT_FOUND"


def test_open_order_for_table_and_active_list(db, pos, seed, clock):
    first = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    clock.advance(minutes=5)
    second = pos.orders.create_order(db, items=[ItemRequest(seed.b, 1)], table_id=seed.t2).order.id
    clock.advance(minutes=5)
    pos.orders.create_order(db, items=[ItemRequest(seed.b, 1)])

    assert pos.orders.get_open_order_for_table(db, seed.t1).order.id == first
    assert [view.order.id for view in pos.orders.list_active_orders(db)] == [first, second]

    _set_status(db, first, "served")
    assert pos.orders.get_open_order_for_table(db, seed.t1) is None


def test_delete_order_frees_the_table(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id

    assert pos.orders.delete_order(db, order_id) is True

    assert pos.orders.get_order(db, order_id) is None
    assert db.scalar(select(func.count(OrderItem.id))) == 0
    assert db.get(DiningTable, seed.t1).status == "available"


def test_delete_missing_order(db, pos, seed):
    with pytest.raises(NotFoundError):
        pos.orders.delete_order(db, 12345)


def test_delete_order_with_collected_money_is_refused(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 2)], table_id=seed.t1).order.id
    pos.payments.add_partial_payment(db, order_id, "cash", Decimal("5"))

    with pytest.raises(ConflictError) as excinfo:
        pos.orders.delete_order(db, order_id)

    assert excinfo.value.code == "ORDER_HAS_PAYMENTS"
    assert pos.orders.get_order(db, order_id) is not None
