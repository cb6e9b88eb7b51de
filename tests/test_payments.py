from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from restopos.errors import ConflictError, NotFoundError, SettlementError, ValidationError
from restopos.models import DiningTable, Order, OrderHistory, OrderHistoryItem, PartialPayment
from restopos.orders import ItemRequest
from restopos.payments import PaymentEngine


def _history_count(db):
    return db.scalar(select(func.count(OrderHistory.id)))


def test_dine_in_order_from_first_item_to_archive(db, pos, seed, clock):
    view = pos.orders.create_order(db, items=[ItemRequest(seed.a, 2)], table_id=seed.t1)
    order_id = view.order.id
    assert view.order.total == Decimal("20.00")
    assert view.order.version == 0

    view = pos.orders.add_items_to_order(db, order_id, [ItemRequest(seed.b, 1)])
    assert view.order.total == Decimal("25.00")
    assert view.order.version == 1

    for status in ("preparing", "ready", "served"):
        view = pos.status.update_status(db, order_id, status, expected_version=view.order.version)
    assert view.order.status == "served"
    assert view.order.version == 4

    clock.advance(minutes=40)
    history_id = pos.payments.process_payment(db, order_id, Decimal("25.00"), "nakit")

    assert db.get(DiningTable, seed.t1).status == "available"
    assert pos.orders.get_order(db, order_id) is None
    history = db.get(OrderHistory, history_id)
    assert _history_count(db) == 1
    assert history.total == Decimal("25.00")
    assert history.paid_amount == Decimal("25.00")
    assert history.payment_method == "nakit"
    assert history.payment_status == "paid"
    assert history.paid_at == clock.now()
    assert history.table_number == "T1"
    items = db.scalars(select(OrderHistoryItem).where(OrderHistoryItem.order_history_id == history_id)).all()
    assert sorted((item.menu_item_id, item.quantity) for item in items) == [(seed.a, 2), (seed.b, 1)]

    with pytest.raises(NotFoundError) as excinfo:
        pos.status.update_status(db, order_id, "paid")
    assert excinfo.value.code == "ORDER_NOT_FOUND"


def test_paying_twice_archives_once(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    pos.payments.process_payment(db, order_id, Decimal("10.00"), "kredi-karti")

    with pytest.raises(NotFoundError) as excinfo:
        pos.payments.process_payment(db, order_id, Decimal("10.00"), "kredi-karti")

    assert excinfo.value.code == "ORDER_NOT_FOUND"
    assert _history_count(db) == 1


@pytest.mark.parametrize("method", ["borc", "debt"])
def test_debt_payment_needs_a_customer(db, pos, seed, method):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id

    with pytest.raises(ValidationError):
        pos.payments.process_payment(db, order_id, Decimal("10.00"), method)

    assert pos.orders.get_order(db, order_id).order.payment_status == "unpaid"
    assert _history_count(db) == 0


def test_debt_payment_picks_up_the_order_customer(db, pos, seed):
    order_id = pos.orders.create_order(
        db, items=[ItemRequest(seed.a, 1)], order_type="delivery", customer_id=seed.customer
    ).order.id

    history_id = pos.payments.process_payment(db, order_id, Decimal("10.00"), "borc")

    history = db.get(OrderHistory, history_id)
    assert history.payment_status == "debt"
    assert history.customer_id == seed.customer


def test_payment_validation(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id

    with pytest.raises(ValidationError):
        pos.payments.process_payment(db, order_id, Decimal("10.00"), "")
    with pytest.raises(ValidationError):
        pos.payments.process_payment(db, order_id, Decimal("-1"), "nakit")


def test_split_payment_is_tracked_and_moves_to_history(db, pos, seed):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1), ItemRequest(seed.b, 1)], table_id=seed.t1).order.id

    progress = pos.payments.add_partial_payment(db, order_id, "cash", Decimal("5"))
    assert progress.paid == Decimal("5.00")
    assert progress.remaining == Decimal("10.00")

    with pytest.raises(ConflictError) as excinfo:
        pos.payments.add_partial_payment(db, order_id, "ticket", Decimal("10.01"))
    assert excinfo.value.code == "PAYMENT_EXCEEDS_TOTAL"

    with pytest.raises(ConflictError) as excinfo:
        pos.payments.process_payment(db, order_id, Decimal("15.00"), "partial-payment")
    assert excinfo.value.code == "PAYMENT_INCOMPLETE"
    assert pos.orders.get_order(db, order_id) is not None

    progress = pos.payments.add_partial_payment(db, order_id, "ticket", Decimal("10"))
    assert progress.remaining == Decimal("0.00")
    assert (progress.cash, progress.credit_kart, progress.ticket) == (
        Decimal("5.00"),
        Decimal("0.00"),
        Decimal("10.00"),
    )

    history_id = pos.payments.process_payment(db, order_id, Decimal("15.00"), "partial-payment")

    partials = db.scalars(select(PartialPayment).order_by(PartialPayment.id)).all()
    assert len(partials) == 2
    assert all(p.order_id is None and p.order_history_id == history_id for p in partials)
    entry = pos.history.list_past_orders(db)[0]
    assert entry.history.id == history_id
    assert len(entry.partial_payments) == 2


@pytest.mark.parametrize(
    "channel,amount",
    [("wire", Decimal("1")), ("cash", Decimal("0")), ("cash", Decimal("-3"))],
)
def test_partial_payment_validation(db, pos, seed, channel, amount):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    with pytest.raises(ValidationError):
        pos.payments.add_partial_payment(db, order_id, channel, amount)


def test_failed_archive_leaves_the_order_unpaid(db, pos, seed, monkeypatch):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id

    def broken_archive(self, db, order_id):
        raise OperationalError("INSERT INTO order_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(PaymentEngine, "_archive", broken_archive)

    with pytest.raises(SettlementError) as excinfo:
        pos.payments.process_payment(db, order_id, Decimal("10.00"), "nakit")

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503
    order = db.get(Order, order_id, populate_existing=True)
    assert order.payment_status == "unpaid"
    assert order.paid_at is None
    assert order.version == 0
    assert db.get(DiningTable, seed.t1, populate_existing=True).status == "occupied"
    assert _history_count(db) == 0


def test_retry_after_failed_archive_succeeds(db, pos, seed, monkeypatch):
    order_id = pos.orders.create_order(db, items=[ItemRequest(seed.a, 1)], table_id=seed.t1).order.id
    original = PaymentEngine._archive

    def broken_archive(self, db, order_id):
        raise OperationalError("INSERT INTO order_history", {}, Exception("database is locked"))

    monkeypatch.setattr(PaymentEngine, "_archive", broken_archive)
    with pytest.raises(SettlementError):
        pos.payments.process_payment(db, order_id, Decimal("10.00"), "nakit")

    monkeypatch.setattr(PaymentEngine, "_archive", original)
    history_id = pos.payments.process_payment(db, order_id, Decimal("10.00"), "nakit")

    assert db.get(OrderHistory, history_id).paid_amount == Decimal("10.00")
    assert _history_count(db) == 1


def test_record_partial_payment_against_history(db, pos, seed):
    order_id = pos.orders.create_order(
        db, items=[ItemRequest(seed.a, 3)], order_type="delivery", customer_id=seed.customer
    ).order.id
    history_id = pos.payments.process_payment(db, order_id, Decimal("30.00"), "borc")

    partial_id = pos.payments.record_partial_payment(db, history_id, cash=Decimal("10"), ticket=Decimal("2.5"))

    partial = db.get(PartialPayment, partial_id)
    assert partial.order_history_id == history_id
    assert partial.order_id is None
    assert (partial.cash, partial.credit_kart, partial.ticket) == (
        Decimal("10.00"),
        Decimal("0.00"),
        Decimal("2.50"),
    )


def test_record_partial_payment_for_unknown_history(db, pos, seed):
    with pytest.raises(NotFoundError) as excinfo:
        pos.payments.record_partial_payment(db, 999, cash=Decimal("1"))
    assert excinfo.value.code == "HISTORY_NOT_FOUND"
