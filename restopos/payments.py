"""
Payment settlement: marks a live order paid (or owed), archives it into
``order_history`` and frees its table, all inside one transaction.

Split payments are persisted one contribution at a time against the live
order, so a dropped client loses at most the contribution in flight. On
archival the contributions are re-pointed at the new history row.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from restopos.db import atomic
from restopos.errors import (
    ConflictError,
    NotFoundError,
    PosError,
    SettlementError,
    ValidationError,
    version_conflict,
)
from restopos.models import (
    Order,
    OrderHistory,
    OrderHistoryItem,
    OrderItem,
    PartialPayment,
    as_money,
)
from restopos.orders import OrderPatch, OrderRepository

logger = logging.getLogger(__name__)

DEBT_METHODS = ("borc", "debt")
PARTIAL_METHOD = "partial-payment"
PARTIAL_CHANNELS = ("cash", "credit_kart", "ticket")


def is_debt_method(method: Optional[str]) -> bool:
    return method in DEBT_METHODS


def collected_for(model, owner):
    """Correlated sum of the split contributions owned by a row of ``model``."""
    return (
        select(
            func.coalesce(
                func.sum(PartialPayment.cash + PartialPayment.credit_kart + PartialPayment.ticket), 0
            )
        )
        .where(owner == model.id)
        .correlate(model)
        .scalar_subquery()
    )


@dataclass
class PartialProgress:
    order_id: int
    total: Decimal
    cash: Decimal = Decimal("0.00")
    credit_kart: Decimal = Decimal("0.00")
    ticket: Decimal = Decimal("0.00")
    payments: list[PartialPayment] = field(default_factory=list)

    @property
    def paid(self) -> Decimal:
        return self.cash + self.credit_kart + self.ticket

    @property
    def remaining(self) -> Decimal:
        return self.total - self.paid


class PaymentEngine:
    def __init__(self, orders: OrderRepository, clock) -> None:
        self.orders = orders
        self.clock = clock

    def process_payment(
        self,
        db: Session,
        order_id: int,
        amount,
        method: str,
        customer_id: Optional[int] = None,
    ) -> int:
        try:
            order = self.orders.require_order(db, order_id)
            if not method:
                raise ValidationError("payment method required")
            amount = as_money(amount)
            if amount < 0:
                raise ValidationError("payment amount cannot be negative")
            customer_id = customer_id if customer_id is not None else order.customer_id
            if is_debt_method(method) and customer_id is None:
                raise ValidationError("a debt payment needs a customer")
            if method == PARTIAL_METHOD:
                progress = self._progress(db, order)
                if progress.payments and progress.paid < order.total:
                    raise ConflictError(
                        f"order {order_id} has {progress.paid} of {order.total} collected",
                        code="PAYMENT_INCOMPLETE",
                    )
            patch = OrderPatch(
                payment_status="debt" if is_debt_method(method) else "paid",
                paid_at=self.clock.now(),
                payment_method=method,
                paid_amount=amount,
                customer_id=customer_id,
            )
            if not self.orders.apply_patch(db, order_id, patch, order.version):
                raise version_conflict(order_id)
            if order.table_id is not None:
                self.orders.set_table_status(db, order.table_id, "available")
            history_id = self._archive(db, order_id)
            db.commit()
        except PosError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("settlement of order %s failed and was rolled back", order_id)
            raise SettlementError(
                f"payment for order {order_id} was not recorded; retry the request"
            ) from exc
        logger.info(
            "order %s settled via %s for %s, archived as history %s",
            order_id,
            method,
            amount,
            history_id,
        )
        return history_id

    def _archive(self, db: Session, order_id: int) -> int:
        order = db.get(Order, order_id, populate_existing=True)
        items = list(
            db.scalars(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id))
        )
        history = OrderHistory(
            order_type=order.order_type,
            customer_id=order.customer_id,
            table_number=order.table_number,
            total=order.total,
            payment_status=order.payment_status,
            paid_at=order.paid_at,
            payment_method=order.payment_method,
            paid_amount=order.paid_amount,
            created_at=order.created_at,
        )
        db.add(history)
        db.flush()
        for item in items:
            db.add(
                OrderHistoryItem(
                    order_history_id=history.id,
                    menu_item_id=item.menu_item_id,
                    quantity=item.quantity,
                    price=item.price,
                    notes=item.notes,
                )
            )
        db.flush()
        db.execute(
            update(PartialPayment)
            .where(PartialPayment.order_id == order_id)
            .values(order_id=None, order_history_id=history.id)
            .execution_options(synchronize_session=False)
        )
        db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        db.execute(delete(Order).where(Order.id == order_id))
        return history.id

    def add_partial_payment(self, db: Session, order_id: int, channel: str, amount) -> PartialProgress:
        if channel not in PARTIAL_CHANNELS:
            raise ValidationError(f"unknown payment channel {channel!r}")
        amount = as_money(amount)
        if amount <= 0:
            raise ValidationError("partial payment amount must be positive")
        with atomic(db):
            order = self.orders.require_order(db, order_id)
            progress = self._progress(db, order)
            if progress.paid + amount > order.total:
                raise ConflictError(
                    f"{amount} exceeds the {progress.remaining} left on order {order_id}",
                    code="PAYMENT_EXCEEDS_TOTAL",
                )
            db.add(PartialPayment(order_id=order_id, created_at=self.clock.now(), **{channel: amount}))
        logger.info("order %s partial payment %s via %s", order_id, amount, channel)
        return self.get_partial_progress(db, order_id)

    def get_partial_progress(self, db: Session, order_id: int) -> PartialProgress:
        return self._progress(db, self.orders.require_order(db, order_id))

    def record_partial_payment(self, db: Session, history_id: int, cash=0, credit_kart=0, ticket=0) -> int:
        amounts = {
            "cash": as_money(cash),
            "credit_kart": as_money(credit_kart),
            "ticket": as_money(ticket),
        }
        if any(value < 0 for value in amounts.values()):
            raise ValidationError("partial payment amounts cannot be negative")
        with atomic(db):
            if db.get(OrderHistory, history_id) is None:
                raise NotFoundError(f"order history {history_id} not found", code="HISTORY_NOT_FOUND")
            partial = PartialPayment(order_history_id=history_id, created_at=self.clock.now(), **amounts)
            db.add(partial)
            db.flush()
            partial_id = partial.id
        return partial_id

    def _progress(self, db: Session, order: Order) -> PartialProgress:
        payments = list(
            db.scalars(
                select(PartialPayment)
                .where(PartialPayment.order_id == order.id)
                .order_by(PartialPayment.id)
            )
        )
        return PartialProgress(
            order_id=order.id,
            total=as_money(order.total),
            cash=as_money(sum((p.cash for p in payments), Decimal("0"))),
            credit_kart=as_money(sum((p.credit_kart for p in payments), Decimal("0"))),
            ticket=as_money(sum((p.ticket for p in payments), Decimal("0"))),
            payments=payments,
        )
