"""
Customer debt view over archived orders.

A debt is a history row settled through a debt channel (``borc``) or left in
``debt`` status, owned by a customer. Partial payments recorded against the
row reduce what is still owed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from restopos.db import atomic
from restopos.errors import ValidationError
from restopos.history import HistoryEntry, HistoryReader
from restopos.models import Customer, OrderHistory, PartialPayment, as_money
from restopos.payments import DEBT_METHODS, collected_for, is_debt_method

logger = logging.getLogger(__name__)

SETTLEMENT_MODES = ("relabel", "collect")


@dataclass
class DebtEntry:
    history: OrderHistory
    partial_paid: Decimal

    @property
    def remaining(self) -> Decimal:
        return as_money(self.history.total) - self.partial_paid


def is_debt():
    return or_(OrderHistory.payment_method.in_(DEBT_METHODS), OrderHistory.payment_status == "debt")


def partial_paid_for_history():
    return collected_for(OrderHistory, PartialPayment.order_history_id)


class DebtLedger:
    def __init__(self, clock, history: HistoryReader, settlement_mode: str = "relabel") -> None:
        if settlement_mode not in SETTLEMENT_MODES:
            raise ValueError(f"unknown debt settlement mode {settlement_mode!r}")
        self.clock = clock
        self.history = history
        self.settlement_mode = settlement_mode

    def get_customers_with_debt(self, db: Session) -> list[dict]:
        debt = func.sum(OrderHistory.total)
        rows = db.execute(
            select(OrderHistory.customer_id, Customer.customer_name, debt.label("debt"))
            .join(Customer, Customer.id == OrderHistory.customer_id)
            .where(is_debt(), OrderHistory.customer_id.is_not(None))
            .group_by(OrderHistory.customer_id, Customer.customer_name)
            .having(debt > 0)
            .order_by(debt.desc())
        ).all()
        return [
            {"customer_id": customer_id, "customer_name": name, "debt": as_money(amount)}
            for customer_id, name, amount in rows
        ]

    def get_customer_debts(self, db: Session, customer_id: int) -> list[DebtEntry]:
        return self._debts(db, customer_id)

    def settle_customer_debts(self, db: Session, customer_id: int, history_ids: list[int], method: str) -> int:
        if not history_ids:
            return 0
        if not method or is_debt_method(method):
            raise ValidationError("debts must be settled with a paying method")
        with atomic(db):
            now = self.clock.now()
            entries = self._debts(db, customer_id, history_ids)
            for entry in entries:
                entry.history.payment_method = method
                entry.history.payment_status = "paid"
                entry.history.paid_at = now
                if self.settlement_mode == "collect":
                    entry.history.paid_amount = as_money(entry.history.total)
        logger.info(
            "settled %s of %s debt rows for customer %s via %s (%s)",
            len(entries),
            len(history_ids),
            customer_id,
            method,
            self.settlement_mode,
        )
        return len(entries)

    def get_customer_order_history(self, db: Session, customer_id: Optional[int] = None) -> list[HistoryEntry]:
        return self.history.get_customer_order_history(db, customer_id)

    def _debts(self, db: Session, customer_id: int, history_ids: Optional[list[int]] = None) -> list[DebtEntry]:
        query = select(OrderHistory, partial_paid_for_history().label("partial_paid")).where(
            OrderHistory.customer_id == customer_id, is_debt()
        )
        if history_ids is not None:
            query = query.where(OrderHistory.id.in_(history_ids))
        rows = db.execute(query.order_by(OrderHistory.created_at.desc(), OrderHistory.id.desc())).all()
        return [DebtEntry(history=row[0], partial_paid=as_money(row[1])) for row in rows]
