from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from restopos.errors import ValidationError
from restopos.models import (
    Customer,
    MenuItem,
    OrderHistory,
    OrderHistoryItem,
    PartialPayment,
    as_money,
)

SALES_ORDERINGS = ("revenue", "quantity")


@dataclass
class HistoryEntry:
    history: OrderHistory
    items: list[OrderHistoryItem] = field(default_factory=list)
    partial_payments: list[PartialPayment] = field(default_factory=list)
    customer_name: Optional[str] = None


def settled_first():
    return func.coalesce(OrderHistory.paid_at, OrderHistory.created_at).desc()


class HistoryReader:
    def list_past_orders(self, db: Session) -> list[HistoryEntry]:
        rows = db.scalars(select(OrderHistory).order_by(settled_first(), OrderHistory.id.desc()))
        return self._attach(db, [HistoryEntry(history=row) for row in rows])

    def get_customer_order_history(self, db: Session, customer_id: Optional[int] = None) -> list[HistoryEntry]:
        query = (
            select(OrderHistory, Customer.customer_name)
            .outerjoin(Customer, Customer.id == OrderHistory.customer_id)
            .where(OrderHistory.customer_id.is_not(None))
        )
        if customer_id is not None:
            query = query.where(OrderHistory.customer_id == customer_id)
        rows = db.execute(query.order_by(settled_first(), OrderHistory.id.desc())).all()
        return self._attach(db, [HistoryEntry(history=row[0], customer_name=row[1]) for row in rows])

    def get_product_sales(
        self,
        db: Session,
        start: Optional[date] = None,
        end: Optional[date] = None,
        order_by: str = "revenue",
    ) -> list[dict]:
        if order_by not in SALES_ORDERINGS:
            raise ValidationError(f"order_by must be one of {', '.join(SALES_ORDERINGS)}")
        total_quantity = func.sum(OrderHistoryItem.quantity).label("total_quantity")
        total_revenue = func.sum(OrderHistoryItem.quantity * OrderHistoryItem.price).label("total_revenue")
        query = (
            select(MenuItem.id, MenuItem.name, total_quantity, total_revenue)
            .select_from(OrderHistoryItem)
            .join(OrderHistory, OrderHistory.id == OrderHistoryItem.order_history_id)
            .join(MenuItem, MenuItem.id == OrderHistoryItem.menu_item_id)
            .group_by(MenuItem.id, MenuItem.name)
        )
        if start is not None:
            query = query.where(OrderHistory.created_at >= datetime.combine(start, time.min))
        if end is not None:
            query = query.where(OrderHistory.created_at <= datetime.combine(end, time(23, 59, 59)))
        ordering = total_revenue if order_by == "revenue" else total_quantity
        rows = db.execute(query.order_by(ordering.desc(), MenuItem.id)).all()
        sales = []
        for menu_item_id, name, quantity, revenue in rows:
            quantity = int(quantity or 0)
            revenue = as_money(revenue)
            sales.append(
                {
                    "menu_item_id": menu_item_id,
                    "name": name,
                    "total_quantity": quantity,
                    "total_revenue": revenue,
                    "avg_price": as_money(revenue / quantity) if quantity else as_money(0),
                }
            )
        return sales

    def _attach(self, db: Session, entries: list[HistoryEntry]) -> list[HistoryEntry]:
        if not entries:
            return entries
        by_id = {entry.history.id: entry for entry in entries}
        items = db.scalars(
            select(OrderHistoryItem)
            .where(OrderHistoryItem.order_history_id.in_(list(by_id)))
            .order_by(OrderHistoryItem.id)
        )
        for item in items:
            by_id[item.order_history_id].items.append(item)
        partials = db.scalars(
            select(PartialPayment)
            .where(PartialPayment.order_history_id.in_(list(by_id)))
            .order_by(PartialPayment.id)
        )
        for partial in partials:
            by_id[partial.order_history_id].partial_payments.append(partial)
        return entries
