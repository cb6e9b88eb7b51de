"""
Live order access: creation, line items, totals and table coupling.

Every write to an ``orders`` row goes through :meth:`OrderRepository.apply_patch`,
a compare-and-swap UPDATE keyed on ``version``.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from restopos.db import atomic
from restopos.errors import (
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
    order_not_found,
    version_conflict,
)
from restopos.models import (
    ORDER_TYPES,
    DiningTable,
    MenuItem,
    Order,
    OrderItem,
    PartialPayment,
    as_money,
)

logger = logging.getLogger(__name__)

LOCKED_STATUSES = ("ready", "served", "paid")
CLOSED_STATUSES = ("served", "paid")


@dataclass
class ItemRequest:
    menu_item_id: int
    quantity: int
    notes: Optional[str] = None


@dataclass
class OrderWithItems:
    order: Order
    items: list[OrderItem]


@dataclass
class OrderPatch:
    """Columns a single order UPDATE may set. ``None`` leaves a column unchanged."""

    status: Optional[str] = None
    payment_status: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    customer_id: Optional[int] = None
    total: Optional[Decimal] = None

    def values(self) -> dict[str, Any]:
        return {
            field.name: getattr(self, field.name)
            for field in fields(self)
            if getattr(self, field.name) is not None
        }


class OrderRepository:
    def __init__(self, clock) -> None:
        self.clock = clock

    def get_order(self, db: Session, order_id: int) -> Optional[OrderWithItems]:
        order = db.get(Order, order_id, populate_existing=True)
        if order is None:
            return None
        return OrderWithItems(order=order, items=self._items_for(db, order_id))

    def require_order(self, db: Session, order_id: int) -> Order:
        order = db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise order_not_found(order_id)
        return order

    def get_open_order_for_table(self, db: Session, table_id: int) -> Optional[OrderWithItems]:
        order_id = db.scalar(
            select(Order.id)
            .where(Order.table_id == table_id, Order.status.not_in(CLOSED_STATUSES))
            .order_by(Order.id.desc())
            .limit(1)
        )
        if order_id is None:
            return None
        return self.get_order(db, order_id)

    def list_active_orders(self, db: Session) -> list[OrderWithItems]:
        orders = list(
            db.scalars(
                select(Order)
                .where(Order.status.not_in(CLOSED_STATUSES))
                .order_by(Order.created_at, Order.id)
            )
        )
        items_by_order: dict[int, list[OrderItem]] = {order.id: [] for order in orders}
        if orders:
            rows = db.scalars(
                select(OrderItem)
                .where(OrderItem.order_id.in_(list(items_by_order)))
                .order_by(OrderItem.id)
            )
            for item in rows:
                items_by_order[item.order_id].append(item)
        return [OrderWithItems(order=order, items=items_by_order[order.id]) for order in orders]

    def create_order(
        self,
        db: Session,
        items: list[ItemRequest],
        order_type: Optional[str] = None,
        table_id: Optional[int] = None,
        customer_id: Optional[int] = None,
        customer_name: Optional[str] = None,
        is_paid: bool = False,
        payment_method: Optional[str] = None,
    ) -> OrderWithItems:
        order_type = order_type or ("dine-in" if table_id is not None else "takeaway")
        if order_type not in ORDER_TYPES:
            raise ValidationError(f"unknown order type {order_type!r}")
        if order_type == "dine-in" and table_id is None:
            raise ValidationError("dine-in orders need a table")
        if not items:
            raise ValidationError("items required")
        if any(item.quantity <= 0 for item in items):
            raise ValidationError("quantity must be positive for each item")

        with atomic(db):
            table = None
            if table_id is not None:
                table = db.get(DiningTable, table_id)
                if table is None:
                    raise NotFoundError(f"table {table_id} not found", code="TABLE_NOT_FOUND")
            priced = [(item, self._current_price(db, item.menu_item_id)) for item in items]
            total = as_money(sum((price * item.quantity for item, price in priced), Decimal("0")))
            now = self.clock.now()
            order = Order(
                table_id=table_id,
                table_number=table.number if table is not None else None,
                order_type=order_type,
                customer_id=customer_id,
                customer_name=customer_name,
                # takeaway has no kitchen workflow
                status="served" if order_type == "takeaway" else "pending",
                payment_status="unpaid",
                total=total,
                version=0,
                created_at=now,
                updated_at=now,
            )
            if is_paid and payment_method:
                order.payment_status = "paid"
                order.paid_at = now
                order.payment_method = payment_method
                order.paid_amount = total
            db.add(order)
            db.flush()
            if order.id is None:
                raise ServerError("order id could not be resolved", code="ORDER_CREATE_FAILED")
            order_id = order.id
            for item, price in priced:
                db.add(
                    OrderItem(
                        order_id=order_id,
                        menu_item_id=item.menu_item_id,
                        quantity=item.quantity,
                        price=price,
                        notes=item.notes,
                        created_at=now,
                    )
                )
            if table is not None:
                table.status = "occupied"
        logger.info("order %s created (%s, table=%s, total=%s)", order_id, order_type, table_id, total)
        return self.get_order(db, order_id)

    def add_items_to_order(self, db: Session, order_id: int, items: list[ItemRequest]) -> OrderWithItems:
        with atomic(db):
            order = self.require_order(db, order_id)
            if order.status in LOCKED_STATUSES:
                raise ConflictError(
                    f"order {order_id} is {order.status} and no longer accepts items",
                    code="ORDER_LOCKED",
                )
            now = self.clock.now()
            for item in items:
                if item.quantity <= 0:
                    continue
                db.add(
                    OrderItem(
                        order_id=order_id,
                        menu_item_id=item.menu_item_id,
                        quantity=item.quantity,
                        price=self._current_price(db, item.menu_item_id),
                        notes=item.notes,
                        created_at=now,
                    )
                )
            db.flush()
            self.recalculate_total(db, order)
        return self.get_order(db, order_id)

    def recalculate_total(self, db: Session, order: Order) -> Decimal:
        total = as_money(
            db.scalar(
                select(func.coalesce(func.sum(OrderItem.quantity * OrderItem.price), 0)).where(
                    OrderItem.order_id == order.id
                )
            )
        )
        if not self.apply_patch(db, order.id, OrderPatch(total=total), order.version):
            raise version_conflict(order.id)
        return total

    def apply_patch(self, db: Session, order_id: int, patch: OrderPatch, expected_version: int) -> bool:
        """Write ``patch`` only if the stored version still equals ``expected_version``.

        Returns False when another writer got there first; the caller decides
        whether that is a conflict.
        """
        db.flush()
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(**patch.values(), updated_at=self.clock.now(), version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete_order(self, db: Session, order_id: int) -> bool:
        with atomic(db):
            order = self.require_order(db, order_id)
            collected = db.scalar(
                select(func.count(PartialPayment.id)).where(PartialPayment.order_id == order_id)
            )
            if collected:
                raise ConflictError(
                    f"order {order_id} already has partial payments recorded",
                    code="ORDER_HAS_PAYMENTS",
                )
            table_id = order.table_id
            was_paid = order.payment_status == "paid"
            db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
            result = db.execute(delete(Order).where(Order.id == order_id))
            if table_id is not None and not was_paid:
                self.set_table_status(db, table_id, "available")
        logger.info("order %s deleted", order_id)
        return result.rowcount > 0

    def set_table_status(self, db: Session, table_id: int, status: str) -> None:
        db.execute(
            update(DiningTable)
            .where(DiningTable.id == table_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )

    def _current_price(self, db: Session, menu_item_id: int) -> Decimal:
        price = db.scalar(
            select(MenuItem.price).where(
                MenuItem.id == menu_item_id,
                MenuItem.available.is_(True),
                MenuItem.is_active.is_(True),
            )
        )
        if price is None:
            raise ConflictError(
                f"menu item {menu_item_id} is not available", code="MENU_ITEM_UNAVAILABLE"
            )
        return as_money(price)

    def _items_for(self, db: Session, order_id: int) -> list[OrderItem]:
        return list(
            db.scalars(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id))
        )
