from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from restopos.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(12, 2)
CENT = Decimal("0.01")

ORDER_TYPES = ("dine-in", "takeaway", "delivery", "trendyol")
ORDER_STATUSES = ("pending", "preparing", "ready", "served", "paid")
PAYMENT_STATUSES = ("unpaid", "paid", "debt")
TABLE_STATUSES = ("available", "occupied", "reserved", "cleaning")


class DiningTable(Base):
    __tablename__ = "dining_table"
    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'occupied', 'reserved', 'cleaning')",
            name="dining_table_status",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="available")


class MenuItem(Base):
    __tablename__ = "menu_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Customer(Base):
    __tablename__ = "customer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    telephone_number: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime | None] = mapped_column(DateTime)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'preparing', 'ready', 'served', 'paid')",
            name="orders_status",
        ),
        Index("ix_orders_table_status", "table_id", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    table_id: Mapped[int | None] = mapped_column(ID_TYPE, ForeignKey("dining_table.id"))
    table_number: Mapped[str | None] = mapped_column(Text)
    order_type: Mapped[str] = mapped_column(Text, nullable=False, default="dine-in")
    customer_id: Mapped[int | None] = mapped_column(ID_TYPE, ForeignKey("customer.id"))
    customer_name: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="unpaid")
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    payment_method: Mapped[str | None] = mapped_column(Text)
    paid_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_item"
    __table_args__ = (CheckConstraint("quantity > 0", name="order_item_quantity_positive"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("orders.id"), nullable=False, index=True
    )
    menu_item_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("menu_item.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class OrderHistory(Base):
    __tablename__ = "order_history"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_type: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[int | None] = mapped_column(
        ID_TYPE, ForeignKey("customer.id"), index=True
    )
    table_number: Mapped[str | None] = mapped_column(Text)
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_status: Mapped[str] = mapped_column(Text, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    payment_method: Mapped[str | None] = mapped_column(Text)
    paid_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class OrderHistoryItem(Base):
    __tablename__ = "order_history_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_history_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("order_history.id"), nullable=False, index=True
    )
    menu_item_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("menu_item.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)


class PartialPayment(Base):
    __tablename__ = "partial_payment"
    __table_args__ = (
        CheckConstraint(
            "(order_id IS NULL) <> (order_history_id IS NULL)",
            name="partial_payment_single_owner",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int | None] = mapped_column(
        ID_TYPE, ForeignKey("orders.id"), index=True
    )
    order_history_id: Mapped[int | None] = mapped_column(
        ID_TYPE, ForeignKey("order_history.id"), index=True
    )
    cash: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    credit_kart: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    ticket: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CashSession(Base):
    __tablename__ = "cash_session"
    __table_args__ = (
        Index(
            "uq_cash_session_open",
            "is_open",
            unique=True,
            postgresql_where=text("is_open"),
            sqlite_where=text("is_open"),
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime)
    is_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    opening_user: Mapped[str | None] = mapped_column(Text)
    closing_user: Mapped[str | None] = mapped_column(Text)
    opening_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    cash_total: Mapped[Decimal | None] = mapped_column(MONEY)
    card_total: Mapped[Decimal | None] = mapped_column(MONEY)
    ticket_total: Mapped[Decimal | None] = mapped_column(MONEY)
    real_cash_counted: Mapped[Decimal | None] = mapped_column(MONEY)
    difference: Mapped[Decimal | None] = mapped_column(MONEY)


def as_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)
