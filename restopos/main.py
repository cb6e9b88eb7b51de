from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from restopos.clock import format_local
from restopos.config import settings
from restopos.db import Base, engine, get_db
from restopos.errors import PosError, order_not_found
from restopos.history import HistoryEntry
from restopos.models import CashSession, OrderItem, PartialPayment
from restopos.orders import ItemRequest, OrderWithItems
from restopos.payments import PartialProgress
from restopos.services import PosServices, build_services

logger = logging.getLogger(__name__)

services = build_services(settings)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    if settings.create_schema:
        Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Restopos", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_services() -> PosServices:
    return services


def _error(status_code: int, code: str, message: str, retryable: bool = False) -> JSONResponse:
    error = {"code": code, "message": message}
    if retryable:
        error["retryable"] = True
    return JSONResponse(status_code=status_code, content={"error": error})


@app.exception_handler(PosError)
async def handle_pos_error(_: Request, exc: PosError) -> JSONResponse:
    return _error(exc.status_code, exc.code, exc.message, exc.retryable)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return _error(400, "VALIDATION_ERROR", message)


@app.exception_handler(SQLAlchemyError)
async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("storage failure on %s %s", request.method, request.url.path)
    return _error(500, "SERVER_ERROR", "storage failure")


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _item_data(item: OrderItem) -> dict:
    return {
        "order_item_id": item.id,
        "menu_item_id": item.menu_item_id,
        "quantity": item.quantity,
        "price": _money(item.price),
        "notes": item.notes,
        "created_at": format_local(item.created_at),
    }


def _order_data(view: OrderWithItems) -> dict:
    order = view.order
    return {
        "order_id": order.id,
        "table_id": order.table_id,
        "table_number": order.table_number,
        "order_type": order.order_type,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "status": order.status,
        "payment_status": order.payment_status,
        "paid_at": format_local(order.paid_at),
        "payment_method": order.payment_method,
        "paid_amount": _money(order.paid_amount),
        "total": _money(order.total),
        "version": order.version,
        "created_at": format_local(order.created_at),
        "updated_at": format_local(order.updated_at),
        "items": [_item_data(item) for item in view.items],
    }


def _partial_data(partial: PartialPayment) -> dict:
    return {
        "partial_payment_id": partial.id,
        "cash": _money(partial.cash),
        "credit_kart": _money(partial.credit_kart),
        "ticket": _money(partial.ticket),
        "created_at": format_local(partial.created_at),
    }


def _progress_data(progress: PartialProgress) -> dict:
    return {
        "order_id": progress.order_id,
        "total": _money(progress.total),
        "paid": _money(progress.paid),
        "remaining": _money(progress.remaining),
        "cash": _money(progress.cash),
        "credit_kart": _money(progress.credit_kart),
        "ticket": _money(progress.ticket),
        "payments": [_partial_data(partial) for partial in progress.payments],
    }


def _history_data(entry: HistoryEntry) -> dict:
    history = entry.history
    data = {
        "order_history_id": history.id,
        "order_type": history.order_type,
        "customer_id": history.customer_id,
        "table_number": history.table_number,
        "total": _money(history.total),
        "payment_status": history.payment_status,
        "payment_method": history.payment_method,
        "paid_amount": _money(history.paid_amount),
        "paid_at": format_local(history.paid_at),
        "created_at": format_local(history.created_at),
        "items": [
            {
                "menu_item_id": item.menu_item_id,
                "quantity": item.quantity,
                "price": _money(item.price),
                "notes": item.notes,
            }
            for item in entry.items
        ],
        "partial_payments": [_partial_data(partial) for partial in entry.partial_payments],
    }
    if entry.customer_name is not None:
        data["customer_name"] = entry.customer_name
    return data


def _session_data(session: Optional[CashSession]) -> Optional[dict]:
    if session is None:
        return None
    return {
        "cash_session_id": session.id,
        "opened_at": format_local(session.opened_at),
        "closed_at": format_local(session.closed_at),
        "is_open": session.is_open,
        "opening_user": session.opening_user,
        "closing_user": session.closing_user,
        "opening_amount": _money(session.opening_amount),
        "cash_total": _money(session.cash_total),
        "card_total": _money(session.card_total),
        "ticket_total": _money(session.ticket_total),
        "real_cash_counted": _money(session.real_cash_counted),
        "difference": _money(session.difference),
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class OrderItemInput(BaseModel):
    menu_item_id: int
    quantity: int
    notes: Optional[str] = None

    def to_request(self) -> ItemRequest:
        return ItemRequest(menu_item_id=self.menu_item_id, quantity=self.quantity, notes=self.notes)


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'order_type': 'dine-in', 'table_id': 1, 'customer_id': None, 'items': [{'menu_item_id': 3, 'quantity': 2, 'notes': 'no onions'}], 'is_paid': False, 'payment_method': None}}}
    order_type: Optional[Literal["dine-in", "takeaway", "delivery", "trendyol"]] = None
    table_id: Optional[int] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    items: list[OrderItemInput] = Field(default_factory=list)
    is_paid: bool = False
    payment_method: Optional[str] = None


class OrderItemsAdd(BaseModel):
    model_config = {"json_schema_extra": {"example": {'items': [{'menu_item_id': 5, 'quantity': 1}]}}}
    items: list[OrderItemInput]


class OrderStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'status': 'preparing', 'version': 1}}}
    status: str
    version: Optional[int] = None


class OrderStatusOverride(BaseModel):
    status: str


class PaymentCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'amount': 25.0, 'method': 'nakit', 'customer_id': None}}}
    amount: Decimal
    method: str
    customer_id: Optional[int] = None


class PartialContribution(BaseModel):
    model_config = {"json_schema_extra": {"example": {'channel': 'cash', 'amount': 10.0}}}
    channel: str
    amount: Decimal


class PartialBreakdown(BaseModel):
    model_config = {"json_schema_extra": {"example": {'cash': 10.0, 'credit_kart': 15.0, 'ticket': 0.0}}}
    cash: Decimal = Decimal("0")
    credit_kart: Decimal = Decimal("0")
    ticket: Decimal = Decimal("0")


class CashSessionOpen(BaseModel):
    model_config = {"json_schema_extra": {"example": {'user': 'admin', 'amount': 200.0}}}
    user: str
    amount: Decimal = Decimal("0")


class CashSessionClose(BaseModel):
    model_config = {"json_schema_extra": {"example": {'user': 'admin', 'real_cash_counted': 445.0}}}
    user: str
    real_cash_counted: Decimal = Decimal("0")


class DebtSettle(BaseModel):
    model_config = {"json_schema_extra": {"example": {'order_history_ids': [41, 42], 'method': 'nakit'}}}
    order_history_ids: list[int] = Field(default_factory=list)
    method: str


@app.post("/api/v1/orders", tags=["Orders"])
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    view = pos.orders.create_order(
        db,
        items=[item.to_request() for item in payload.items],
        order_type=payload.order_type,
        table_id=payload.table_id,
        customer_id=payload.customer_id,
        customer_name=payload.customer_name,
        is_paid=payload.is_paid,
        payment_method=payload.payment_method,
    )
    return {"data": _order_data(view), "meta": _meta()}


@app.get("/api/v1/orders/active", tags=["Orders"])
def list_active_orders(db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    return {"data": [_order_data(view) for view in pos.orders.list_active_orders(db)], "meta": _meta()}


@app.get("/api/v1/orders/open", tags=["Orders"])
def get_open_order_for_table(
    table_id: int = Query(...),
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    view = pos.orders.get_open_order_for_table(db, table_id)
    return {"data": _order_data(view) if view else None, "meta": _meta()}


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    view = pos.orders.get_order(db, order_id)
    if view is None:
        raise order_not_found(order_id)
    return {"data": _order_data(view), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/items", tags=["Orders"])
def add_items_to_order(
    order_id: int,
    payload: OrderItemsAdd,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    view = pos.orders.add_items_to_order(db, order_id, [item.to_request() for item in payload.items])
    return {"data": _order_data(view), "meta": _meta()}


@app.patch("/api/v1/orders/{order_id}/status", tags=["Orders"])
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    view = pos.status.update_status(db, order_id, payload.status, payload.version)
    return {"data": _order_data(view), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/status:override", tags=["Orders - Admin"])
def override_order_status(
    order_id: int,
    payload: OrderStatusOverride,
    admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    expected = pos.config.admin_override_token
    is_admin = bool(expected) and admin_token is not None and hmac.compare_digest(admin_token, expected)
    view = pos.status.override_status(db, order_id, payload.status, "admin" if is_admin else "staff")
    return {"data": _order_data(view), "meta": _meta(warnings=["status_overridden"])}


@app.delete("/api/v1/orders/{order_id}", tags=["Orders"])
def delete_order(order_id: int, db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    deleted = pos.orders.delete_order(db, order_id)
    return {"data": {"order_id": order_id, "deleted": deleted}, "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/partial-payments", tags=["Payments"])
def add_partial_payment(
    order_id: int,
    payload: PartialContribution,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    progress = pos.payments.add_partial_payment(db, order_id, payload.channel, payload.amount)
    return {"data": _progress_data(progress), "meta": _meta()}


@app.get("/api/v1/orders/{order_id}/partial-payments", tags=["Payments"])
def get_partial_progress(
    order_id: int, db: Session = Depends(get_db), pos: PosServices = Depends(get_services)
) -> dict:
    return {"data": _progress_data(pos.payments.get_partial_progress(db, order_id)), "meta": _meta()}


@app.post("/api/v1/orders/{order_id}/payment", tags=["Payments"])
def process_payment(
    order_id: int,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    history_id = pos.payments.process_payment(
        db, order_id, payload.amount, payload.method, payload.customer_id
    )
    return {"data": {"order_id": order_id, "order_history_id": history_id}, "meta": _meta()}


@app.post("/api/v1/order-history/{history_id}/partial-payments", tags=["Payments"])
def record_partial_payment(
    history_id: int,
    payload: PartialBreakdown,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    partial_id = pos.payments.record_partial_payment(
        db, history_id, payload.cash, payload.credit_kart, payload.ticket
    )
    return {
        "data": {"order_history_id": history_id, "partial_payment_id": partial_id},
        "meta": _meta(),
    }


@app.get("/api/v1/order-history", tags=["Order History"])
def list_past_orders(db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    return {"data": [_history_data(entry) for entry in pos.history.list_past_orders(db)], "meta": _meta()}


@app.get("/api/v1/cash-sessions/status", tags=["Cash Sessions"])
def get_cash_status(db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    status = pos.cash.get_status(db)
    return {
        "data": {"is_open": status["is_open"], "session": _session_data(status["session"])},
        "meta": _meta(),
    }


@app.post("/api/v1/cash-sessions:open", tags=["Cash Sessions"])
def open_cash_session(
    payload: CashSessionOpen,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    session = pos.cash.open(db, payload.user, payload.amount)
    return {"data": _session_data(session), "meta": _meta()}


@app.post("/api/v1/cash-sessions:close", tags=["Cash Sessions"])
def close_cash_session(
    payload: CashSessionClose,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    closed = pos.cash.close(db, payload.user, payload.real_cash_counted)
    return {
        "data": {
            "cash_total": _money(closed.cash_total),
            "card_total": _money(closed.card_total),
            "ticket_total": _money(closed.ticket_total),
            "expected_cash": _money(closed.expected_cash),
            "difference": _money(closed.difference),
            "session": _session_data(closed.session),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/customers/debts", tags=["Customer Debts"])
def get_customers_with_debt(db: Session = Depends(get_db), pos: PosServices = Depends(get_services)) -> dict:
    data = [
        {"customer_id": row["customer_id"], "customer_name": row["customer_name"], "debt": _money(row["debt"])}
        for row in pos.debts.get_customers_with_debt(db)
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/customers/order-history", tags=["Customer Debts"])
def get_customer_order_history(
    customer_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    entries = pos.debts.get_customer_order_history(db, customer_id)
    return {"data": [_history_data(entry) for entry in entries], "meta": _meta()}


@app.get("/api/v1/customers/{customer_id}/debts", tags=["Customer Debts"])
def get_customer_debts(
    customer_id: int, db: Session = Depends(get_db), pos: PosServices = Depends(get_services)
) -> dict:
    data = [
        {
            "order_history_id": entry.history.id,
            "total": _money(entry.history.total),
            "partial_paid": _money(entry.partial_paid),
            "remaining": _money(entry.remaining),
            "payment_method": entry.history.payment_method,
            "payment_status": entry.history.payment_status,
            "paid_amount": _money(entry.history.paid_amount),
            "created_at": format_local(entry.history.created_at),
        }
        for entry in pos.debts.get_customer_debts(db, customer_id)
    ]
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/customers/{customer_id}/debts:settle", tags=["Customer Debts"])
def settle_customer_debts(
    customer_id: int,
    payload: DebtSettle,
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    settled = pos.debts.settle_customer_debts(db, customer_id, payload.order_history_ids, payload.method)
    warnings = []
    if settled < len(payload.order_history_ids):
        warnings.append("some_rows_not_settled")
    return {
        "data": {"customer_id": customer_id, "settled": settled, "mode": pos.debts.settlement_mode},
        "meta": _meta(warnings=warnings),
    }


@app.get("/api/v1/reports/product-sales", tags=["Reports"])
def get_product_sales(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    order_by: Literal["revenue", "quantity"] = Query(default="revenue"),
    db: Session = Depends(get_db),
    pos: PosServices = Depends(get_services),
) -> dict:
    data = [
        {
            "menu_item_id": row["menu_item_id"],
            "name": row["name"],
            "total_quantity": row["total_quantity"],
            "total_revenue": _money(row["total_revenue"]),
            "avg_price": _money(row["avg_price"]),
        }
        for row in pos.history.get_product_sales(db, start, end, order_by)
    ]
    return {"data": data, "meta": _meta()}
