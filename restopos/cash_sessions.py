import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from restopos.db import atomic
from restopos.errors import ConflictError, ValidationError
from restopos.models import CashSession, Order, OrderHistory, PartialPayment, as_money
from restopos.payments import collected_for

logger = logging.getLogger(__name__)

CASH_METHODS = ("nakit",)
CARD_METHODS = ("kredi-karti",)


def already_open() -> ConflictError:
    return ConflictError("a cash session is already open", code="CASH_SESSION_ALREADY_OPEN")


@dataclass
class CashClose:
    session: CashSession
    cash_total: Decimal
    card_total: Decimal
    ticket_total: Decimal
    expected_cash: Decimal
    difference: Decimal


class CashSessionManager:
    def __init__(self, clock) -> None:
        self.clock = clock

    def get_open_session(self, db: Session) -> Optional[CashSession]:
        return db.scalar(
            select(CashSession)
            .where(CashSession.is_open.is_(True))
            .order_by(CashSession.id.desc())
            .limit(1)
        )

    def get_status(self, db: Session) -> dict:
        session = self.get_open_session(db)
        return {"is_open": session is not None, "session": session}

    def open(self, db: Session, user: str, amount=0) -> CashSession:
        amount = as_money(amount)
        if amount < 0:
            raise ValidationError("opening amount cannot be negative")
        try:
            with atomic(db):
                if self.get_open_session(db) is not None:
                    raise already_open()
                session = CashSession(
                    opened_at=self.clock.now(),
                    is_open=True,
                    opening_user=user,
                    opening_amount=amount,
                )
                db.add(session)
                db.flush()
                session_id = session.id
        except IntegrityError as exc:
            # a concurrent open won the race for the single-open-session index
            logger.warning("cash session open by %s lost to a concurrent open", user)
            raise already_open() from exc
        logger.info("cash session %s opened by %s with %s", session_id, user, amount)
        return db.get(CashSession, session_id)

    def close(self, db: Session, user: str, real_cash_counted=0) -> CashClose:
        counted = as_money(real_cash_counted)
        with atomic(db):
            session = self.get_open_session(db)
            if session is None:
                raise ConflictError("no cash session is open", code="CASH_SESSION_NOT_OPEN")
            now = self.clock.now()
            window = (session.opened_at, now)
            cash_total = self._labelled_total(db, CASH_METHODS, *window) + self._partial_total(
                db, PartialPayment.cash, *window
            )
            card_total = self._labelled_total(db, CARD_METHODS, *window) + self._partial_total(
                db, PartialPayment.credit_kart, *window
            )
            ticket_total = self._partial_total(db, PartialPayment.ticket, *window)
            expected_cash = as_money(session.opening_amount) + cash_total
            difference = counted - expected_cash

            session.closed_at = now
            session.is_open = False
            session.closing_user = user
            session.cash_total = cash_total
            session.card_total = card_total
            session.ticket_total = ticket_total
            session.real_cash_counted = counted
            session.difference = difference
            session_id = session.id
        logger.info(
            "cash session %s closed by %s: expected %s, counted %s, difference %s",
            session_id,
            user,
            expected_cash,
            counted,
            difference,
        )
        return CashClose(
            session=db.get(CashSession, session_id),
            cash_total=cash_total,
            card_total=card_total,
            ticket_total=ticket_total,
            expected_cash=expected_cash,
            difference=difference,
        )

    def _labelled_total(self, db: Session, methods: tuple[str, ...], start: datetime, end: datetime) -> Decimal:
        """Sum what was booked under ``methods`` in the window.

        Split contributions are counted on their own by ``created_at``, so a
        labelled row only adds what its paid_amount exceeds them by.
        """
        total = Decimal("0.00")
        for model, owner in ((Order, PartialPayment.order_id), (OrderHistory, PartialPayment.order_history_id)):
            booked = func.coalesce(model.paid_amount, 0) - collected_for(model, owner)
            total += as_money(
                db.scalar(
                    select(func.coalesce(func.sum(case((booked > 0, booked), else_=0)), 0)).where(
                        model.payment_method.in_(methods),
                        model.paid_at.between(start, end),
                    )
                )
            )
        return total

    def _partial_total(self, db: Session, column, start: datetime, end: datetime) -> Decimal:
        return as_money(
            db.scalar(
                select(func.coalesce(func.sum(column), 0)).where(
                    PartialPayment.created_at.between(start, end)
                )
            )
        )
