from dataclasses import dataclass
from typing import Optional

from restopos.cash_sessions import CashSessionManager
from restopos.clock import LocalClock
from restopos.config import Settings
from restopos.debts import DebtLedger
from restopos.history import HistoryReader
from restopos.order_status import OrderStateMachine
from restopos.orders import OrderRepository
from restopos.payments import PaymentEngine


@dataclass
class PosServices:
    config: Settings
    orders: OrderRepository
    status: OrderStateMachine
    payments: PaymentEngine
    cash: CashSessionManager
    debts: DebtLedger
    history: HistoryReader


def build_services(config: Settings, clock: Optional[object] = None) -> PosServices:
    clock = clock or LocalClock(config.restaurant_timezone)
    orders = OrderRepository(clock)
    history = HistoryReader()
    return PosServices(
        config=config,
        orders=orders,
        status=OrderStateMachine(orders),
        payments=PaymentEngine(orders, clock),
        cash=CashSessionManager(clock),
        debts=DebtLedger(clock, history, settlement_mode=config.debt_settlement_mode),
        history=history,
    )
