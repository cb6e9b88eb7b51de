import logging
from typing import Optional

from sqlalchemy.orm import Session

from restopos.db import atomic
from restopos.errors import InvalidStatusError, PermissionDeniedError, version_conflict
from restopos.models import ORDER_STATUSES
from restopos.orders import OrderPatch, OrderRepository, OrderWithItems

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": ("preparing",),
    "preparing": ("ready",),
    "ready": ("served",),
    "served": ("paid",),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, ())


class OrderStateMachine:
    def __init__(self, orders: OrderRepository) -> None:
        self.orders = orders

    def update_status(
        self,
        db: Session,
        order_id: int,
        new_status: str,
        expected_version: Optional[int] = None,
    ) -> OrderWithItems:
        with atomic(db):
            order = self.orders.require_order(db, order_id)
            # checked before the idempotent short-circuit so a stale retry never reads as success
            if expected_version is not None and order.version != expected_version:
                logger.warning(
                    "order %s status update rejected: version %s, expected %s",
                    order_id,
                    order.version,
                    expected_version,
                )
                raise version_conflict(order_id)
            if order.status != new_status:
                if not can_transition(order.status, new_status):
                    raise InvalidStatusError(
                        f"order {order_id} cannot move from {order.status} to {new_status}"
                    )
                if not self.orders.apply_patch(db, order_id, OrderPatch(status=new_status), order.version):
                    raise version_conflict(order_id)
                logger.info("order %s moved %s -> %s", order_id, order.status, new_status)
        return self.orders.get_order(db, order_id)

    def override_status(self, db: Session, order_id: int, new_status: str, actor_role: str) -> OrderWithItems:
        """Administrative correction that bypasses the transition table."""
        if actor_role != "admin":
            raise PermissionDeniedError("status override requires an admin")
        if new_status not in ORDER_STATUSES:
            raise InvalidStatusError(f"unknown order status {new_status!r}")
        with atomic(db):
            order = self.orders.require_order(db, order_id)
            previous = order.status
            if not self.orders.apply_patch(db, order_id, OrderPatch(status=new_status), order.version):
                raise version_conflict(order_id)
        logger.warning("order %s status overridden %s -> %s", order_id, previous, new_status)
        return self.orders.get_order(db, order_id)
