"""
Error taxonomy for the order, payment, cash and debt services.

Every error carries a stable ``code`` that callers branch on and an HTTP
status the transport layer uses when rendering ``{"error": {code, message}}``.
"""

from typing import Optional


class PosError(Exception):
    status_code = 500
    code = "SERVER_ERROR"
    retryable = False

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationError(PosError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidStatusError(PosError):
    status_code = 400
    code = "INVALID_STATUS"


class PermissionDeniedError(PosError):
    status_code = 403
    code = "PERMISSION_DENIED"


class NotFoundError(PosError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PosError):
    status_code = 409
    code = "CONFLICT"


class SettlementError(PosError):
    """Payment and archival were rolled back together; the call can be repeated."""

    status_code = 503
    code = "SETTLEMENT_FAILED"
    retryable = True


class ServerError(PosError):
    pass


def order_not_found(order_id: int) -> NotFoundError:
    return NotFoundError(f"order {order_id} not found", code="ORDER_NOT_FOUND")


def version_conflict(order_id: int) -> ConflictError:
    return ConflictError(
        f"order {order_id} was modified concurrently", code="VERSION_CONFLICT"
    )
