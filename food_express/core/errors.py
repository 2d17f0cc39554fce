"""
Food Express Order Service - Error taxonomy

Every failure of the order core is one of these types. Routes never catch
them; the exception handler in main.py renders them as JSON with the
status code and machine-readable code defined here.
"""
from typing import Any


class OrderError(Exception):
    status_code: int = 400
    code: str = "order_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class NotFound(OrderError):
    status_code = 404
    code = "not_found"


class InvalidTransition(OrderError):
    """The requested status change is not allowed from the stored status.

    Callers must refresh their view of the order: the status they acted on
    is stale.
    """

    status_code = 409
    code = "invalid_transition"

    def __init__(self, detail: str, current: str | None = None, target: str | None = None):
        super().__init__(detail)
        self.current = current
        self.target = target

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["current_status"] = self.current
        body["requested_status"] = self.target
        return body


class Forbidden(OrderError):
    status_code = 403
    code = "forbidden"


class AlreadyClaimed(OrderError):
    """Lost a delivery claim race. Shown as a notice, not an error dialog."""

    status_code = 409
    code = "already_claimed"

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["soft"] = True
        return body


class ReasonRequired(OrderError):
    status_code = 422
    code = "reason_required"


class InvalidOrder(OrderError):
    status_code = 422
    code = "invalid_order"


class PaymentDeclined(OrderError):
    """The payment provider reports the payment failed, was cancelled or is unknown."""

    status_code = 402
    code = "payment_declined"


class VerificationError(OrderError):
    """Could not get an answer from the payment server. Safe to retry."""

    status_code = 502
    code = "verification_error"

    def __init__(self, detail: str, timed_out: bool = False):
        super().__init__(detail)
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504
