from __future__ import annotations

GENERIC_FAILURE_MESSAGE = "We could not process this order. Please contact support."


class OrderFlowError(Exception):
    code = "ORDER_FLOW_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, code: str | None = None, order_id: int | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.order_id = order_id

    def to_response(self) -> tuple[dict, int]:
        return {"ok": False, "error": self.code, "message": GENERIC_FAILURE_MESSAGE}, int(self.http_status)


class ValidationFailed(OrderFlowError):
    code = "VALIDATION_FAILED"
    http_status = 400

    def to_response(self) -> tuple[dict, int]:
        # Validation messages describe the caller's own input and are safe to echo.
        return {"ok": False, "error": self.code, "message": str(self)}, int(self.http_status)


class NotAuthorized(OrderFlowError):
    code = "NOT_AUTHORIZED"
    http_status = 403


class OrderNotFound(OrderFlowError):
    code = "ORDER_NOT_FOUND"
    http_status = 404


class IllegalTransition(OrderFlowError):
    code = "ILLEGAL_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str, *, order_id: int | None = None, event: str = ""):
        super().__init__(f"invalid_order_transition {current}->{target}", order_id=order_id)
        self.current = current
        self.target = target
        self.event = event


class RefundPathUnavailable(OrderFlowError):
    code = "REFUND_PATH_UNAVAILABLE"
    http_status = 422


class RefundInProgress(OrderFlowError):
    code = "REFUND_IN_PROGRESS"
    http_status = 409
