# Overview: Error values raised by services and rendered by routes as {code, message, details}.

"""
Error model for the order and stock core.

Every error carries a stable `code` string and the HTTP status it maps to.
Stock faults put the offending product id plus the available and needed
amounts into `details` when they are known.

Categories:
- client faults (4xx, never retried): VALIDATION_FAILED, INVALID_PRODUCT,
  ILLEGAL_STATE_TRANSITION, ACCESS_DENIED, NOT_FOUND
- stock faults (409): OUT_OF_STOCK, INSUFFICIENT_STOCK, STOCK_CONFLICT,
  NEGATIVE_BALANCE, RESERVATION_EXPIRED, UNKNOWN_PRODUCT
- transient faults (5xx): DEADLINE_EXCEEDED
"""

from __future__ import annotations


class CoreError(Exception):
    """Base error with a stable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailedError(CoreError):
    code = "VALIDATION_FAILED"
    status_code = 400


class InvalidProductError(CoreError):
    code = "INVALID_PRODUCT"
    status_code = 400


class AccessDeniedError(CoreError):
    code = "ACCESS_DENIED"
    status_code = 403


class NotFoundError(CoreError):
    code = "NOT_FOUND"
    status_code = 404


class IllegalStateTransitionError(CoreError):
    code = "ILLEGAL_STATE_TRANSITION"
    status_code = 409


class StockError(CoreError):
    """409-level stock fault."""
    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        product_id: int | None = None,
        available=None,
        needed=None,
        details: dict | None = None,
    ):
        merged = dict(details or {})
        if product_id is not None:
            merged["product_id"] = product_id
        if available is not None:
            merged["available"] = str(available)
        if needed is not None:
            merged["needed"] = str(needed)
        super().__init__(message, merged)
        self.product_id = product_id
        self.available = available
        self.needed = needed


class UnknownProductError(StockError):
    code = "UNKNOWN_PRODUCT"
    status_code = 404


class OutOfStockError(StockError):
    code = "OUT_OF_STOCK"


class InsufficientStockError(StockError):
    code = "INSUFFICIENT_STOCK"


class StockConflictError(StockError):
    code = "STOCK_CONFLICT"


class NegativeBalanceError(StockError):
    code = "NEGATIVE_BALANCE"


class ReservationExpiredError(StockError):
    code = "RESERVATION_EXPIRED"


class DeadlineExceededError(CoreError):
    code = "DEADLINE_EXCEEDED"
    status_code = 504


def error_response(exc: CoreError) -> tuple[dict, int]:
    """(envelope, status) pair a Flask view can return directly."""
    return exc.to_dict(), exc.status_code


INTERNAL_ERROR_BODY = {"code": "INTERNAL_ERROR", "message": "Internal server error"}
