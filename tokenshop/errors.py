"""
Error taxonomy of the fulfillment engine.

Every failure a caller can see carries a stable machine-readable ``code`` so
the storefront and the admin panel can render their own messages. Extra
fields (``available``, ``order_number``, ...) travel alongside the code.
"""
from __future__ import annotations
from typing import Any, Dict


class ShopError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message or self.code)
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, **self.extra}


# ---- input

class InvalidInput(ShopError):
    code = "INVALID_INPUT"
    status_code = 400


class InvalidQuantity(ShopError):
    code = "INVALID_QUANTITY"
    status_code = 400


class MissingFields(ShopError):
    code = "MISSING_FIELDS"
    status_code = 400


# ---- preconditions

class TokenNotFound(ShopError):
    code = "TOKEN_NOT_FOUND"
    status_code = 404


class TokenBlocked(ShopError):
    code = "TOKEN_BLOCKED"
    status_code = 403


class TokenExists(ShopError):
    code = "TOKEN_EXISTS"
    status_code = 409


class HasPendingOrder(ShopError):
    code = "HAS_PENDING_ORDER"
    status_code = 409


class OptionNotFound(ShopError):
    code = "OPTION_NOT_FOUND"
    status_code = 404


class InsufficientBalance(ShopError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400


class PurchaseLimitReached(ShopError):
    code = "PURCHASE_LIMIT_REACHED"
    status_code = 403


class InsufficientStock(ShopError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409


class OrderNotFound(ShopError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class Unauthorized(ShopError):
    code = "UNAUTHORIZED"
    status_code = 403


class RequestNotFound(ShopError):
    code = "REQUEST_NOT_FOUND"
    status_code = 404


class RefundExists(ShopError):
    code = "REFUND_EXISTS"
    status_code = 409


class AlreadyRefunded(ShopError):
    code = "ALREADY_REFUNDED"
    status_code = 409


# ---- state machine

class OrderInProgress(ShopError):
    code = "ORDER_IN_PROGRESS"
    status_code = 409


class InvalidTransition(ShopError):
    code = "INVALID_TRANSITION"
    status_code = 409


class AlreadyProcessed(ShopError):
    code = "ALREADY_PROCESSED"
    status_code = 409


# ---- commit failures

class BalanceDeductFailed(ShopError):
    code = "BALANCE_DEDUCT_FAILED"
    status_code = 500


class StoreTimeout(ShopError):
    code = "STORE_TIMEOUT"
    status_code = 503
