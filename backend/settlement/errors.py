from __future__ import annotations


class SettlementError(Exception):
    """Base class for errors surfaced by the settlement engine.

    ``code`` is the stable machine-readable identifier returned to API
    callers; ``http_status`` is the status the HTTP layer maps it to.
    """

    code = "SETTLEMENT_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NotFound(SettlementError):
    code = "NOT_FOUND"
    http_status = 404


class Unauthenticated(SettlementError):
    code = "UNAUTHENTICATED"
    http_status = 401


class NotAuthorized(SettlementError):
    code = "NOT_AUTHORIZED"
    http_status = 403


class EmptyCart(SettlementError):
    code = "EMPTY_CART"
    http_status = 422


class UnknownProduct(SettlementError):
    code = "UNKNOWN_PRODUCT"
    http_status = 422


class InsufficientStock(SettlementError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409


class VendorUnavailable(SettlementError):
    code = "VENDOR_UNAVAILABLE"
    http_status = 409


class InvalidStateTransition(SettlementError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 409


class PercentagesDoNotSum100(SettlementError):
    code = "PERCENTAGES_DO_NOT_SUM_100"
    http_status = 422


class ResourceContention(SettlementError):
    code = "RESOURCE_CONTENTION"
    http_status = 503
    retryable = True


class DuplicateTransaction(SettlementError):
    """A gateway transaction that was already applied.

    Callers treat this as an idempotent no-op, never as a failure.
    """

    code = "DUPLICATE_TRANSACTION"
    http_status = 200


class EscrowDisputed(SettlementError):
    code = "ESCROW_DISPUTED"
    http_status = 409


class EscrowInvariantViolation(SettlementError):
    code = "ESCROW_INVARIANT_VIOLATION"
    http_status = 409


class PaymentAmountMismatch(SettlementError):
    code = "PAYMENT_AMOUNT_MISMATCH"
    http_status = 422


class InvalidRequest(SettlementError):
    code = "INVALID_REQUEST"
    http_status = 422
