# Overview: Error taxonomy for the inventory ledger and settlement engine.

"""
Every failure the engine reports carries:
- kind: stable machine-readable identifier (returned as "error" by the API)
- message: human-readable explanation
- details: structured context (e.g. available/requested for stock failures)
- status_code: HTTP status the routes answer with

ConcurrentConflict never reaches callers; it is retried internally and
becomes StoreUnavailable once retries are exhausted.
"""

from __future__ import annotations


class LedgerError(Exception):
    kind = "ledger_error"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(LedgerError, ValueError):
    """400-level input problem."""
    kind = "validation_error"
    status_code = 400


class ItemNotFound(ValidationError):
    status_code = 404

    def __init__(self, item_id, retired: bool = False):
        if retired:
            super().__init__(f"Inventory item {item_id} is retired", {"item_id": item_id, "retired": True})
        else:
            super().__init__(f"Inventory item {item_id} not found", {"item_id": item_id})


class InsufficientStock(LedgerError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, available: int, requested: int, item_id: int | None = None):
        super().__init__(
            f"Insufficient stock. Available: {available}, Requested: {requested}",
            {"item_id": item_id, "available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested


class NotEligible(LedgerError):
    kind = "not_eligible"
    status_code = 403


class NotRedeemable(LedgerError):
    kind = "not_redeemable"
    status_code = 422


class InsufficientPoints(LedgerError):
    kind = "insufficient_points"
    status_code = 409

    def __init__(self, balance: int, required: int, customer_id: int | None = None):
        super().__init__(
            f"Insufficient loyalty points. Balance: {balance}, Required: {required}",
            {"customer_id": customer_id, "balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class LoyaltyEffectFailed(LedgerError):
    """The loyalty ledger could not record a sale's points."""
    kind = "loyalty_effect_failed"
    status_code = 502


class IdempotencyConflict(LedgerError):
    """409-level: an idempotency key was reused for a different request."""
    kind = "idempotency_conflict"
    status_code = 409


class PermissionDenied(LedgerError):
    kind = "permission_denied"
    status_code = 403


class ConcurrentConflict(LedgerError):
    kind = "concurrent_conflict"
    status_code = 409


class StoreUnavailable(LedgerError):
    kind = "store_unavailable"
    status_code = 503


class CompensationFailed(LedgerError):
    """A committed mutation could not be reversed; stock and ledgers diverge."""
    kind = "compensation_failed"
    status_code = 500
