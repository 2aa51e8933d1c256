from __future__ import annotations
from datetime import date, datetime
from lounge.time_utils import parse_iso_datetime, parse_iso_date

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Column, Date, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum price: KES 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# Largest single stock movement accepted from a client
MAX_QUANTITY = 100_000

PAYMENT_METHODS = ("cash", "mpesa", "mpesa-stk", "split", "loyalty_points")
ADJUST_REASONS = ("adjustment", "expired")

__all__ = [
    "ValidationError",
    "ModelValidationPolicy",
    "validate_payload",
    "enforce_rules_inventory_item",
    "enforce_rules_sell",
    "enforce_rules_restock",
    "enforce_rules_adjust",
    "OPERATION_COLUMNS",
]


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


# Stock operations are not rows of a single table; their inputs are described
# with unbound columns so they go through the same coercion as model fields.
OPERATION_COLUMNS = {
    "item_id": Column("item_id", Integer, nullable=False),
    "quantity": Column("quantity", Integer, nullable=False),
    "quantity_change": Column("quantity_change", Integer, nullable=False),
    "reason": Column("reason", String(16), nullable=False),
    "payment_method": Column("payment_method", String(32), nullable=False),
    "session_id": Column("session_id", String(64), nullable=True),
    "customer_id": Column("customer_id", Integer, nullable=True),
    "performed_by": Column("performed_by", String(64), nullable=True),
    "notes": Column("notes", String(255), nullable=True),
    "cost_price_cents": Column("cost_price_cents", Integer, nullable=True),
    "supplier": Column("supplier", String(255), nullable=True),
    "idempotency_key": Column("idempotency_key", String(128), nullable=True),
}


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            # Reject scientific notation (e.g., "1e15", "1E10")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            # Reject decimal points (e.g., "12.5")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        # Reject floats explicitly
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        # Other types
        raise ValidationError(f"{col.key} must be an integer")

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
            return value.strip().lower() in ("true", "1")
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Dates ("YYYY-MM-DD")
    if isinstance(coltype, Date):
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                d = parse_iso_date(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 date")
            return d
        raise ValidationError(f"{col.key} must be a date")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
    model: DeclarativeMeta | None = None,
    columns: dict[str, Any] | None = None,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length), taken from
      `model` or from an explicit `columns` mapping
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = columns if columns is not None else _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_cents(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        value = patch[field]
        if value < 0:
            raise ValidationError(f"{field} must be >= 0")
        if value > MAX_PRICE_CENTS:
            raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")


def _check_quantity(value, field: str, *, allow_negative: bool = False) -> None:
    if value is None:
        raise ValidationError(f"{field} is required")
    if allow_negative:
        if value == 0:
            raise ValidationError(f"{field} must be non-zero")
    elif value <= 0:
        raise ValidationError(f"{field} must be > 0")
    if abs(value) > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")


def enforce_rules_inventory_item(patch: dict) -> None:
    """
    Business rules for catalog fields that are not captured by SQLAlchemy metadata alone.
    """
    _check_cents(patch, "unit_price_cents")
    _check_cents(patch, "cost_price_cents")

    for field in ("low_stock_threshold", "points_required"):
        if field in patch and patch[field] is not None and patch[field] < 0:
            raise ValidationError(f"{field} must be >= 0")

    if patch.get("is_redeemable") and not patch.get("points_required"):
        if "points_required" in patch:
            raise ValidationError("points_required must be > 0 for redeemable items")


def enforce_rules_sell(patch: dict) -> None:
    _check_quantity(patch.get("quantity"), "quantity")
    if patch.get("payment_method") not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    if patch["payment_method"] == "loyalty_points" and patch.get("customer_id") is None:
        raise ValidationError("customer_id is required for loyalty_points payment")


def enforce_rules_restock(patch: dict) -> None:
    _check_quantity(patch.get("quantity"), "quantity")
    _check_cents(patch, "cost_price_cents")


def enforce_rules_adjust(patch: dict) -> None:
    _check_quantity(patch.get("quantity_change"), "quantity_change", allow_negative=True)
    reason = patch.get("reason")
    if reason not in ADJUST_REASONS:
        raise ValidationError(f"reason must be one of: {', '.join(ADJUST_REASONS)}")
    if reason == "expired" and patch["quantity_change"] > 0:
        raise ValidationError("quantity_change must be negative for expired stock")
