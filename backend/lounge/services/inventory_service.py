# Overview: Service-layer operations for inventory; the mutation engine and sole writer of stock.

# backend/lounge/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentConflict, IdempotencyConflict, InsufficientStock, ItemNotFound, ValidationError
from ..extensions import db
from ..models import ENTRY_TYPES, REVERSAL_KINDS, InventoryItem, LedgerEntry
from .concurrency import begin_write, lock_for_update, run_with_retry
from .ledger_service import append_entry
"""
Lounge Inventory Invariants (authoritative)

Stock model:
- InventoryItem.stock_quantity is a cache of SUM(LedgerEntry.delta) for the item.
- Nothing but this module writes stock_quantity.
- Every successful mutation writes the new stock and exactly one LedgerEntry
  in the same transaction; a failed mutation writes neither.

Business invariants:
- Stock may never go negative: current + delta < 0 is rejected with
  InsufficientStock and has no effect.
- delta is a non-zero integer; entry_type is sale | restock | adjustment | expired.
- Retired items (is_active=False) accept no new movements except reversals
  of earlier entries (reverses_entry_id set).

Concurrency:
- The item row is read with SELECT ... FOR UPDATE (BEGIN IMMEDIATE on SQLite)
  and written under its version_id, so concurrent mutations of one item
  serialize. A stale version surfaces as ConcurrentConflict and is retried.
- Mutations of different items share no lock.

Idempotency:
- A committed idempotency_key replays the original result without re-applying.
- Reusing a key for another item or entry type, or after its entry was
  voided, is an IdempotencyConflict.
- A key whose entry was compensated never settled; the next use writes a
  new entry under the next idempotency_attempt.
"""


@dataclass
class MutationResult:
    entry: LedgerEntry
    new_stock: int
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.entry.id,
            "new_stock": self.new_stock,
            "replayed": self.replayed,
            "entry": self.entry.to_dict(),
        }


def get_item(item_id: int, *, require_active: bool = False, lock: bool = False) -> InventoryItem:
    query = db.session.query(InventoryItem).filter_by(id=item_id)
    if lock:
        # Re-read the row even if the identity map already holds it
        query = lock_for_update(query).populate_existing()
    item = query.first()
    if item is None:
        raise ItemNotFound(item_id)
    if require_active and not item.is_active:
        raise ItemNotFound(item_id, retired=True)
    return item


def find_idempotent_entry(idempotency_key: str | None, *, item_id: int, entry_type: str) -> LedgerEntry | None:
    """
    Look up a previously committed entry for this key.

    Returns None when the key is unused or its latest entry was compensated;
    raises IdempotencyConflict when it belongs to a different request or to
    a voided entry.
    """
    if not idempotency_key:
        return None

    existing = (
        db.session.query(LedgerEntry)
        .filter_by(idempotency_key=idempotency_key)
        .order_by(LedgerEntry.idempotency_attempt.desc())
        .first()
    )
    if existing is None:
        return None

    if existing.item_id != item_id or existing.entry_type != entry_type:
        raise IdempotencyConflict(
            "idempotency key already used for a different transaction",
            {"idempotency_key": idempotency_key, "transaction_id": existing.id},
        )

    reversal = (
        db.session.query(LedgerEntry.id, LedgerEntry.reversal_kind)
        .filter_by(reverses_entry_id=existing.id)
        .first()
    )
    if reversal is None:
        return existing
    if reversal.reversal_kind == "compensation":
        # The request never settled; a retry runs as a new attempt
        return None
    raise IdempotencyConflict(
        "idempotency key belongs to a transaction that was reversed",
        {"idempotency_key": idempotency_key, "transaction_id": existing.id, "reversed_by": reversal.id},
    )


def _next_attempt(idempotency_key: str | None) -> int:
    if not idempotency_key:
        return 0
    last = db.session.query(func.max(LedgerEntry.idempotency_attempt)).filter(
        LedgerEntry.idempotency_key == idempotency_key
    ).scalar()
    return 0 if last is None else last + 1


def _validate_mutation(delta, entry_type: str, reverses_entry_id: int | None, reversal_kind: str | None) -> None:
    if not isinstance(delta, int) or isinstance(delta, bool):
        raise ValidationError("delta must be an integer")
    if delta == 0:
        raise ValidationError("delta must be non-zero")
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f"entry_type must be one of: {', '.join(ENTRY_TYPES)}")
    if reverses_entry_id is not None and reversal_kind not in REVERSAL_KINDS:
        raise ValidationError(f"reversal_kind must be one of: {', '.join(REVERSAL_KINDS)}")
    if reverses_entry_id is None and reversal_kind is not None:
        raise ValidationError("reversal_kind requires reverses_entry_id")


def _apply_mutation_inner(
    *,
    item_id: int,
    delta: int,
    entry_type: str,
    unit_price_cents_at_entry: int | None = None,
    related_session_id: str | None = None,
    related_customer_id: int | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
    idempotency_key: str | None = None,
    reverses_entry_id: int | None = None,
    reversal_kind: str | None = None,
) -> MutationResult:
    """Core mutation without retry or commit.

    Called by apply_mutation() and by the settlement coordinator, which
    composes it with loyalty effects inside its own transaction.
    """
    _validate_mutation(delta, entry_type, reverses_entry_id, reversal_kind)

    existing = find_idempotent_entry(idempotency_key, item_id=item_id, entry_type=entry_type)
    if existing is not None:
        return MutationResult(entry=existing, new_stock=existing.balance_after, replayed=True)

    item = get_item(item_id, require_active=reverses_entry_id is None, lock=True)

    current = item.stock_quantity
    new_stock = current + delta
    if new_stock < 0:
        raise InsufficientStock(available=current, requested=-delta, item_id=item_id)

    item.stock_quantity = new_stock
    try:
        db.session.flush()
    except StaleDataError as exc:
        raise ConcurrentConflict(
            f"Inventory item {item_id} changed during mutation",
            {"item_id": item_id},
        ) from exc

    entry = append_entry(
        item_id=item_id,
        delta=delta,
        entry_type=entry_type,
        balance_after=new_stock,
        unit_price_cents_at_entry=unit_price_cents_at_entry,
        related_session_id=related_session_id,
        related_customer_id=related_customer_id,
        payment_method=payment_method,
        notes=notes,
        performed_by=performed_by,
        idempotency_key=idempotency_key,
        idempotency_attempt=_next_attempt(idempotency_key),
        reverses_entry_id=reverses_entry_id,
        reversal_kind=reversal_kind,
    )
    return MutationResult(entry=entry, new_stock=new_stock)


def apply_mutation(
    item_id: int,
    delta: int,
    entry_type: str,
    *,
    unit_price_cents_at_entry: int | None = None,
    related_session_id: str | None = None,
    related_customer_id: int | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
    idempotency_key: str | None = None,
    reverses_entry_id: int | None = None,
    reversal_kind: str | None = None,
) -> MutationResult:
    """
    Apply one stock movement atomically and commit it.

    WHY retry: lock contention and stale versions are transient; the caller
    only sees the final outcome. When retries run out the caller receives
    StoreUnavailable and nothing was applied.
    """
    def _op():
        begin_write()
        result = _apply_mutation_inner(
            item_id=item_id,
            delta=delta,
            entry_type=entry_type,
            unit_price_cents_at_entry=unit_price_cents_at_entry,
            related_session_id=related_session_id,
            related_customer_id=related_customer_id,
            payment_method=payment_method,
            notes=notes,
            performed_by=performed_by,
            idempotency_key=idempotency_key,
            reverses_entry_id=reverses_entry_id,
            reversal_kind=reversal_kind,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)
