# Overview: Service-layer operations for the stock ledger; append-only persistence and replay.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ..errors import StoreUnavailable, ValidationError
from ..extensions import db
from ..models import InventoryItem, LedgerEntry
from lounge.time_utils import utcnow
"""
Lounge Stock Ledger Invariants (authoritative)

- inventory_ledger_entries is append-only: no updates, no deletes.
- Entries are written inside the same DB transaction as the stock change they record.
- For every item: InventoryItem.stock_quantity == SUM(LedgerEntry.delta).
- created_at is assigned here, never by callers, and never goes backwards for an item.
- Reads order by (created_at, id); id breaks ties between entries stamped in the same instant.
"""

MAX_PAGE_SIZE = 500


@dataclass
class LedgerPage:
    entries: list[LedgerEntry]
    next_cursor: Optional[int] = None
    limit: int = 50

    def to_dict(self) -> dict:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "next_cursor": self.next_cursor,
            "limit": self.limit,
        }


@dataclass
class ReplayReport:
    item_id: int
    entries: int = 0
    ledger_stock: int = 0
    cached_stock: int = 0
    mismatches: list[dict] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.mismatches and self.ledger_stock == self.cached_stock

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "entries": self.entries,
            "ledger_stock": self.ledger_stock,
            "cached_stock": self.cached_stock,
            "consistent": self.consistent,
            "mismatches": self.mismatches,
        }


def append_entry(
    *,
    item_id: int,
    delta: int,
    entry_type: str,
    balance_after: int,
    unit_price_cents_at_entry: int | None = None,
    related_session_id: str | None = None,
    related_customer_id: int | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
    idempotency_key: str | None = None,
    idempotency_attempt: int = 0,
    reverses_entry_id: int | None = None,
    reversal_kind: str | None = None,
) -> LedgerEntry:
    """
    Append one ledger entry in the current transaction.

    - No stock logic here; the mutation engine decides what to write.
    - The id and created_at are assigned by the store.
    - Lock and unique-key failures propagate for the caller's retry loop;
      any other persistence failure surfaces as StoreUnavailable.
    """
    now = utcnow()
    last = db.session.query(func.max(LedgerEntry.created_at)).filter(
        LedgerEntry.item_id == item_id
    ).scalar()
    if last is not None and last.tzinfo is None and last > now:
        now = last

    entry = LedgerEntry(
        item_id=item_id,
        delta=delta,
        entry_type=entry_type,
        balance_after=balance_after,
        unit_price_cents_at_entry=unit_price_cents_at_entry,
        related_session_id=related_session_id,
        related_customer_id=related_customer_id,
        payment_method=payment_method,
        notes=notes,
        performed_by=performed_by,
        idempotency_key=idempotency_key,
        idempotency_attempt=idempotency_attempt,
        reverses_entry_id=reverses_entry_id,
        reversal_kind=reversal_kind,
        created_at=now,
    )
    db.session.add(entry)
    try:
        db.session.flush()  # ensures entry.id is assigned without committing
    except (OperationalError, IntegrityError):
        raise
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Could not persist ledger entry") from exc
    return entry


def get_current_stock(item_id: int) -> int:
    """Authoritative stock, served from the cached column."""
    stock = db.session.query(InventoryItem.stock_quantity).filter_by(id=item_id).scalar()
    if stock is None:
        raise ValidationError(f"Inventory item {item_id} not found")
    return int(stock)


def get_ledger_stock(item_id: int) -> int:
    """Stock recomputed from the ledger: SUM(delta)."""
    total = db.session.query(
        func.coalesce(func.sum(LedgerEntry.delta), 0)
    ).filter(LedgerEntry.item_id == item_id).scalar()
    return int(total or 0)


def _ordered(query, *, descending: bool):
    if descending:
        return query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
    return query.order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())


def _keyset(query, cursor: LedgerEntry, *, descending: bool):
    if descending:
        return query.filter(
            or_(
                LedgerEntry.created_at < cursor.created_at,
                and_(LedgerEntry.created_at == cursor.created_at, LedgerEntry.id < cursor.id),
            )
        )
    return query.filter(
        or_(
            LedgerEntry.created_at > cursor.created_at,
            and_(LedgerEntry.created_at == cursor.created_at, LedgerEntry.id > cursor.id),
        )
    )


def list_entries(
    item_id: int | None = None,
    limit: int = 50,
    before: int | None = None,
) -> LedgerPage:
    """
    One page of entries, newest first.

    `before` is the id of the last entry of the previous page; pass the
    returned next_cursor to continue. next_cursor is None on the last page.
    """
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))

    q = db.session.query(LedgerEntry)
    if item_id is not None:
        q = q.filter(LedgerEntry.item_id == item_id)

    if before is not None:
        cursor = db.session.get(LedgerEntry, before)
        if cursor is None:
            raise ValidationError(f"Unknown ledger cursor {before}")
        q = _keyset(q, cursor, descending=True)

    rows = _ordered(q, descending=True).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = rows[-1].id

    return LedgerPage(entries=rows, next_cursor=next_cursor, limit=limit)


def iter_entries(item_id: int | None = None, page_size: int = 200) -> Iterator[LedgerEntry]:
    """Lazily walk the ledger oldest -> newest, one bounded page at a time."""
    page_size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    cursor: LedgerEntry | None = None
    while True:
        q = db.session.query(LedgerEntry)
        if item_id is not None:
            q = q.filter(LedgerEntry.item_id == item_id)
        if cursor is not None:
            q = _keyset(q, cursor, descending=False)
        rows = _ordered(q, descending=False).limit(page_size).all()
        if not rows:
            return
        yield from rows
        if len(rows) < page_size:
            return
        cursor = rows[-1]


def find_inconsistencies(item_id: int | None = None) -> list[dict]:
    """
    Items whose cached stock_quantity differs from SUM(delta) of their ledger.

    Any row returned here is a divergence that needs manual reconciliation.
    """
    sums = db.session.query(
        LedgerEntry.item_id.label("item_id"),
        func.sum(LedgerEntry.delta).label("ledger_stock"),
    ).group_by(LedgerEntry.item_id).subquery()

    q = db.session.query(
        InventoryItem.id,
        InventoryItem.name,
        InventoryItem.stock_quantity,
        func.coalesce(sums.c.ledger_stock, 0),
    ).outerjoin(sums, sums.c.item_id == InventoryItem.id)
    if item_id is not None:
        q = q.filter(InventoryItem.id == item_id)

    out = []
    for row_id, name, cached, ledger_stock in q.order_by(InventoryItem.id).all():
        if int(cached) != int(ledger_stock):
            out.append({
                "item_id": row_id,
                "name": name,
                "cached_stock": int(cached),
                "ledger_stock": int(ledger_stock),
            })
    return out


def replay_item(item_id: int, *, max_mismatches: int = 20) -> ReplayReport:
    """
    Replay an item's ledger in order, checking every balance_after snapshot
    against the running sum and the final sum against the cached column.
    """
    report = ReplayReport(item_id=item_id, cached_stock=get_current_stock(item_id))
    running = 0
    for entry in iter_entries(item_id):
        running += entry.delta
        report.entries += 1
        if entry.balance_after != running and len(report.mismatches) < max_mismatches:
            report.mismatches.append({
                "entry_id": entry.id,
                "balance_after": entry.balance_after,
                "running_sum": running,
            })
        if running < 0 and len(report.mismatches) < max_mismatches:
            report.mismatches.append({"entry_id": entry.id, "negative_running_sum": running})
    report.ledger_stock = running
    return report
