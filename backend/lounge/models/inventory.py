from __future__ import annotations

from ..extensions import db
from lounge.time_utils import to_utc_z


ENTRY_TYPES = ("sale", "restock", "adjustment", "expired")
REVERSAL_KINDS = ("void", "compensation")


class InventoryItem(db.Model):
    """
    Catalog row for anything the lounge sells: snacks, drinks, gaming accessories.

    STOCK DESIGN DECISION:
    stock_quantity is a materialized cache of SUM(delta) over the item's
    LedgerEntry rows. Only the mutation engine (services/inventory_service.py)
    writes it, in the same transaction that appends the ledger entry.

    version_id guards concurrent writers: a flush against a stale version
    raises StaleDataError instead of silently overwriting stock.

    RETIREMENT:
    Items with ledger history are never hard-deleted; they are marked
    is_active=False so the audit trail keeps resolving.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.Index("ix_inventory_items_category_name", "category", "name"),
        db.Index("ix_inventory_items_active_stock", "is_active", "stock_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=False, index=True)

    # Authoritative storage in cents (frontend may only format for display)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5)

    is_redeemable = db.Column(db.Boolean, nullable=False, default=False)
    points_required = db.Column(db.Integer, nullable=False, default=0)
    is_vip_only = db.Column(db.Boolean, nullable=False, default=False)
    is_promo_active = db.Column(db.Boolean, nullable=False, default=False)

    expiry_date = db.Column(db.Date, nullable=True, index=True)
    supplier = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} name={self.name!r} stock={self.stock_quantity}>"

    @property
    def stock_value_cents(self) -> int:
        return self.unit_price_cents * self.stock_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "unit_price_cents": self.unit_price_cents,
            "cost_price_cents": self.cost_price_cents,
            "stock_quantity": self.stock_quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_redeemable": self.is_redeemable,
            "points_required": self.points_required,
            "is_vip_only": self.is_vip_only,
            "is_promo_active": self.is_promo_active,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "supplier": self.supplier,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only history of stock movements.

    IMMUTABLE: rows are inserted once by the mutation engine and never
    updated or deleted. Corrections are new rows; a void or compensation
    points back at the entry it cancels through reverses_entry_id, and
    reversal_kind says which of the two it is.

    IDEMPOTENCY:
    (idempotency_key, idempotency_attempt) is unique. A compensated entry
    never settled, so a retry with its key is written as the next attempt;
    every other committed key replays or conflicts.

    balance_after snapshots stock_quantity right after this entry, so an
    idempotent replay can answer with the original result and replay tooling
    can verify running sums.
    """
    __tablename__ = "inventory_ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_item_created", "item_id", "created_at"),
        db.Index("ix_ledger_type_created", "entry_type", "created_at"),
        db.UniqueConstraint("idempotency_key", "idempotency_attempt", name="uq_ledger_idempotency_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)

    delta = db.Column(db.Integer, nullable=False)
    entry_type = db.Column(db.String(16), nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    # Price snapshot for revenue attribution
    unit_price_cents_at_entry = db.Column(db.Integer, nullable=True)

    related_session_id = db.Column(db.String(64), nullable=True, index=True)
    related_customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    payment_method = db.Column(db.String(32), nullable=True)

    notes = db.Column(db.String(255), nullable=True)
    performed_by = db.Column(db.String(64), nullable=True)

    idempotency_key = db.Column(db.String(128), nullable=True)
    idempotency_attempt = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    reverses_entry_id = db.Column(
        db.Integer, db.ForeignKey("inventory_ledger_entries.id"), nullable=True, index=True
    )
    reversal_kind = db.Column(db.String(16), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    item = db.relationship("InventoryItem", backref=db.backref("ledger_entries", lazy="dynamic"))

    def __repr__(self) -> str:
        return f"<LedgerEntry id={self.id} item_id={self.item_id} {self.entry_type} {self.delta:+d}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "delta": self.delta,
            "entry_type": self.entry_type,
            "balance_after": self.balance_after,
            "unit_price_cents_at_entry": self.unit_price_cents_at_entry,
            "related_session_id": self.related_session_id,
            "related_customer_id": self.related_customer_id,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "performed_by": self.performed_by,
            "idempotency_key": self.idempotency_key,
            "reverses_entry_id": self.reverses_entry_id,
            "reversal_kind": self.reversal_kind,
            "created_at": to_utc_z(self.created_at),
        }
