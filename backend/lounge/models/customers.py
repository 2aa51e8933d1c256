from __future__ import annotations

from ..extensions import db
from lounge.time_utils import to_utc_z


LOYALTY_TIERS = ("Bronze", "Silver", "Gold", "VIP")


class Customer(db.Model):
    """
    Lounge customer, as far as the ledger needs one.

    The customer registry belongs to the front-desk application; this table
    carries the fields settlement reads (tier for VIP-only items) and anchors
    the loyalty ledger.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_phone", "phone_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    full_name = db.Column(db.String(255), nullable=False)
    phone_number = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)

    loyalty_tier = db.Column(db.String(16), nullable=False, default="Bronze")

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def is_vip(self) -> bool:
        return self.loyalty_tier == "VIP"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "email": self.email,
            "loyalty_tier": self.loyalty_tier,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - earn: Points earned from a sale
    - redeem: Points spent on a redeemable item
    - adjust: Reversal of an earlier earn/redeem (e.g. voided sale)

    A customer's balance is SUM(points). IMMUTABLE: records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)  # earn, redeem, adjust
    points = db.Column(db.Integer, nullable=False)  # Positive for earn, negative for redeem
    description = db.Column(db.String(255), nullable=True)

    session_id = db.Column(db.String(64), nullable=True)
    ledger_entry_id = db.Column(
        db.Integer, db.ForeignKey("inventory_ledger_entries.id"), nullable=True, index=True
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    customer = db.relationship("Customer", backref=db.backref("loyalty_transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "description": self.description,
            "session_id": self.session_id,
            "ledger_entry_id": self.ledger_entry_id,
            "created_at": to_utc_z(self.created_at),
        }
