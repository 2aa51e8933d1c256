# Overview: Service-layer operations for loyalty points; balance reads and the append-only points ledger.

from __future__ import annotations

from typing import Protocol

from flask import current_app
from sqlalchemy import func

from ..errors import InsufficientPoints, ValidationError
from ..extensions import db
from ..models import Customer, LoyaltyTransaction
from .concurrency import lock_for_update


TRANSACTION_TYPES = ("earn", "redeem", "adjust")


class LoyaltyLedger(Protocol):
    """
    What settlement needs from the loyalty system.

    transactional=True means writes join the caller's database transaction,
    so a failure rolls back the stock mutation with it. A remote loyalty
    service is transactional=False and is called after the stock commit; the
    settlement coordinator compensates the mutation if it fails.
    """
    transactional: bool

    def get_balance(self, customer_id: int) -> int: ...

    def append_transaction(
        self,
        *,
        customer_id: int,
        transaction_type: str,
        points: int,
        description: str | None = None,
        session_id: str | None = None,
        ledger_entry_id: int | None = None,
    ): ...


def get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None or not customer.is_active:
        raise ValidationError(f"Customer {customer_id} not found", {"customer_id": customer_id})
    return customer


def get_balance(customer_id: int) -> int:
    total = db.session.query(
        func.coalesce(func.sum(LoyaltyTransaction.points), 0)
    ).filter(LoyaltyTransaction.customer_id == customer_id).scalar()
    return int(total or 0)


def append_loyalty_transaction(
    *,
    customer_id: int,
    transaction_type: str,
    points: int,
    description: str | None = None,
    session_id: str | None = None,
    ledger_entry_id: int | None = None,
) -> LoyaltyTransaction:
    """
    Append one loyalty transaction in the current DB transaction (no commit).

    The points ledger enforces its own invariant: a balance never goes
    negative. The customer row is locked first so two redemptions for the
    same customer cannot both pass the balance check.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"transaction_type must be one of: {', '.join(TRANSACTION_TYPES)}")
    if points == 0:
        raise ValidationError("points must be non-zero")

    get_customer(customer_id, lock=True)

    if points < 0:
        balance = get_balance(customer_id)
        if balance + points < 0:
            raise InsufficientPoints(balance=balance, required=-points, customer_id=customer_id)

    tx = LoyaltyTransaction(
        customer_id=customer_id,
        transaction_type=transaction_type,
        points=points,
        description=description,
        session_id=session_id,
        ledger_entry_id=ledger_entry_id,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def transactions_for_entry(ledger_entry_id: int) -> list[LoyaltyTransaction]:
    return db.session.query(LoyaltyTransaction).filter_by(
        ledger_entry_id=ledger_entry_id
    ).order_by(LoyaltyTransaction.id.asc()).all()


def list_transactions(customer_id: int, *, limit: int = 20) -> list[LoyaltyTransaction]:
    return db.session.query(LoyaltyTransaction).filter_by(
        customer_id=customer_id
    ).order_by(
        LoyaltyTransaction.created_at.desc(),
        LoyaltyTransaction.id.desc(),
    ).limit(limit).all()


def points_for_amount(total_cents: int) -> int:
    """Points earned for a paid amount: 1 point per LOYALTY_CENTS_PER_POINT, rounded down."""
    cents_per_point = current_app.config.get("LOYALTY_CENTS_PER_POINT", 1000)
    if total_cents <= 0 or cents_per_point <= 0:
        return 0
    return total_cents // cents_per_point


class LocalLoyaltyLedger:
    """Loyalty ledger stored in the lounge database."""
    transactional = True

    def get_balance(self, customer_id: int) -> int:
        return get_balance(customer_id)

    def append_transaction(self, **kwargs) -> LoyaltyTransaction:
        return append_loyalty_transaction(**kwargs)


def get_loyalty_ledger() -> LoyaltyLedger:
    """The app's configured loyalty ledger (app.extensions["loyalty_ledger"])."""
    ledger = current_app.extensions.get("loyalty_ledger")
    if ledger is None:
        ledger = LocalLoyaltyLedger()
        current_app.extensions["loyalty_ledger"] = ledger
    return ledger
