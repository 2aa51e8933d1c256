"""
Settlement Service - sale, restock and adjustment as all-or-nothing units

WHY: A counter sale is more than a stock decrement. It must also redeem or
award loyalty points, and the lounge can never be left with stock gone and
points untouched (or the reverse). This module composes one stock mutation
with its dependent effects and only reports success once everything holds.

State machine per request:

    RECEIVED -> VALIDATED -> MUTATED -> SETTLED
        |            |          |
        +------------+----------+--> REJECTED
                                |
                                +--> COMPENSATION_REQUIRED -> REJECTED

- Up to VALIDATED nothing is written; abandoning a request is free.
- With a transactional loyalty ledger, MUTATED and the loyalty effect share
  one DB transaction; a failure rolls both back (MUTATED -> REJECTED).
- With a non-transactional ledger the stock commit comes first; if the
  loyalty effect then fails, an equal-and-opposite adjustment entry reverses
  the mutation (COMPENSATION_REQUIRED -> REJECTED). If that reversal cannot
  be persisted, CompensationFailed is raised and logged CRITICAL.
- A SettlementResult is only ever returned from SETTLED.

Payment confirmation: mpesa / mpesa-stk / split sales commit optimistically;
a payment later reported failed is reconciled with void_sale().
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from flask import current_app

from ..errors import (
    CompensationFailed,
    LedgerError,
    LoyaltyEffectFailed,
    NotEligible,
    NotRedeemable,
    InsufficientPoints,
    ValidationError,
)
from ..extensions import db
from ..models import LedgerEntry
from ..permissions import Requester, require_capability
from ..validation import ADJUST_REASONS, MAX_QUANTITY, PAYMENT_METHODS
from .concurrency import begin_write, lock_for_update, run_with_retry
from .inventory_service import MutationResult, _apply_mutation_inner, find_idempotent_entry, get_item
from .loyalty_service import (
    LoyaltyLedger,
    get_customer,
    get_loyalty_ledger,
    points_for_amount,
    transactions_for_entry,
    append_loyalty_transaction,
)


class SettlementState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    MUTATED = "mutated"
    SETTLED = "settled"
    COMPENSATION_REQUIRED = "compensation_required"
    REJECTED = "rejected"


_TRANSITIONS = {
    SettlementState.RECEIVED: {SettlementState.VALIDATED, SettlementState.REJECTED},
    SettlementState.VALIDATED: {SettlementState.MUTATED, SettlementState.REJECTED},
    SettlementState.MUTATED: {
        SettlementState.SETTLED,
        SettlementState.COMPENSATION_REQUIRED,
        SettlementState.REJECTED,
    },
    SettlementState.COMPENSATION_REQUIRED: {SettlementState.REJECTED},
    SettlementState.SETTLED: set(),
    SettlementState.REJECTED: set(),
}


class Settlement:
    """Tracks one request through the settlement state machine."""

    def __init__(self, operation: str, item_id: int):
        self.operation = operation
        self.item_id = item_id
        self.state = SettlementState.RECEIVED
        self.history = [SettlementState.RECEIVED]

    @property
    def is_terminal(self) -> bool:
        return self.state in (SettlementState.SETTLED, SettlementState.REJECTED)

    def restart(self) -> None:
        """A retried attempt starts over from RECEIVED."""
        self.state = SettlementState.RECEIVED
        self.history.append(SettlementState.RECEIVED)

    def advance(self, new_state: SettlementState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"illegal settlement transition {self.state.value} -> {new_state.value}"
            )
        current_app.logger.debug(
            "%s of item %s: %s -> %s", self.operation, self.item_id, self.state.value, new_state.value
        )
        self.state = new_state
        self.history.append(new_state)


@dataclass
class LoyaltyEffect:
    customer_id: int
    transaction_type: str
    points: int
    description: str
    session_id: str | None = None


@dataclass
class SettlementResult:
    state: SettlementState
    operation: str
    item_id: int
    transaction_id: int
    new_stock: int
    total_cents: int = 0
    points_earned: int = 0
    points_redeemed: int = 0
    points_reversed: int = 0
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "operation": self.operation,
            "item_id": self.item_id,
            "transaction_id": self.transaction_id,
            "new_stock": self.new_stock,
            "total_cents": self.total_cents,
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "points_reversed": self.points_reversed,
            "replayed": self.replayed,
        }


def _check_quantity(quantity, field: str = "quantity") -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}")


def _replayed_result(operation: str, entry: LedgerEntry) -> SettlementResult:
    earned = redeemed = 0
    for tx in transactions_for_entry(entry.id):
        if tx.transaction_type == "earn":
            earned += tx.points
        elif tx.transaction_type == "redeem":
            redeemed += -tx.points
    unit = entry.unit_price_cents_at_entry or 0
    return SettlementResult(
        state=SettlementState.SETTLED,
        operation=operation,
        item_id=entry.item_id,
        transaction_id=entry.id,
        new_stock=entry.balance_after,
        total_cents=unit * abs(entry.delta) if operation == "sale" else 0,
        points_earned=earned,
        points_redeemed=redeemed,
        replayed=True,
    )


def _apply_effect(loyalty: LoyaltyLedger, effect: LoyaltyEffect, ledger_entry_id: int) -> None:
    loyalty.append_transaction(
        customer_id=effect.customer_id,
        transaction_type=effect.transaction_type,
        points=effect.points,
        description=effect.description,
        session_id=effect.session_id,
        ledger_entry_id=ledger_entry_id,
    )


def _compensate(mutation: MutationResult, *, performed_by: str | None, cause: str) -> MutationResult:
    """
    Reverse a committed mutation with an equal-and-opposite adjustment entry.

    Raises CompensationFailed (and logs CRITICAL) when the reversal cannot be
    persisted: stock and the loyalty ledger then disagree until an operator
    reconciles them.
    """
    entry_id = mutation.entry.id
    item_id = mutation.entry.item_id
    delta = mutation.entry.delta

    def _op():
        begin_write()
        result = _apply_mutation_inner(
            item_id=item_id,
            delta=-delta,
            entry_type="adjustment",
            notes=f"Compensation for entry {entry_id}: {cause}"[:255],
            performed_by=performed_by,
            reverses_entry_id=entry_id,
            reversal_kind="compensation",
        )
        db.session.commit()
        return result

    try:
        result = run_with_retry(_op)
    except Exception as exc:
        current_app.logger.critical(
            "Compensation failed for ledger entry %s (item %s, delta %+d); "
            "stock and loyalty ledger diverge and need manual reconciliation",
            entry_id, item_id, delta,
        )
        raise CompensationFailed(
            "Sale could not be completed or reversed; manual reconciliation required",
            {"item_id": item_id, "transaction_id": entry_id, "delta": delta, "cause": cause},
        ) from exc

    current_app.logger.warning(
        "Compensated ledger entry %s with entry %s (item %s, stock now %s)",
        entry_id, result.entry.id, item_id, result.new_stock,
    )
    return result


def _settle(
    settlement: Settlement,
    op,
    *,
    performed_by: str | None,
    loyalty: LoyaltyLedger | None = None,
) -> SettlementResult | None:
    """
    Run `op` inside the retry loop, then take the request to a terminal state.

    op(settlement) does one attempt (validate, mutate) and returns
    (replay, mutation, effect). A non-None replay is an idempotent hit and is
    returned as-is; otherwise None is returned once SETTLED.
    """
    def _attempt():
        if settlement.state is not SettlementState.RECEIVED:
            settlement.restart()
        begin_write()
        try:
            replay, mutation, effect = op(settlement)
            if replay is not None:
                db.session.commit()
                return replay, None, None
            if effect is not None and loyalty.transactional:
                _apply_effect(loyalty, effect, mutation.entry.id)
                effect = None
            db.session.commit()
        except Exception:
            if settlement.state is not SettlementState.REJECTED:
                settlement.advance(SettlementState.REJECTED)
            raise
        return None, mutation, effect

    replay, mutation, pending_effect = run_with_retry(_attempt)
    if replay is not None:
        return replay

    if pending_effect is not None:
        try:
            _apply_effect(loyalty, pending_effect, mutation.entry.id)
        except Exception as exc:
            settlement.advance(SettlementState.COMPENSATION_REQUIRED)
            cause = str(exc) or type(exc).__name__
            current_app.logger.warning(
                "Loyalty effect failed for ledger entry %s: %s", mutation.entry.id, cause
            )
            compensation = _compensate(mutation, performed_by=performed_by, cause=cause)
            settlement.advance(SettlementState.REJECTED)
            if isinstance(exc, LedgerError):
                exc.details.setdefault("compensation_entry_id", compensation.entry.id)
                raise
            raise LoyaltyEffectFailed(
                "Loyalty points could not be recorded; the sale was reversed",
                {"transaction_id": mutation.entry.id, "compensation_entry_id": compensation.entry.id},
            ) from exc

    settlement.advance(SettlementState.SETTLED)
    return None


def sell(
    item_id: int,
    quantity: int,
    *,
    payment_method: str,
    session_id: str | None = None,
    customer_id: int | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
    requester: Requester | None = None,
    loyalty: LoyaltyLedger | None = None,
) -> SettlementResult:
    """
    Sell `quantity` units of an item.

    Eligibility (checked before any write):
    - VIP-only items need a customer whose loyalty tier is VIP (NotEligible)
    - loyalty_points payment needs a customer, a redeemable item
      (NotRedeemable) and a balance >= points_required * quantity
      (InsufficientPoints; advisory, the points ledger re-checks on write)

    Effects: a loyalty_points sale redeems points; any other paid sale with a
    customer earns points_for_amount(total).
    """
    require_capability(requester, "SELL_INVENTORY")
    loyalty = loyalty or get_loyalty_ledger()
    if performed_by is None and requester is not None:
        performed_by = requester.staff_id

    settlement = Settlement("sale", item_id)
    totals = {}

    def op(s: Settlement):
        existing = find_idempotent_entry(idempotency_key, item_id=item_id, entry_type="sale")
        if existing is not None:
            return _replayed_result("sale", existing), None, None

        _check_quantity(quantity)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")

        item = get_item(item_id, require_active=True, lock=True)
        customer = get_customer(customer_id) if customer_id is not None else None

        if item.is_vip_only and (customer is None or not customer.is_vip):
            raise NotEligible(
                f"{item.name} is VIP only",
                {"item_id": item_id, "customer_id": customer_id},
            )

        total_cents = item.unit_price_cents * quantity
        effect = None
        if payment_method == "loyalty_points":
            if customer is None:
                raise ValidationError("customer_id is required for loyalty_points payment")
            if not item.is_redeemable:
                raise NotRedeemable(
                    f"{item.name} cannot be redeemed with loyalty points",
                    {"item_id": item_id},
                )
            required = item.points_required * quantity
            balance = loyalty.get_balance(customer.id)
            if balance < required:
                raise InsufficientPoints(balance=balance, required=required, customer_id=customer.id)
            if required > 0:
                effect = LoyaltyEffect(
                    customer_id=customer.id,
                    transaction_type="redeem",
                    points=-required,
                    description=f"Redeemed for {quantity} x {item.name}",
                    session_id=session_id,
                )
        elif customer is not None:
            earned = points_for_amount(total_cents)
            if earned > 0:
                effect = LoyaltyEffect(
                    customer_id=customer.id,
                    transaction_type="earn",
                    points=earned,
                    description=f"Earned from {quantity} x {item.name}",
                    session_id=session_id,
                )

        s.advance(SettlementState.VALIDATED)

        mutation = _apply_mutation_inner(
            item_id=item_id,
            delta=-quantity,
            entry_type="sale",
            unit_price_cents_at_entry=item.unit_price_cents,
            related_session_id=session_id,
            related_customer_id=customer.id if customer else None,
            payment_method=payment_method,
            notes=notes or f"Sale: {quantity} x {item.name}",
            performed_by=performed_by,
            idempotency_key=idempotency_key,
        )
        s.advance(SettlementState.MUTATED)

        totals.update(
            total_cents=total_cents,
            transaction_id=mutation.entry.id,
            new_stock=mutation.new_stock,
            points_earned=effect.points if effect and effect.transaction_type == "earn" else 0,
            points_redeemed=-effect.points if effect and effect.transaction_type == "redeem" else 0,
        )
        return None, mutation, effect

    replay = _settle(settlement, op, loyalty=loyalty, performed_by=performed_by)
    if replay is not None:
        return replay

    current_app.logger.info(
        "Sold %s x item %s via %s (entry %s, stock now %s)",
        quantity, item_id, payment_method, totals["transaction_id"], totals["new_stock"],
    )
    return SettlementResult(state=settlement.state, operation="sale", item_id=item_id, **totals)


def restock(
    item_id: int,
    quantity: int,
    *,
    cost_price_cents: int | None = None,
    supplier: str | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
    idempotency_key: str | None = None,
    requester: Requester | None = None,
) -> SettlementResult:
    """
    Add `quantity` units from a delivery.

    cost_price_cents / supplier, when given, update the catalog row in the
    same transaction as the stock movement.
    """
    require_capability(requester, "RESTOCK_INVENTORY")
    if performed_by is None and requester is not None:
        performed_by = requester.staff_id

    settlement = Settlement("restock", item_id)
    out = {}

    def op(s: Settlement):
        existing = find_idempotent_entry(idempotency_key, item_id=item_id, entry_type="restock")
        if existing is not None:
            return _replayed_result("restock", existing), None, None

        _check_quantity(quantity)
        if cost_price_cents is not None and cost_price_cents < 0:
            raise ValidationError("cost_price_cents must be >= 0")
        item = get_item(item_id, require_active=True)
        s.advance(SettlementState.VALIDATED)

        mutation = _apply_mutation_inner(
            item_id=item_id,
            delta=quantity,
            entry_type="restock",
            unit_price_cents_at_entry=cost_price_cents,
            notes=notes or f"Restock: {quantity} x {item.name}",
            performed_by=performed_by,
            idempotency_key=idempotency_key,
        )
        # Catalog updates go after the locked re-read inside the mutation
        if cost_price_cents is not None:
            item.cost_price_cents = cost_price_cents
        if supplier:
            item.supplier = supplier
        db.session.flush()
        s.advance(SettlementState.MUTATED)

        out.update(transaction_id=mutation.entry.id, new_stock=mutation.new_stock)
        return None, mutation, None

    replay = _settle(settlement, op, performed_by=performed_by)
    if replay is not None:
        return replay

    current_app.logger.info(
        "Restocked %s x item %s (entry %s, stock now %s)",
        quantity, item_id, out["transaction_id"], out["new_stock"],
    )
    return SettlementResult(state=settlement.state, operation="restock", item_id=item_id, **out)


def adjust(
    item_id: int,
    quantity_change: int,
    reason: str,
    *,
    notes: str | None = None,
    performed_by: str | None = None,
    idempotency_key: str | None = None,
    requester: Requester | None = None,
) -> SettlementResult:
    """
    Staff correction (reason="adjustment", either sign) or write-off of
    expired stock (reason="expired", negative only). Expired entries never
    count as sales revenue.
    """
    require_capability(requester, "ADJUST_INVENTORY")
    if performed_by is None and requester is not None:
        performed_by = requester.staff_id

    settlement = Settlement(reason if reason in ADJUST_REASONS else "adjustment", item_id)
    out = {}

    def op(s: Settlement):
        if reason not in ADJUST_REASONS:
            raise ValidationError(f"reason must be one of: {', '.join(ADJUST_REASONS)}")

        existing = find_idempotent_entry(idempotency_key, item_id=item_id, entry_type=reason)
        if existing is not None:
            return _replayed_result(reason, existing), None, None

        if not isinstance(quantity_change, int) or isinstance(quantity_change, bool) or quantity_change == 0:
            raise ValidationError("quantity_change must be a non-zero integer")
        if abs(quantity_change) > MAX_QUANTITY:
            raise ValidationError(f"quantity_change cannot exceed {MAX_QUANTITY}")
        if reason == "expired" and quantity_change > 0:
            raise ValidationError("quantity_change must be negative for expired stock")

        item = get_item(item_id, require_active=True)
        s.advance(SettlementState.VALIDATED)

        default_note = "Expired stock write-off" if reason == "expired" else "Stock adjustment"
        mutation = _apply_mutation_inner(
            item_id=item_id,
            delta=quantity_change,
            entry_type=reason,
            unit_price_cents_at_entry=item.unit_price_cents,
            notes=notes or default_note,
            performed_by=performed_by,
            idempotency_key=idempotency_key,
        )
        s.advance(SettlementState.MUTATED)

        out.update(transaction_id=mutation.entry.id, new_stock=mutation.new_stock)
        return None, mutation, None

    replay = _settle(settlement, op, performed_by=performed_by)
    if replay is not None:
        return replay

    current_app.logger.info(
        "Adjusted item %s by %+d (%s, entry %s, stock now %s)",
        item_id, quantity_change, reason, out["transaction_id"], out["new_stock"],
    )
    return SettlementResult(state=settlement.state, operation=reason, item_id=item_id, **out)


def void_sale(
    entry_id: int,
    *,
    reason: str,
    performed_by: str | None = None,
    requester: Requester | None = None,
) -> SettlementResult:
    """
    Reverse a recorded sale: put the stock back and undo the sale's loyalty
    points, in one transaction.

    Used to reconcile optimistic M-Pesa sales whose payment later failed.
    A sale can be voided once. Loyalty reversals go through the local points
    ledger, which refuses to take a balance negative (InsufficientPoints).
    """
    require_capability(requester, "VOID_SALE")
    if performed_by is None and requester is not None:
        performed_by = requester.staff_id
    if not reason or not reason.strip():
        raise ValidationError("reason is required to void a sale")

    original = db.session.get(LedgerEntry, entry_id)
    if original is None:
        raise ValidationError(f"Ledger entry {entry_id} not found", {"transaction_id": entry_id})

    settlement = Settlement("void", original.item_id)
    out = {}

    def op(s: Settlement):
        sale = lock_for_update(
            db.session.query(LedgerEntry).filter_by(id=entry_id)
        ).populate_existing().first()
        if sale.entry_type != "sale":
            raise ValidationError("Only sale entries can be voided", {"transaction_id": entry_id})
        already = db.session.query(LedgerEntry.id).filter_by(reverses_entry_id=entry_id).first()
        if already is not None:
            raise ValidationError(
                "Sale already voided",
                {"transaction_id": entry_id, "reversed_by": already.id},
            )
        s.advance(SettlementState.VALIDATED)

        mutation = _apply_mutation_inner(
            item_id=sale.item_id,
            delta=-sale.delta,
            entry_type="adjustment",
            related_session_id=sale.related_session_id,
            related_customer_id=sale.related_customer_id,
            notes=f"Void sale {entry_id}: {reason.strip()}"[:255],
            performed_by=performed_by,
            reverses_entry_id=entry_id,
            reversal_kind="void",
        )
        s.advance(SettlementState.MUTATED)

        reversed_points = 0
        for tx in transactions_for_entry(entry_id):
            append_loyalty_transaction(
                customer_id=tx.customer_id,
                transaction_type="adjust",
                points=-tx.points,
                description=f"Reversal of {tx.transaction_type} for voided sale {entry_id}",
                session_id=tx.session_id,
                ledger_entry_id=mutation.entry.id,
            )
            reversed_points += tx.points

        out.update(
            transaction_id=mutation.entry.id,
            new_stock=mutation.new_stock,
            points_reversed=reversed_points,
        )
        return None, mutation, None

    _settle(settlement, op, performed_by=performed_by)

    current_app.logger.info(
        "Voided sale entry %s with entry %s (%s)", entry_id, out["transaction_id"], reason.strip()
    )
    return SettlementResult(state=settlement.state, operation="void", item_id=original.item_id, **out)
