"""Mutation engine: non-negativity, idempotency and retry semantics."""

import pytest
from sqlalchemy.exc import OperationalError

from lounge.errors import (
    ConcurrentConflict,
    IdempotencyConflict,
    InsufficientStock,
    ItemNotFound,
    StoreUnavailable,
    ValidationError,
)
from lounge.extensions import db
from lounge.models import InventoryItem, LedgerEntry
from lounge.services import inventory_service, settlement_service
from lounge.services.concurrency import run_with_retry


def _entry_count(item_id):
    return db.session.query(LedgerEntry).filter_by(item_id=item_id).count()


def test_apply_mutation_writes_stock_and_one_entry(db_session, make_item):
    item = make_item(stock=10)

    result = inventory_service.apply_mutation(item.id, -3, "sale", payment_method="cash")

    assert result.new_stock == 7
    assert not result.replayed
    assert result.entry.delta == -3
    assert result.entry.balance_after == 7
    assert db_session.get(InventoryItem, item.id).stock_quantity == 7
    assert _entry_count(item.id) == 2


def test_insufficient_stock_has_no_effect(db_session, make_item):
    item = make_item(stock=7)

    with pytest.raises(InsufficientStock) as exc_info:
        inventory_service.apply_mutation(item.id, -20, "sale")

    assert exc_info.value.available == 7
    assert exc_info.value.requested == 20
    assert exc_info.value.details["item_id"] == item.id
    assert db_session.get(InventoryItem, item.id).stock_quantity == 7
    assert _entry_count(item.id) == 1


def test_selling_exactly_the_remaining_stock_reaches_zero(db_session, make_item):
    item = make_item(stock=3)
    result = inventory_service.apply_mutation(item.id, -3, "sale")
    assert result.new_stock == 0


@pytest.mark.parametrize("delta", [0, 1.5, "3", True])
def test_invalid_delta_rejected(db_session, make_item, delta):
    item = make_item(stock=3)
    with pytest.raises(ValidationError):
        inventory_service.apply_mutation(item.id, delta, "adjustment")
    assert _entry_count(item.id) == 1


def test_unknown_entry_type_rejected(db_session, make_item):
    item = make_item(stock=3)
    with pytest.raises(ValidationError):
        inventory_service.apply_mutation(item.id, 1, "gift")


def test_unknown_item(db_session):
    with pytest.raises(ItemNotFound) as exc_info:
        inventory_service.apply_mutation(404, 1, "restock")
    assert exc_info.value.status_code == 404


def test_retired_item_rejects_new_movements(db_session, make_item):
    item = make_item(stock=3)
    item.is_active = False
    db_session.commit()

    with pytest.raises(ItemNotFound) as exc_info:
        inventory_service.apply_mutation(item.id, -1, "sale")
    assert exc_info.value.details["retired"] is True


def test_version_id_increments_per_mutation(db_session, make_item):
    item = make_item(stock=10)
    before = db_session.get(InventoryItem, item.id).version_id

    inventory_service.apply_mutation(item.id, -1, "sale")
    inventory_service.apply_mutation(item.id, -1, "sale")

    db_session.expire_all()
    assert db_session.get(InventoryItem, item.id).version_id == before + 2


def test_idempotent_replay_returns_original_result(db_session, make_item):
    item = make_item(stock=10)

    first = inventory_service.apply_mutation(item.id, -2, "sale", idempotency_key="req-1")
    inventory_service.apply_mutation(item.id, -1, "sale")
    again = inventory_service.apply_mutation(item.id, -2, "sale", idempotency_key="req-1")

    assert again.replayed
    assert again.entry.id == first.entry.id
    assert again.new_stock == 8
    assert db_session.get(InventoryItem, item.id).stock_quantity == 7
    assert _entry_count(item.id) == 3


def test_idempotency_key_reused_for_other_item(db_session, make_item):
    a = make_item(name="A", stock=5)
    b = make_item(name="B", stock=5)
    inventory_service.apply_mutation(a.id, -1, "sale", idempotency_key="req-2")

    with pytest.raises(IdempotencyConflict):
        inventory_service.apply_mutation(b.id, -1, "sale", idempotency_key="req-2")
    assert db_session.get(InventoryItem, b.id).stock_quantity == 5


def test_idempotency_key_after_reversal_conflicts(db_session, make_item):
    item = make_item(stock=5)
    sale = settlement_service.sell(item.id, 2, payment_method="mpesa", idempotency_key="req-3")
    settlement_service.void_sale(sale.transaction_id, reason="payment failed")

    with pytest.raises(IdempotencyConflict) as exc_info:
        inventory_service.apply_mutation(item.id, -2, "sale", idempotency_key="req-3")
    assert "reversed_by" in exc_info.value.details


def test_run_with_retry_retries_then_gives_up(app, db_session):
    calls = []

    def always_conflicts():
        calls.append(1)
        raise ConcurrentConflict("stale")

    with pytest.raises(StoreUnavailable) as exc_info:
        run_with_retry(always_conflicts, attempts=3, backoff_base=0)

    assert len(calls) == 3
    assert exc_info.value.details == {"attempts": 3, "cause": "ConcurrentConflict"}


def test_run_with_retry_recovers_from_transient_lock(app, db_session):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return "ok"

    assert run_with_retry(flaky, backoff_base=0) == "ok"
    assert len(calls) == 2


def test_run_with_retry_propagates_business_errors_immediately(app, db_session):
    calls = []

    def rejects():
        calls.append(1)
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        run_with_retry(rejects, backoff_base=0)
    assert len(calls) == 1
