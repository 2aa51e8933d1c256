"""
Concurrent settlement against a file-backed SQLite database.

Each worker thread pushes its own app context, so it gets its own session
and connection, the way concurrent requests do.
"""

import threading

import pytest

from lounge import create_app
from lounge.errors import InsufficientStock
from lounge.extensions import db
from lounge.models import InventoryItem, LedgerEntry
from lounge.services import catalog_service, ledger_service, settlement_service


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'MUTATION_RETRY_ATTEMPTS': 5,
        'MUTATION_RETRY_BACKOFF': 0.01,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_workers(app, count, work):
    results = []
    lock = threading.Lock()
    start = threading.Barrier(count)

    def worker(n):
        with app.app_context():
            start.wait()
            try:
                outcome = work(n)
            except Exception as exc:
                outcome = exc
            finally:
                db.session.remove()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_n_plus_one_concurrent_sells(file_app):
    stock = 6
    item_id = catalog_service.create_item(
        {"name": "PS5 Controller", "category": "Accessories", "unit_price_cents": 950000},
        opening_stock=stock,
    )["id"]

    results = _run_workers(
        file_app,
        stock + 1,
        lambda n: settlement_service.sell(item_id, 1, payment_method="cash", session_id=f"station-{n}"),
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(results) == stock + 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStock)

    db.session.expire_all()
    assert db.session.get(InventoryItem, item_id).stock_quantity == 0
    assert db.session.query(LedgerEntry).filter_by(item_id=item_id, entry_type="sale").count() == stock
    assert ledger_service.find_inconsistencies() == []
    assert ledger_service.replay_item(item_id).consistent


def test_concurrent_retries_with_one_idempotency_key(file_app):
    item_id = catalog_service.create_item(
        {"name": "Coca-Cola 500ml", "category": "Drinks", "unit_price_cents": 10000},
        opening_stock=10,
    )["id"]

    results = _run_workers(
        file_app,
        4,
        lambda n: settlement_service.sell(item_id, 2, payment_method="mpesa", idempotency_key="till-3-0007"),
    )

    assert not [r for r in results if isinstance(r, Exception)]
    assert len({r.transaction_id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1

    db.session.expire_all()
    assert db.session.get(InventoryItem, item_id).stock_quantity == 8


def test_concurrent_sells_of_different_items(file_app):
    ids = [
        catalog_service.create_item(
            {"name": f"Snack {n}", "category": "Snacks", "unit_price_cents": 5000},
            opening_stock=3,
        )["id"]
        for n in range(3)
    ]

    results = _run_workers(
        file_app,
        6,
        lambda n: settlement_service.sell(ids[n % 3], 1, payment_method="cash"),
    )

    assert not [r for r in results if isinstance(r, Exception)]
    db.session.expire_all()
    assert [db.session.get(InventoryItem, i).stock_quantity for i in ids] == [1, 1, 1]
