from sqlalchemy import text

from lounge.models import Customer, InventoryItem


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed-demo"])
    assert result.exit_code == 0, result.output
    items = db_session.query(InventoryItem).count()
    assert items > 0
    assert db_session.query(Customer).filter_by(loyalty_tier="VIP").count() == 1

    again = runner.invoke(args=["system", "seed-demo"])
    assert again.exit_code == 0
    assert "SKIP" in again.output
    assert db_session.query(InventoryItem).count() == items


def test_ledger_reconcile_exit_codes(app, db_session, make_item):
    item = make_item(stock=5)
    runner = app.test_cli_runner()

    ok = runner.invoke(args=["ledger", "reconcile"])
    assert ok.exit_code == 0
    assert "PASS" in ok.output

    db_session.execute(text("UPDATE inventory_items SET stock_quantity = 9 WHERE id = :id"), {"id": item.id})
    db_session.commit()

    bad = runner.invoke(args=["ledger", "reconcile", "--item-id", str(item.id)])
    assert bad.exit_code == 1
    assert "cached 9, ledger 5" in bad.output


def test_ledger_replay(app, db_session, make_item):
    item = make_item(stock=5)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "replay", str(item.id)])
    assert result.exit_code == 0
    assert "1 entries" in result.output

    missing = runner.invoke(args=["ledger", "replay", "999"])
    assert missing.exit_code != 0


def test_ledger_low_stock(app, db_session, make_item):
    make_item(name="Plenty", stock=40)
    make_item(name="Nearly gone", stock=1)
    make_item(name="On the line", stock=5, low_stock_threshold=5)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["ledger", "low-stock"])
    assert result.exit_code == 0
    assert "Nearly gone" in result.output
    assert "Plenty" not in result.output
    assert "On the line" not in result.output
