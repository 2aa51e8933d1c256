"""HTTP surface: staff context, error envelope, idempotency header and dashboard reads."""

from lounge.models import LedgerEntry

from conftest import staff_headers


def _create(client, **fields):
    body = {"name": "Coca-Cola 500ml", "category": "Drinks", "unit_price_cents": 10000}
    body.update(fields)
    resp = client.post("/api/inventory/", json=body, headers=staff_headers())
    assert resp.status_code == 201, resp.json
    return resp.json["item"]


def test_missing_staff_context_is_401(client, db_session):
    resp = client.get("/api/inventory/")
    assert resp.status_code == 401
    assert resp.json["error"] == "authentication_required"


def test_unknown_role_is_401(client, db_session):
    resp = client.get("/api/inventory/", headers=staff_headers(role="janitor"))
    assert resp.status_code == 401


def test_cashier_cannot_manage_catalog(client, db_session):
    resp = client.post(
        "/api/inventory/",
        json={"name": "Coke", "category": "Drinks", "unit_price_cents": 100},
        headers=staff_headers(role="cashier"),
    )
    assert resp.status_code == 403
    assert resp.json["details"]["required_capability"] == "MANAGE_CATALOG"


def test_create_and_fetch_item(client, db_session):
    item = _create(client, stock_quantity=12)
    assert item["stock_quantity"] == 12

    resp = client.get(f"/api/inventory/{item['id']}", headers=staff_headers(role="cashier"))
    assert resp.status_code == 200
    assert resp.json["item"]["name"] == "Coca-Cola 500ml"


def test_get_unknown_item_is_404(client, db_session):
    resp = client.get("/api/inventory/999", headers=staff_headers())
    assert resp.status_code == 404
    assert resp.json["error"] == "validation_error"


def test_put_rejects_stock_quantity(client, db_session):
    item = _create(client, stock_quantity=3)
    resp = client.put(f"/api/inventory/{item['id']}", json={"stock_quantity": 30}, headers=staff_headers())
    assert resp.status_code == 400
    assert resp.json["error"] == "validation_error"


def test_sell_flow_and_insufficient_stock(client, db_session):
    item = _create(client, stock_quantity=10)

    resp = client.post(
        "/api/inventory/sell",
        json={"item_id": item["id"], "quantity": 3, "payment_method": "cash"},
        headers=staff_headers(role="cashier", staff_id="till-1"),
    )
    assert resp.status_code == 201
    assert resp.json["new_stock"] == 7
    assert resp.json["state"] == "settled"
    assert db_session.get(LedgerEntry, resp.json["transaction_id"]).performed_by == "till-1"

    resp = client.post(
        "/api/inventory/sell",
        json={"item_id": item["id"], "quantity": 20, "payment_method": "cash"},
        headers=staff_headers(role="cashier"),
    )
    assert resp.status_code == 409
    assert resp.json["error"] == "insufficient_stock"
    assert resp.json["details"]["available"] == 7
    assert resp.json["details"]["requested"] == 20


def test_sell_validation_errors(client, db_session):
    item = _create(client, stock_quantity=10)
    for body in (
        {"item_id": item["id"], "quantity": 0, "payment_method": "cash"},
        {"item_id": item["id"], "quantity": 1.5, "payment_method": "cash"},
        {"item_id": item["id"], "quantity": 1, "payment_method": "barter"},
        {"item_id": item["id"], "quantity": 1, "payment_method": "loyalty_points"},
        {"item_id": item["id"], "quantity": 1},
        {"item_id": item["id"], "quantity": 1, "payment_method": "cash", "discount": 5},
    ):
        resp = client.post("/api/inventory/sell", json=body, headers=staff_headers())
        assert resp.status_code == 400, body


def test_idempotency_key_header_replays(client, db_session):
    item = _create(client, stock_quantity=10)
    headers = dict(staff_headers(role="cashier"), **{"Idempotency-Key": "till-1-0042"})
    body = {"item_id": item["id"], "quantity": 2, "payment_method": "mpesa"}

    first = client.post("/api/inventory/sell", json=body, headers=headers)
    second = client.post("/api/inventory/sell", json=body, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json["replayed"] is True
    assert second.json["transaction_id"] == first.json["transaction_id"]
    assert client.get(f"/api/inventory/{item['id']}", headers=headers).json["item"]["stock_quantity"] == 8


def test_restock_adjust_and_void(client, db_session):
    item = _create(client, stock_quantity=5)

    resp = client.post(
        "/api/inventory/restock",
        json={"item_id": item["id"], "quantity": 15, "supplier": "Coca-Cola Beverages Africa"},
        headers=staff_headers(),
    )
    assert resp.status_code == 201
    assert resp.json["new_stock"] == 20

    resp = client.post(
        "/api/inventory/adjust",
        json={"item_id": item["id"], "quantity_change": -2, "reason": "expired"},
        headers=staff_headers(),
    )
    assert resp.status_code == 201
    assert resp.json["new_stock"] == 18

    sale = client.post(
        "/api/inventory/sell",
        json={"item_id": item["id"], "quantity": 4, "payment_method": "mpesa-stk"},
        headers=staff_headers(),
    ).json
    resp = client.post(
        f"/api/inventory/sales/{sale['transaction_id']}/void",
        json={"reason": "STK push cancelled"},
        headers=staff_headers(),
    )
    assert resp.status_code == 201
    assert resp.json["new_stock"] == 18


def test_cashier_cannot_restock_or_void(client, db_session):
    item = _create(client, stock_quantity=5)
    resp = client.post(
        "/api/inventory/restock",
        json={"item_id": item["id"], "quantity": 1},
        headers=staff_headers(role="cashier"),
    )
    assert resp.status_code == 403
    resp = client.post("/api/inventory/sales/1/void", json={"reason": "x"}, headers=staff_headers(role="cashier"))
    assert resp.status_code == 403


def test_item_ledger_pagination(client, db_session):
    item = _create(client, stock_quantity=10)
    for _ in range(3):
        client.post(
            "/api/inventory/sell",
            json={"item_id": item["id"], "quantity": 1, "payment_method": "cash"},
            headers=staff_headers(),
        )

    page = client.get(f"/api/inventory/{item['id']}/ledger?limit=3", headers=staff_headers()).json
    assert len(page["entries"]) == 3
    assert page["entries"][0]["balance_after"] == 7

    rest = client.get(
        f"/api/inventory/{item['id']}/ledger?limit=3&before={page['next_cursor']}",
        headers=staff_headers(),
    ).json
    assert [e["entry_type"] for e in rest["entries"]] == ["restock"]
    assert rest["next_cursor"] is None

    resp = client.get(f"/api/inventory/{item['id']}/ledger?limit=abc", headers=staff_headers())
    assert resp.status_code == 400


def test_ledger_for_unknown_item_is_404(client, db_session):
    assert client.get("/api/inventory/321/ledger", headers=staff_headers()).status_code == 404


def test_dashboard_endpoints(client, db_session):
    coke = _create(client, stock_quantity=3, is_promo_active=True)
    _create(client, name="Controller", category="Accessories", unit_price_cents=950000, stock_quantity=10)
    client.post(
        "/api/inventory/sell",
        json={"item_id": coke["id"], "quantity": 1, "payment_method": "cash"},
        headers=staff_headers(),
    )
    cashier = staff_headers(role="cashier")

    low = client.get("/api/inventory/low-stock", headers=cashier).json
    assert [i["id"] for i in low["items"]] == [coke["id"]]

    stats = client.get("/api/inventory/stats", headers=cashier).json
    assert stats["revenue_today_cents"] == 10000
    assert stats["transactions_today"] == 1
    assert stats["promo_items_count"] == 1

    top = client.get("/api/inventory/top-selling?window_days=7", headers=cashier).json
    assert top["items"][0]["quantity_sold"] == 1

    assert client.get("/api/inventory/categories", headers=cashier).json["categories"] == ["Accessories", "Drinks"]
    assert client.get("/api/inventory/expiring", headers=cashier).json["count"] == 0
    breakdown = client.get("/api/inventory/category-breakdown", headers=cashier).json["categories"]
    assert {row["category"] for row in breakdown} == {"Accessories", "Drinks"}


def test_reconcile_requires_capability_and_reports(client, db_session):
    item = _create(client, stock_quantity=4)
    assert client.get("/api/inventory/reconcile", headers=staff_headers(role="cashier")).status_code == 403

    body = client.get(f"/api/inventory/reconcile?item_id={item['id']}", headers=staff_headers()).json
    assert body["consistent"] is True
    assert body["replay"]["entries"] == 1


def test_delete_item_route(client, db_session):
    fresh = _create(client, name="Unused")
    sold = _create(client, name="Used", stock_quantity=2)

    assert client.delete(f"/api/inventory/{fresh['id']}", headers=staff_headers()).json["action"] == "deleted"
    assert client.delete(f"/api/inventory/{sold['id']}", headers=staff_headers()).json["action"] == "retired"


def test_customer_loyalty_route(client, db_session, make_customer):
    customer = make_customer(points=120)
    resp = client.get(f"/api/customers/{customer.id}/loyalty", headers=staff_headers(role="cashier"))
    assert resp.status_code == 200
    assert resp.json["balance"] == 120
    assert resp.json["transactions"][0]["points"] == 120

    assert client.get("/api/customers/999/loyalty", headers=staff_headers()).status_code == 400


def test_health(client, db_session):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json["checks"]["database"]["status"] == "healthy"


def test_cors_headers_for_allowed_origin(client, db_session):
    resp = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    resp = client.get("/api/health", headers={"Origin": "http://evil.example"})
    assert "Access-Control-Allow-Origin" not in resp.headers
