# backend/lounge/routes/inventory.py
"""
Inventory routes: catalog, stock operations, ledger and dashboard reads.

SECURITY: All routes require staff context (X-Staff-Id / X-Staff-Role).
- Reads require VIEW_INVENTORY (dashboards: VIEW_REPORTS)
- Catalog writes require MANAGE_CATALOG
- sell / restock / adjust / void require the matching capability

Idempotency:
- Stock operations accept an Idempotency-Key header or an idempotency_key
  body field; a retried request with the same key returns the original
  result with "replayed": true.

Errors are answered as {"error": kind, "message", "details"} with the
status code of the failure kind.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_capability, require_staff
from ..errors import LedgerError, ValidationError
from ..services import catalog_service, ledger_service, reporting_service, settlement_service
from ..services.inventory_service import get_item
from ..validation import (
    OPERATION_COLUMNS,
    ModelValidationPolicy,
    enforce_rules_adjust,
    enforce_rules_restock,
    enforce_rules_sell,
    validate_payload,
)


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

SELL_POLICY = ModelValidationPolicy(
    writable_fields={"item_id", "quantity", "payment_method", "session_id", "customer_id", "notes", "idempotency_key"},
    required_on_create={"item_id", "quantity", "payment_method"},
)

RESTOCK_POLICY = ModelValidationPolicy(
    writable_fields={"item_id", "quantity", "cost_price_cents", "supplier", "notes", "idempotency_key"},
    required_on_create={"item_id", "quantity"},
)

ADJUST_POLICY = ModelValidationPolicy(
    writable_fields={"item_id", "quantity_change", "reason", "notes", "idempotency_key"},
    required_on_create={"item_id", "quantity_change", "reason"},
)


def _error(exc: LedgerError):
    return jsonify(exc.to_dict()), exc.status_code


def _unexpected(action: str):
    current_app.logger.exception("Unexpected error while %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def _int_arg(name: str, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _bool_arg(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _operation_payload(policy: ModelValidationPolicy) -> dict:
    payload = request.get_json(silent=True) or {}
    patch = validate_payload(payload=payload, policy=policy, partial=False, columns=OPERATION_COLUMNS)
    header_key = (request.headers.get("Idempotency-Key") or "").strip()
    if header_key:
        if len(header_key) > 128:
            raise ValidationError("Idempotency-Key exceeds max length 128")
        patch["idempotency_key"] = header_key
    return patch


# =============================================================================
# CATALOG
# =============================================================================

@inventory_bp.get("/")
@require_staff
@require_capability("VIEW_INVENTORY")
def list_items_route():
    try:
        items = catalog_service.list_items(
            category=request.args.get("category") or None,
            search=request.args.get("search") or None,
            low_stock=_bool_arg("low_stock"),
            include_retired=_bool_arg("include_retired"),
        )
        return jsonify({"items": items, "count": len(items)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("listing inventory")


@inventory_bp.post("/")
@require_staff
@require_capability("MANAGE_CATALOG")
def create_item_route():
    """
    Create a catalog item. An optional stock_quantity is booked as the
    opening stock (a restock ledger entry), never written directly.
    """
    payload = dict(request.get_json(silent=True) or {})
    try:
        opening_stock = payload.pop("stock_quantity", 0)
        item = catalog_service.create_item(
            payload,
            opening_stock=opening_stock if opening_stock is not None else 0,
            performed_by=g.requester.staff_id,
        )
        return jsonify({"item": item}), 201
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("creating inventory item")


@inventory_bp.get("/<int:item_id>")
@require_staff
@require_capability("VIEW_INVENTORY")
def get_item_route(item_id: int):
    try:
        return jsonify({"item": catalog_service.get_item(item_id)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("loading inventory item")


@inventory_bp.put("/<int:item_id>")
@require_staff
@require_capability("MANAGE_CATALOG")
def update_item_route(item_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        return jsonify({"item": catalog_service.update_item(item_id, payload)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("updating inventory item")


@inventory_bp.delete("/<int:item_id>")
@require_staff
@require_capability("MANAGE_CATALOG")
def delete_item_route(item_id: int):
    try:
        return jsonify(catalog_service.delete_item(item_id)), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("deleting inventory item")


@inventory_bp.get("/categories")
@require_staff
@require_capability("VIEW_INVENTORY")
def categories_route():
    try:
        return jsonify({"categories": catalog_service.list_categories()}), 200
    except Exception:
        return _unexpected("listing categories")


# =============================================================================
# STOCK OPERATIONS
# =============================================================================

@inventory_bp.post("/sell")
@require_staff
@require_capability("SELL_INVENTORY")
def sell_route():
    try:
        patch = _operation_payload(SELL_POLICY)
        enforce_rules_sell(patch)
        result = settlement_service.sell(
            patch["item_id"],
            patch["quantity"],
            payment_method=patch["payment_method"],
            session_id=patch.get("session_id"),
            customer_id=patch.get("customer_id"),
            notes=patch.get("notes"),
            idempotency_key=patch.get("idempotency_key"),
            requester=g.requester,
        )
        return jsonify(result.to_dict()), 200 if result.replayed else 201
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("selling inventory")


@inventory_bp.post("/restock")
@require_staff
@require_capability("RESTOCK_INVENTORY")
def restock_route():
    try:
        patch = _operation_payload(RESTOCK_POLICY)
        enforce_rules_restock(patch)
        result = settlement_service.restock(
            patch["item_id"],
            patch["quantity"],
            cost_price_cents=patch.get("cost_price_cents"),
            supplier=patch.get("supplier"),
            notes=patch.get("notes"),
            idempotency_key=patch.get("idempotency_key"),
            requester=g.requester,
        )
        return jsonify(result.to_dict()), 200 if result.replayed else 201
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("restocking inventory")


@inventory_bp.post("/adjust")
@require_staff
@require_capability("ADJUST_INVENTORY")
def adjust_route():
    try:
        patch = _operation_payload(ADJUST_POLICY)
        enforce_rules_adjust(patch)
        result = settlement_service.adjust(
            patch["item_id"],
            patch["quantity_change"],
            patch["reason"],
            notes=patch.get("notes"),
            idempotency_key=patch.get("idempotency_key"),
            requester=g.requester,
        )
        return jsonify(result.to_dict()), 200 if result.replayed else 201
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("adjusting inventory")


@inventory_bp.post("/sales/<int:entry_id>/void")
@require_staff
@require_capability("VOID_SALE")
def void_sale_route(entry_id: int):
    """
    Reverse a sale, e.g. when an M-Pesa payment is reported failed after
    the sale was committed.
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = settlement_service.void_sale(
            entry_id,
            reason=str(payload.get("reason") or ""),
            requester=g.requester,
        )
        return jsonify(result.to_dict()), 201
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("voiding sale")


# =============================================================================
# LEDGER
# =============================================================================

@inventory_bp.get("/<int:item_id>/ledger")
@require_staff
@require_capability("VIEW_INVENTORY")
def item_ledger_route(item_id: int):
    try:
        get_item(item_id)
        page = ledger_service.list_entries(
            item_id=item_id,
            limit=_int_arg("limit", 50),
            before=_int_arg("before"),
        )
        return jsonify(page.to_dict()), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("reading item ledger")


@inventory_bp.get("/ledger")
@require_staff
@require_capability("VIEW_INVENTORY")
def ledger_route():
    try:
        page = ledger_service.list_entries(
            item_id=_int_arg("item_id"),
            limit=_int_arg("limit", 50),
            before=_int_arg("before"),
        )
        return jsonify(page.to_dict()), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("reading ledger")


@inventory_bp.get("/reconcile")
@require_staff
@require_capability("RECONCILE_LEDGER")
def reconcile_route():
    """Compare cached stock against the ledger; with item_id, also replay that item."""
    try:
        item_id = _int_arg("item_id")
        inconsistencies = ledger_service.find_inconsistencies(item_id)
        body = {"consistent": not inconsistencies, "inconsistencies": inconsistencies}
        if item_id is not None:
            report = ledger_service.replay_item(item_id)
            body["replay"] = report.to_dict()
            body["consistent"] = body["consistent"] and report.consistent
        return jsonify(body), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("reconciling ledger")


# =============================================================================
# DASHBOARD
# =============================================================================

@inventory_bp.get("/low-stock")
@require_staff
@require_capability("VIEW_REPORTS")
def low_stock_route():
    try:
        items = reporting_service.low_stock_items(_int_arg("threshold"))
        return jsonify({"items": [catalog_service.serialize_item(i) for i in items], "count": len(items)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("listing low stock")


@inventory_bp.get("/expiring")
@require_staff
@require_capability("VIEW_REPORTS")
def expiring_route():
    try:
        rows = reporting_service.expiring_items(_int_arg("within_days"))
        return jsonify({"items": rows, "count": len(rows)}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("listing expiring items")


@inventory_bp.get("/top-selling")
@require_staff
@require_capability("VIEW_REPORTS")
def top_selling_route():
    try:
        rows = reporting_service.top_selling_items(
            window_days=_int_arg("window_days", 30),
            limit=_int_arg("limit", 10),
        )
        return jsonify({"items": rows}), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("listing top sellers")


@inventory_bp.get("/category-breakdown")
@require_staff
@require_capability("VIEW_REPORTS")
def category_breakdown_route():
    try:
        return jsonify({"categories": reporting_service.category_breakdown()}), 200
    except Exception:
        return _unexpected("building category breakdown")


@inventory_bp.get("/stats")
@require_staff
@require_capability("VIEW_REPORTS")
def stats_route():
    try:
        return jsonify(reporting_service.stats_summary()), 200
    except LedgerError as e:
        return _error(e)
    except Exception:
        return _unexpected("building inventory stats")
