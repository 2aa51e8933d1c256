# backend/lounge/services/catalog_service.py
"""
Catalog Service - staff CRUD over inventory items

STOCK IS NOT A CATALOG FIELD:
- create_item takes an opening count and books it through the mutation
  engine as a restock entry ("Opening stock"), in the same transaction as
  the insert, so SUM(delta) == stock_quantity from the first row on.
- update_item rejects stock_quantity; counts change through restock/adjust.

RETIREMENT:
- delete_item hard-deletes only items without ledger history; anything
  that has moved stock is retired (is_active=False) instead.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import func, or_

from ..errors import ItemNotFound, ValidationError
from ..extensions import db
from ..models import InventoryItem, LedgerEntry
from ..time_utils import local_today
from ..validation import MAX_QUANTITY, ModelValidationPolicy, enforce_rules_inventory_item, validate_payload
from .concurrency import begin_write, run_with_retry
from .inventory_service import _apply_mutation_inner, get_item as get_stock_item

CATALOG_FIELDS = {
    "name",
    "category",
    "unit_price_cents",
    "cost_price_cents",
    "low_stock_threshold",
    "is_redeemable",
    "points_required",
    "is_vip_only",
    "is_promo_active",
    "expiry_date",
    "supplier",
}

ITEM_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=CATALOG_FIELDS,
    required_on_create={"name", "category", "unit_price_cents"},
)
ITEM_UPDATE_POLICY = ModelValidationPolicy(writable_fields=CATALOG_FIELDS | {"is_active"})


def serialize_item(item: InventoryItem, *, today=None) -> dict:
    """to_dict() plus the computed fields the dashboard shows."""
    if today is None:
        today = local_today(current_app.config["STORE_TIMEZONE"])
    data = item.to_dict()
    data["stock_value_cents"] = item.stock_value_cents
    data["is_low_stock"] = item.stock_quantity < item.low_stock_threshold
    data["days_to_expiry"] = (item.expiry_date - today).days if item.expiry_date else None
    return data


def _get(item_id: int) -> InventoryItem:
    item = db.session.get(InventoryItem, item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


def get_item(item_id: int) -> dict:
    return serialize_item(_get(item_id))


def list_items(
    *,
    category: str | None = None,
    search: str | None = None,
    low_stock: bool = False,
    include_retired: bool = False,
) -> list[dict]:
    q = db.session.query(InventoryItem)
    if not include_retired:
        q = q.filter(InventoryItem.is_active.is_(True))
    if category:
        q = q.filter(InventoryItem.category == category)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(InventoryItem.name.ilike(like), InventoryItem.supplier.ilike(like)))
    if low_stock:
        q = q.filter(InventoryItem.stock_quantity < InventoryItem.low_stock_threshold)

    today = local_today(current_app.config["STORE_TIMEZONE"])
    rows = q.order_by(InventoryItem.category.asc(), InventoryItem.name.asc(), InventoryItem.id.asc()).all()
    return [serialize_item(item, today=today) for item in rows]


def list_categories() -> list[str]:
    rows = (
        db.session.query(InventoryItem.category)
        .filter(InventoryItem.is_active.is_(True))
        .distinct()
        .order_by(InventoryItem.category.asc())
        .all()
    )
    return [category for (category,) in rows]


def create_item(payload: dict, *, opening_stock: int = 0, performed_by: str | None = None) -> dict:
    patch = validate_payload(payload=payload, policy=ITEM_CREATE_POLICY, partial=False, model=InventoryItem)
    enforce_rules_inventory_item(patch)
    if patch.get("is_redeemable") and not patch.get("points_required"):
        raise ValidationError("points_required must be > 0 for redeemable items")

    if not isinstance(opening_stock, int) or isinstance(opening_stock, bool) or opening_stock < 0:
        raise ValidationError("opening stock must be a non-negative integer")
    if opening_stock > MAX_QUANTITY:
        raise ValidationError(f"opening stock cannot exceed {MAX_QUANTITY}")

    patch.setdefault("low_stock_threshold", current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD", 5))

    def _op():
        begin_write()
        item = InventoryItem(**patch, stock_quantity=0)
        db.session.add(item)
        db.session.flush()
        if opening_stock:
            _apply_mutation_inner(
                item_id=item.id,
                delta=opening_stock,
                entry_type="restock",
                unit_price_cents_at_entry=item.cost_price_cents,
                notes="Opening stock",
                performed_by=performed_by,
            )
        db.session.commit()
        return item

    item = run_with_retry(_op)
    current_app.logger.info("Created inventory item %s (%s) with opening stock %s", item.id, item.name, opening_stock)
    return serialize_item(item)


def update_item(item_id: int, payload: dict) -> dict:
    if isinstance(payload, dict) and "stock_quantity" in payload:
        raise ValidationError(
            "stock_quantity cannot be edited directly; use restock or adjust",
            {"item_id": item_id},
        )
    patch = validate_payload(payload=payload, policy=ITEM_UPDATE_POLICY, partial=True, model=InventoryItem)
    enforce_rules_inventory_item(patch)

    def _op():
        item = _get(item_id)
        for key, value in patch.items():
            setattr(item, key, value)
        if item.is_redeemable and not item.points_required:
            raise ValidationError("points_required must be > 0 for redeemable items")
        db.session.commit()
        return item

    item = run_with_retry(_op)
    return serialize_item(item)


def _has_history(item_id: int) -> bool:
    count = db.session.query(func.count(LedgerEntry.id)).filter(LedgerEntry.item_id == item_id).scalar()
    return bool(count)


def retire_item(item_id: int) -> dict:
    def _op():
        begin_write()
        item = get_stock_item(item_id, lock=True)
        item.is_active = False
        db.session.commit()
        return item

    item = run_with_retry(_op)
    current_app.logger.info("Retired inventory item %s", item_id)
    return serialize_item(item)


def delete_item(item_id: int) -> dict:
    """
    Remove an item from the catalog.

    The history check and the delete or retire run in one write transaction,
    so a movement committed in between cannot be orphaned.

    Returns {"item_id", "action"} where action is "deleted" or "retired".
    """
    def _op():
        begin_write()
        item = get_stock_item(item_id, lock=True)
        if _has_history(item_id):
            item.is_active = False
            action = "retired"
        else:
            db.session.delete(item)
            action = "deleted"
        db.session.commit()
        return action

    action = run_with_retry(_op)
    current_app.logger.info("%s inventory item %s", action.capitalize(), item_id)
    return {"item_id": item_id, "action": action}
