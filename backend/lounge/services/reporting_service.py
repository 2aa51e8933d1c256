# Overview: Service-layer operations for reporting; read-only projections over items and the ledger.

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import case, exists, func
from sqlalchemy.orm import aliased

from ..errors import ValidationError
from ..extensions import db
from ..models import InventoryItem, LedgerEntry
from ..time_utils import local_day_bounds, local_today, utcnow


MAX_REPORT_LIMIT = 100


def _active_items():
    return db.session.query(InventoryItem).filter(InventoryItem.is_active.is_(True))


def _unreversed_sales():
    """Sale entries that were not voided or compensated."""
    reversal = aliased(LedgerEntry)
    return db.session.query(LedgerEntry).filter(
        LedgerEntry.entry_type == "sale",
        ~exists().where(reversal.reverses_entry_id == LedgerEntry.id),
    )


def low_stock_items(threshold_override: int | None = None) -> list[InventoryItem]:
    """
    Active items below their low-stock threshold, lowest stock first.

    threshold_override replaces every item's own threshold.
    """
    if threshold_override is not None and threshold_override < 0:
        raise ValidationError("threshold must be >= 0")
    limit_col = threshold_override if threshold_override is not None else InventoryItem.low_stock_threshold
    return (
        _active_items()
        .filter(InventoryItem.stock_quantity < limit_col)
        .order_by(InventoryItem.stock_quantity.asc(), InventoryItem.name.asc())
        .all()
    )


def expiring_items(within_days: int | None = None) -> list[dict]:
    """Items expiring within the window, already-expired ones included (negative days)."""
    if within_days is None:
        within_days = current_app.config.get("EXPIRING_WITHIN_DAYS", 30)
    if within_days < 0:
        raise ValidationError("within_days must be >= 0")

    today = local_today(current_app.config["STORE_TIMEZONE"])
    cutoff = today + timedelta(days=within_days)
    rows = (
        _active_items()
        .filter(InventoryItem.expiry_date.isnot(None), InventoryItem.expiry_date <= cutoff)
        .order_by(InventoryItem.expiry_date.asc(), InventoryItem.id.asc())
        .all()
    )
    return [
        {"item": item.to_dict(), "days_until_expiry": (item.expiry_date - today).days}
        for item in rows
    ]


def category_breakdown() -> list[dict]:
    rows = (
        db.session.query(
            InventoryItem.category,
            func.count(InventoryItem.id),
            func.coalesce(func.sum(InventoryItem.unit_price_cents * InventoryItem.stock_quantity), 0),
        )
        .filter(InventoryItem.is_active.is_(True))
        .group_by(InventoryItem.category)
        .order_by(InventoryItem.category.asc())
        .all()
    )
    return [
        {"category": category, "item_count": int(count), "stock_value_cents": int(value or 0)}
        for category, count, value in rows
    ]


def top_selling_items(window_days: int = 30, limit: int = 10) -> list[dict]:
    """
    Best sellers by units sold over the last `window_days`.

    Only sale entries count: expired write-offs and adjustments never do,
    and voided sales drop out.
    Items retired since their sales still rank; the item dict carries
    is_active for callers that want to hide them.
    """
    if window_days <= 0:
        raise ValidationError("window_days must be > 0")
    limit = max(1, min(int(limit), MAX_REPORT_LIMIT))
    since = utcnow() - timedelta(days=window_days)

    sales = _unreversed_sales().filter(LedgerEntry.created_at >= since).subquery()
    quantity_sold = func.sum(-sales.c.delta)
    revenue = func.sum(-sales.c.delta * func.coalesce(sales.c.unit_price_cents_at_entry, 0))

    rows = (
        db.session.query(InventoryItem, quantity_sold.label("quantity_sold"), revenue.label("revenue_cents"))
        .join(sales, sales.c.item_id == InventoryItem.id)
        .group_by(InventoryItem.id)
        .order_by(quantity_sold.desc(), InventoryItem.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "item": item.to_dict(),
            "quantity_sold": int(qty or 0),
            "revenue_cents": int(rev or 0),
        }
        for item, qty, rev in rows
    ]


def stats_summary() -> dict:
    threshold_hit = InventoryItem.stock_quantity < InventoryItem.low_stock_threshold
    totals = (
        db.session.query(
            func.count(InventoryItem.id),
            func.coalesce(func.sum(InventoryItem.unit_price_cents * InventoryItem.stock_quantity), 0),
            func.coalesce(func.sum(case((threshold_hit, 1), else_=0)), 0),
            func.coalesce(func.sum(case((InventoryItem.stock_quantity == 0, 1), else_=0)), 0),
            func.coalesce(func.sum(case((InventoryItem.is_promo_active.is_(True), 1), else_=0)), 0),
        )
        .filter(InventoryItem.is_active.is_(True))
        .one()
    )

    # "Today" is the lounge's calendar day, not the UTC one
    start, end = local_day_bounds(current_app.config["STORE_TIMEZONE"])
    today_sales = _unreversed_sales().filter(
        LedgerEntry.created_at >= start,
        LedgerEntry.created_at < end,
    ).subquery()
    revenue_today, transactions_today = db.session.query(
        func.coalesce(func.sum(-today_sales.c.delta * func.coalesce(today_sales.c.unit_price_cents_at_entry, 0)), 0),
        func.count(today_sales.c.id),
    ).one()

    total_items, total_value, low_count, out_count, promo_count = totals
    return {
        "total_items": int(total_items or 0),
        "total_value_cents": int(total_value or 0),
        "low_stock_count": int(low_count or 0),
        "out_of_stock_count": int(out_count or 0),
        "promo_items_count": int(promo_count or 0),
        "revenue_today_cents": int(revenue_today or 0),
        "transactions_today": int(transactions_today or 0),
    }
