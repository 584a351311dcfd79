"""
Admin analytics

Each report is a read-only aggregation over the ``order`` collection. The
pipeline builders and post-processors are plain functions; the ``*_report``
helpers run them against a database handle.
"""

import csv
import io
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo.database import Database

from catalog import CATEGORY_INFO
from database import ensure_utc, utcnow
from errors import ShopError
from order_service import REVENUE_STATUSES
from pricing import money

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
# Default look-back per revenue granularity
GRANULARITY_DAYS = {"day": 7, "week": 12 * 7, "month": 12 * 30, "year": 5 * 365}

BUCKET_FORMATS = {
    "hour": "%Y-%m-%dT%H",
    "day": "%Y-%m-%d",
    "week": "%G-W%V",
    "month": "%Y-%m",
    "year": "%Y",
}

CATEGORY_COLORS = {
    "chargers": "#3b82f6",
    "cases": "#ef4444",
    "cables": "#10b981",
    "headphones": "#f59e0b",
    "accessories": "#8b5cf6",
}

EXPORT_TYPES = ("revenue", "products", "customers", "orders")


# Date ranges


def resolve_date_range(
    period: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """Explicit dates win; otherwise ``period`` picks a window ending now.

    ``period`` accepts the rolling windows (7d, 30d, 90d, 1y) and the revenue
    granularities (day, week, month, year). Unknown or missing means 30 days.
    """
    now = now or utcnow()
    end = ensure_utc(end) or now
    if start is not None:
        start = ensure_utc(start)
    else:
        days = PERIOD_DAYS.get(period) or GRANULARITY_DAYS.get(period) or 30
        start = end - timedelta(days=days)
    if start > end:
        raise ShopError("startDate must be before endDate")
    return start, end


def previous_range(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    return start - (end - start), start


def date_match(start: Optional[datetime], end: Optional[datetime], field: str = "created_at") -> dict:
    bounds: Dict[str, datetime] = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lte"] = end
    return {field: bounds} if bounds else {}


def revenue_match(start: Optional[datetime], end: Optional[datetime]) -> dict:
    return {"status": {"$in": REVENUE_STATUSES}, **date_match(start, end)}


# Buckets


def bucket_label(value: datetime, unit: str) -> str:
    return value.strftime(BUCKET_FORMATS[unit])


def bucket_labels(start: datetime, end: datetime, unit: str) -> List[str]:
    step = timedelta(hours=1) if unit == "hour" else timedelta(days=1)
    labels: List[str] = []
    cursor = start
    while cursor <= end:
        label = bucket_label(cursor, unit)
        if not labels or labels[-1] != label:
            labels.append(label)
        cursor += step
    last = bucket_label(end, unit)
    if not labels or labels[-1] != last:
        labels.append(last)
    return labels


def fill_buckets(rows: Iterable[dict], labels: Sequence[str], fields: Sequence[str]) -> List[dict]:
    """One entry per label, zero-filled where the aggregation returned nothing."""
    by_label = {row["_id"]: row for row in rows}
    filled = []
    for label in labels:
        row = by_label.get(label, {})
        entry: Dict[str, Any] = {"label": label}
        for field in fields:
            value = row.get(field, 0) or 0
            entry[field] = money(value) if isinstance(value, float) else value
        filled.append(entry)
    return filled


def percent_change(current: float, previous: float) -> dict:
    if not previous:
        if current:
            return {"value": 100.0, "type": "positive"}
        return {"value": 0.0, "type": "neutral"}
    change = (current - previous) / previous * 100
    return {
        "value": round(change, 2),
        "type": "positive" if change > 0 else "negative" if change < 0 else "neutral",
    }


# Pipeline builders


def revenue_pipeline(start: datetime, end: datetime, granularity: str) -> List[dict]:
    return [
        {"$match": revenue_match(start, end)},
        {
            "$group": {
                "_id": {"$dateToString": {"format": BUCKET_FORMATS[granularity], "date": "$created_at"}},
                "revenue": {"$sum": "$total"},
                "orders": {"$sum": 1},
                "average_order_value": {"$avg": "$total"},
            }
        },
        {"$sort": {"_id": 1}},
    ]


def timeline_pipeline(start: Optional[datetime], end: Optional[datetime], group_by: str) -> List[dict]:
    return [
        {"$match": date_match(start, end)},
        {
            "$group": {
                "_id": {"$dateToString": {"format": BUCKET_FORMATS[group_by], "date": "$created_at"}},
                "total_orders": {"$sum": 1},
                "total_revenue": {"$sum": "$total"},
                "average_order_value": {"$avg": "$total"},
                "statuses": {"$push": "$status"},
            }
        },
        {"$sort": {"_id": 1}},
    ]


def category_pipeline(match: dict) -> List[dict]:
    return [
        {"$match": match},
        {"$unwind": "$items"},
        {
            "$group": {
                "_id": "$items.category",
                "total_revenue": {"$sum": {"$multiply": ["$items.price", "$items.quantity"]}},
                "total_quantity": {"$sum": "$items.quantity"},
                "orders": {"$addToSet": "$_id"},
            }
        },
        {
            "$project": {
                "_id": 0,
                "category": "$_id",
                "total_revenue": 1,
                "total_quantity": 1,
                "order_count": {"$size": "$orders"},
            }
        },
        {"$sort": {"total_revenue": -1}},
    ]


def top_products_pipeline(match: dict, limit: int = 10, sort_by: str = "quantity") -> List[dict]:
    sort_field = "total_revenue" if sort_by == "revenue" else "total_quantity"
    return [
        {"$match": match},
        {"$unwind": "$items"},
        {
            "$group": {
                "_id": "$items.product_id",
                "name": {"$first": "$items.name"},
                "brand": {"$first": "$items.brand"},
                "category": {"$first": "$items.category"},
                "total_revenue": {"$sum": {"$multiply": ["$items.price", "$items.quantity"]}},
                "total_quantity": {"$sum": "$items.quantity"},
                "average_price": {"$avg": "$items.price"},
            }
        },
        {"$sort": {sort_field: -1}},
        {"$limit": limit},
    ]


def hourly_pipeline(match: dict) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": {"$hour": "$created_at"}, "orders": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
        {"$sort": {"_id": 1}},
    ]


def geographic_pipeline(match: dict) -> List[dict]:
    return [
        {"$match": match},
        {
            "$group": {
                "_id": {"$ifNull": ["$shipping_address.country", "Unknown"]},
                "orders": {"$sum": 1},
                "revenue": {"$sum": "$total"},
            }
        },
        {"$sort": {"revenue": -1}},
    ]


def payment_methods_pipeline(match: dict) -> List[dict]:
    return [
        {"$match": match},
        {"$group": {"_id": "$payment_method", "orders": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
        {"$sort": {"orders": -1}},
    ]


def top_customers_pipeline(match: dict, limit: int = 10) -> List[dict]:
    return [
        {"$match": match},
        {
            "$group": {
                "_id": "$user_id",
                "orders": {"$sum": 1},
                "total_spent": {"$sum": "$total"},
                "last_order": {"$max": "$created_at"},
            }
        },
        {"$sort": {"total_spent": -1}},
        {"$limit": limit},
    ]


def summary_pipeline(match: dict) -> List[dict]:
    return [
        {"$match": match},
        {
            "$group": {
                "_id": None,
                "revenue": {"$sum": "$total"},
                "orders": {"$sum": 1},
                "average_order_value": {"$avg": "$total"},
            }
        },
    ]


def cart_value_pipeline() -> List[dict]:
    """Average value of non-empty carts at current catalog prices."""
    return [
        {"$match": {"items.0": {"$exists": True}}},
        {"$unwind": "$items"},
        {"$addFields": {"product_oid": {"$toObjectId": "$items.product_id"}}},
        {"$lookup": {"from": "product", "localField": "product_oid", "foreignField": "_id", "as": "product"}},
        {"$unwind": "$product"},
        {"$group": {"_id": "$_id", "value": {"$sum": {"$multiply": ["$product.price", "$items.quantity"]}}}},
        {"$group": {"_id": None, "average_value": {"$avg": "$value"}, "carts": {"$sum": 1}}},
    ]


# Post-processing


def summarize(rows: Iterable[dict]) -> dict:
    row = next(iter(rows), None) or {}
    return {
        "revenue": money(row.get("revenue", 0) or 0),
        "orders": row.get("orders", 0),
        "average_order_value": money(row.get("average_order_value", 0) or 0),
    }


def with_category_info(rows: Iterable[dict]) -> List[dict]:
    enriched = []
    for row in rows:
        category = row.get("category")
        info = CATEGORY_INFO.get(category, {})
        enriched.append({
            **row,
            "total_revenue": money(row.get("total_revenue", 0)),
            "name": info.get("name", category),
            "color": CATEGORY_COLORS.get(category, "#6b7280"),
        })
    return enriched


def shape_top_products(rows: Iterable[dict]) -> List[dict]:
    return [
        {
            "product_id": row["_id"],
            "name": row.get("name"),
            "brand": row.get("brand"),
            "category": row.get("category"),
            "total_quantity": row.get("total_quantity", 0),
            "total_revenue": money(row.get("total_revenue", 0)),
            "average_price": money(row.get("average_price", 0) or 0),
        }
        for row in rows
    ]


def fill_hours(rows: Iterable[dict]) -> List[dict]:
    by_hour = {row["_id"]: row for row in rows}
    return [
        {
            "hour": hour,
            "orders": by_hour.get(hour, {}).get("orders", 0),
            "revenue": money(by_hour.get(hour, {}).get("revenue", 0)),
        }
        for hour in range(24)
    ]


def shape_breakdown(rows: Iterable[dict], key: str) -> List[dict]:
    rows = list(rows)
    total_orders = sum(row.get("orders", 0) for row in rows)
    return [
        {
            key: row["_id"],
            "orders": row.get("orders", 0),
            "revenue": money(row.get("revenue", 0)),
            "share": round(row.get("orders", 0) / total_orders * 100, 2) if total_orders else 0.0,
        }
        for row in rows
    ]


def shape_timeline(rows: Iterable[dict], labels: Optional[Sequence[str]] = None) -> List[dict]:
    by_label = {}
    for row in rows:
        by_label[row["_id"]] = {
            "label": row["_id"],
            "total_orders": row.get("total_orders", 0),
            "total_revenue": money(row.get("total_revenue", 0)),
            "average_order_value": money(row.get("average_order_value", 0) or 0),
            "status_breakdown": dict(Counter(row.get("statuses", []))),
        }
    if labels is None:
        return list(by_label.values())
    empty = {"total_orders": 0, "total_revenue": 0.0, "average_order_value": 0.0, "status_breakdown": {}}
    return [by_label.get(label, {"label": label, **empty}) for label in labels]


# Reports


def overview_report(db: Database, start: datetime, end: datetime) -> dict:
    prev_start, prev_end = previous_range(start, end)
    current = summarize(db["order"].aggregate(summary_pipeline(revenue_match(start, end))))
    previous = summarize(db["order"].aggregate(summary_pipeline(revenue_match(prev_start, prev_end))))
    current["new_customers"] = db["user"].count_documents(date_match(start, end))
    previous["new_customers"] = db["user"].count_documents(date_match(prev_start, prev_end))
    return {
        "metrics": current,
        "previous": previous,
        "changes": {
            "revenue": percent_change(current["revenue"], previous["revenue"]),
            "orders": percent_change(current["orders"], previous["orders"]),
            "customers": percent_change(current["new_customers"], previous["new_customers"]),
            "average_order_value": percent_change(current["average_order_value"], previous["average_order_value"]),
        },
    }


def customer_metrics_report(db: Database, start: Optional[datetime], end: Optional[datetime]) -> dict:
    match = date_match(start, end)
    new_customers = db["user"].count_documents({"role": "user", **match})
    active_customers = len(db["order"].distinct("user_id", match))
    carts = next(iter(db["cart"].aggregate(cart_value_pipeline())), None) or {}
    open_carts = db["cart"].count_documents({"items.0": {"$exists": True}})
    orders = db["order"].count_documents(match)
    conversion = orders / (open_carts + orders) * 100 if (open_carts + orders) else 0.0
    top = list(db["order"].aggregate(top_customers_pipeline(revenue_match(start, end))))
    return {
        "new_customers": new_customers,
        "active_customers": active_customers,
        "average_cart_value": money(carts.get("average_value", 0) or 0),
        "conversion_rate": round(conversion, 2),
        "top_customers": attach_customers(db, top),
    }


def attach_customers(db: Database, rows: List[dict]) -> List[dict]:
    ids = [ObjectId(row["_id"]) for row in rows if row.get("_id") and ObjectId.is_valid(row["_id"])]
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": ids}})} if ids else {}
    result = []
    for row in rows:
        user = users.get(row.get("_id"), {})
        result.append({
            "user_id": row.get("_id"),
            "name": f"{user.get('first_name', '')} {user.get('last_name', '')}".strip() or None,
            "email": user.get("email"),
            "orders": row.get("orders", 0),
            "total_spent": money(row.get("total_spent", 0)),
            "last_order": row.get("last_order"),
        })
    return result


# CSV export


def to_csv(header: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def export_csv(db: Database, export_type: str, start: Optional[datetime], end: Optional[datetime]) -> Tuple[str, str]:
    """Return ``(filename, csv_text)`` for one of EXPORT_TYPES."""
    if export_type == "revenue":
        rows = db["order"].aggregate([
            {"$match": revenue_match(start, end)},
            {
                "$group": {
                    "_id": {"$dateToString": {"format": BUCKET_FORMATS["month"], "date": "$created_at"}},
                    "revenue": {"$sum": "$total"},
                    "orders": {"$sum": 1},
                }
            },
            {"$sort": {"_id": 1}},
        ])
        return "revenue.csv", to_csv(
            ["month", "revenue", "orders"],
            ([row["_id"], f"{row['revenue']:.2f}", row["orders"]] for row in rows),
        )

    if export_type == "products":
        products = db["product"].find({"is_active": True}).sort("name", 1)
        return "products.csv", to_csv(
            ["name", "brand", "category", "price", "stock", "total_sold"],
            (
                [p["name"], p.get("brand", ""), p.get("category", ""), f"{p.get('price', 0):.2f}",
                 p.get("stock", 0), (p.get("sales") or {}).get("total_sold", 0)]
                for p in products
            ),
        )

    if export_type == "customers":
        users = db["user"].find(date_match(start, end)).sort("created_at", -1)
        return "customers.csv", to_csv(
            ["first_name", "last_name", "email", "role", "is_active", "created_at"],
            (
                [u.get("first_name", ""), u.get("last_name", ""), u["email"], u.get("role", "user"),
                 u.get("is_active", True), _iso(u.get("created_at"))]
                for u in users
            ),
        )

    if export_type == "orders":
        orders = list(db["order"].find(date_match(start, end)).sort("created_at", -1))
        customers = {c["user_id"]: c for c in attach_customers(db, [{"_id": o["user_id"]} for o in orders])}
        return "orders.csv", to_csv(
            ["order_number", "customer", "email", "total", "status", "payment_status", "created_at"],
            (
                [o["order_number"], customers.get(o["user_id"], {}).get("name") or "",
                 customers.get(o["user_id"], {}).get("email") or "", f"{o['total']:.2f}",
                 o.get("status"), o.get("payment_status"), _iso(o.get("created_at"))]
                for o in orders
            ),
        )

    raise ShopError(f"Unknown export type: {export_type}")
