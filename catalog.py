"""Product helpers shared by the catalog, cart and admin routes."""

import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import serialize_doc

SORT_FIELDS = {
    "name": "name",
    "price": "price",
    "createdAt": "created_at",
    "created_at": "created_at",
    "rating": "ratings.average",
    "stock": "stock",
    "sold": "sales.total_sold",
}

CATEGORY_INFO = {
    "chargers": {"name": "Chargers", "description": "Fast, wireless and car chargers"},
    "cases": {"name": "Cases", "description": "Protective cases, sleeves and screen protectors"},
    "cables": {"name": "Cables", "description": "USB-C, Lightning and micro-USB cables"},
    "headphones": {"name": "Headphones", "description": "Bluetooth and wired headphones and earbuds"},
    "accessories": {"name": "Accessories", "description": "Stands, mounts, power banks and photo gear"},
}


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return re.sub(r"-+", "-", slug).strip("-")


def unique_slug(db: Database, name: str, exclude_id: Optional[ObjectId] = None) -> str:
    base = slugify(name) or "product"
    slug, n = base, 2
    while True:
        query: Dict[str, Any] = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if not db["product"].find_one(query, {"_id": 1}):
            return slug
        slug = f"{base}-{n}"
        n += 1


def primary_image_url(product: dict) -> str:
    images = product.get("images") or []
    primary = next((img for img in images if img.get("is_primary")), None) or (images[0] if images else None)
    return primary.get("url", "") if primary else ""


def stock_status(product: dict) -> str:
    stock = product.get("stock", 0)
    if stock <= 0:
        return "out_of_stock"
    if stock <= product.get("min_stock", 5):
        return "low_stock"
    return "in_stock"


def discount_percentage(product: dict) -> int:
    original = product.get("original_price")
    price = product.get("price", 0)
    if product.get("is_on_sale") and original and original > price:
        return round((original - price) / original * 100)
    return 0


def parse_sort(sort: Optional[str], default: str = "-createdAt") -> List[tuple]:
    sort = sort or default
    direction = -1 if sort.startswith("-") else 1
    field = SORT_FIELDS.get(sort.lstrip("-"), "created_at")
    return [(field, direction)]


def build_product_query(
    search: Optional[str] = None,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    in_stock: Optional[bool] = None,
    is_featured: Optional[bool] = None,
    is_on_sale: Optional[bool] = None,
    is_active: Optional[bool] = True,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"category": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
            {"tags": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if brand:
        query["brand"] = {"$regex": re.escape(brand), "$options": "i"}
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if in_stock:
        query["stock"] = {"$gt": 0}
    if is_featured:
        query["is_featured"] = True
    if is_on_sale:
        query["is_on_sale"] = True
    return query


def products_by_id(db: Database, product_ids: Iterable[str]) -> Dict[str, dict]:
    object_ids = [ObjectId(pid) for pid in set(product_ids) if ObjectId.is_valid(pid)]
    if not object_ids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": object_ids}})}


def present_product(product: dict) -> dict:
    doc = serialize_doc(product)
    doc["stock_status"] = stock_status(product)
    doc["discount_percentage"] = discount_percentage(product)
    doc["image"] = primary_image_url(product)
    return doc
