"""
Cart persistence

A cart belongs either to a signed-in user (``user_id``) or to an anonymous
browser session (``session_id``). Lines only hold a product reference and a
quantity; prices and totals are resolved against the catalog whenever the
cart is read.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from bson import ObjectId
from pymongo.database import Database

import config
from catalog import primary_image_url, products_by_id
from database import to_object_id, utcnow
from errors import CartError, InsufficientStock, NotFoundError
from pricing import calculate_discount, calculate_subtotal, compute_totals, coupon_rejection, line_total
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)


def _owner_query(user_id: Optional[str], session_id: Optional[str]) -> dict:
    if user_id:
        return {"user_id": user_id}
    if session_id:
        return {"session_id": session_id}
    raise CartError("X-Session-Id header is required for anonymous carts")


def find_cart(db: Database, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[dict]:
    return db["cart"].find_one(_owner_query(user_id, session_id))


def get_cart_or_404(db: Database, user_id: Optional[str] = None, session_id: Optional[str] = None) -> dict:
    cart = find_cart(db, user_id, session_id)
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def get_or_create_cart(db: Database, user_id: Optional[str] = None, session_id: Optional[str] = None) -> dict:
    query = _owner_query(user_id, session_id)
    cart = db["cart"].find_one(query)
    if cart:
        return cart
    now = utcnow()
    doc = Cart(
        user_id=user_id,
        session_id=None if user_id else session_id,
        expires_at=now + timedelta(days=config.CART_EXPIRE_DAYS),
    ).model_dump()
    doc.update(created_at=now, updated_at=now)
    doc["_id"] = db["cart"].insert_one(doc).inserted_id
    return doc


def _save(db: Database, cart: dict, **fields) -> dict:
    now = utcnow()
    fields.update(updated_at=now, expires_at=now + timedelta(days=config.CART_EXPIRE_DAYS))
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": fields})
    cart.update(fields)
    return cart


def _find_line(items: List[dict], product_id: str, size: str, color: str) -> Optional[dict]:
    return next(
        (
            it for it in items
            if it["product_id"] == product_id and it.get("size", "") == size and it.get("color", "") == color
        ),
        None,
    )


def _units_of(items: List[dict], product_id: str, skip: Optional[dict] = None) -> int:
    """Units of a product across all its size/color lines."""
    return sum(it["quantity"] for it in items if it["product_id"] == product_id and it is not skip)


def _find_item(items: List[dict], item_id: str) -> dict:
    item = next((it for it in items if it["item_id"] == item_id), None)
    if item is None:
        raise NotFoundError("Cart item not found")
    return item


def add_item(db: Database, cart: dict, product_id: str, quantity: int, size: str = "", color: str = "") -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id"), "is_active": True})
    if not product:
        raise NotFoundError("Product not found or no longer available")

    items = list(cart.get("items", []))
    existing = _find_line(items, product_id, size, color)
    new_quantity = quantity + (existing["quantity"] if existing else 0)
    if new_quantity > config.MAX_ITEM_QUANTITY:
        raise CartError(f"At most {config.MAX_ITEM_QUANTITY} units per item")
    stock = product.get("stock", 0)
    if stock < _units_of(items, product_id) + quantity:
        raise InsufficientStock(f"Only {stock} unit(s) available", available=stock)

    if existing:
        existing["quantity"] = new_quantity
    else:
        items.append(
            CartItem(
                item_id=str(ObjectId()),
                product_id=product_id,
                quantity=quantity,
                size=size,
                color=color,
                added_at=utcnow(),
            ).model_dump()
        )
    return _save(db, cart, items=items)


def update_item_quantity(db: Database, cart: dict, item_id: str, quantity: int) -> dict:
    items = list(cart.get("items", []))
    item = _find_item(items, item_id)
    if quantity <= 0:
        items.remove(item)
        return _save(db, cart, items=items)

    product = products_by_id(db, [item["product_id"]]).get(item["product_id"])
    if product is not None:
        stock = product.get("stock", 0)
        if stock < _units_of(items, item["product_id"], skip=item) + quantity:
            raise InsufficientStock(f"Only {stock} unit(s) available", available=stock)
    item["quantity"] = quantity
    return _save(db, cart, items=items)


def remove_item(db: Database, cart: dict, item_id: str) -> dict:
    items = list(cart.get("items", []))
    items.remove(_find_item(items, item_id))
    return _save(db, cart, items=items)


def clear_cart(db: Database, cart: dict) -> dict:
    return _save(db, cart, items=[], coupon_code=None)


def merge_carts(db: Database, user_cart: dict, session_cart: dict) -> dict:
    """Fold an anonymous cart into a user's cart and drop the anonymous one."""
    items = list(user_cart.get("items", []))
    for other in session_cart.get("items", []):
        line = _find_line(items, other["product_id"], other.get("size", ""), other.get("color", ""))
        if line:
            line["quantity"] = min(line["quantity"] + other["quantity"], config.MAX_ITEM_QUANTITY)
        else:
            items.append(dict(other))
    coupon_code = user_cart.get("coupon_code") or session_cart.get("coupon_code")
    merged = _save(db, user_cart, items=items, coupon_code=coupon_code)
    db["cart"].delete_one({"_id": session_cart["_id"]})
    logger.info("Merged session cart %s into user cart %s", session_cart["_id"], user_cart["_id"])
    return merged


def apply_coupon(db: Database, cart: dict, code: str) -> dict:
    code = code.strip().upper()
    coupon = db["coupon"].find_one({"code": code})
    lines = [line for line in _priced_lines(db, cart) if line["available"]]
    reason = coupon_rejection(coupon, calculate_subtotal(lines), utcnow())
    if reason:
        raise CartError(reason)
    return _save(db, cart, coupon_code=code)


def remove_coupon(db: Database, cart: dict) -> dict:
    return _save(db, cart, coupon_code=None)


def check_availability(db: Database, cart: dict) -> List[dict]:
    items = cart.get("items", [])
    products = products_by_id(db, [it["product_id"] for it in items])
    unavailable = []
    for item in items:
        product = products.get(item["product_id"])
        if not product or not product.get("is_active", True):
            reason = "Product unavailable"
        elif product.get("stock", 0) < _units_of(items, item["product_id"]):
            reason = f"Insufficient stock ({product.get('stock', 0)} available)"
        else:
            continue
        unavailable.append({
            "item_id": item["item_id"],
            "product_id": item["product_id"],
            "name": product.get("name") if product else None,
            "reason": reason,
        })
    return unavailable


def _priced_lines(db: Database, cart: dict) -> List[dict]:
    items = cart.get("items", [])
    products = products_by_id(db, [it["product_id"] for it in items])
    lines = []
    for item in items:
        product = products.get(item["product_id"])
        available = bool(product) and product.get("is_active", True)
        line = {
            **item,
            "name": product.get("name") if product else None,
            "brand": product.get("brand") if product else None,
            "category": product.get("category") if product else None,
            "price": float(product.get("price", 0)) if product else 0.0,
            "image": primary_image_url(product) if product else "",
            "stock": product.get("stock", 0) if product else 0,
            "available": available,
        }
        line["line_total"] = line_total(line)
        lines.append(line)
    return lines


def build_cart_view(db: Database, cart: dict) -> dict:
    lines = _priced_lines(db, cart)
    priced = [line for line in lines if line["available"]]
    subtotal = calculate_subtotal(priced)

    discount, coupon_error = 0.0, None
    coupon_code = cart.get("coupon_code")
    if coupon_code:
        coupon = db["coupon"].find_one({"code": coupon_code})
        coupon_error = coupon_rejection(coupon, subtotal, utcnow())
        if coupon_error is None:
            discount = calculate_discount(coupon, subtotal)

    return {
        "id": str(cart["_id"]),
        "user_id": cart.get("user_id"),
        "session_id": cart.get("session_id"),
        "items": lines,
        "coupon_code": coupon_code,
        "coupon_error": coupon_error,
        "total_items": sum(line["quantity"] for line in lines),
        "is_empty": not lines,
        "updated_at": cart.get("updated_at"),
        **compute_totals(priced, discount),
    }
