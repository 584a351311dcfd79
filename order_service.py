"""
Order lifecycle

Orders are created from a cart snapshot, then move through an explicit
transition table. Stock is reserved with guarded decrements when the order
is placed and handed back when it is cancelled.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import email_service
from cart_service import clear_cart
from catalog import primary_image_url, products_by_id
from database import to_object_id, utcnow
from errors import CartError, InsufficientStock, InvalidTransition, NotFoundError, ShopError, StockConflict
from pricing import (
    calculate_discount,
    calculate_subtotal,
    compute_totals,
    coupon_rejection,
    money,
    recalculate_order_totals,
)
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("paid", "cancelled"),
    "paid": ("processing", "cancelled", "returned"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered", "returned"),
    "delivered": ("returned",),
    "cancelled": (),
    "returned": (),
}

REVENUE_STATUSES = ["paid", "processing", "shipped", "delivered"]
CUSTOMER_CANCELLABLE = ("pending", "paid")
FINISHED_STATUSES = ("delivered", "cancelled", "returned")

STATUS_DATE_FIELDS = {
    "paid": "paid_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}

ANONYMIZED_ADDRESS = {"street": "ANONYMIZED", "city": "ANONYMIZED", "postal_code": "00000"}

ORDER_NUMBER_ATTEMPTS = 5


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, ())


def generate_order_number(db: Database, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    prefix = f"{config.ORDER_NUMBER_PREFIX}{now.year}{now.month:02d}"
    count = db["order"].count_documents({"order_number": {"$regex": f"^{prefix}"}})
    return f"{prefix}{count + 1:04d}"


def get_order(db: Database, order_id: str, user_id: Optional[str] = None) -> dict:
    query = {"_id": to_object_id(order_id, "order id")}
    if user_id is not None:
        query["user_id"] = user_id
    order = db["order"].find_one(query)
    if not order:
        raise NotFoundError("Order not found")
    return order


def _restore_stock(db: Database, items: List[dict]) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": ObjectId(item["product_id"])},
            {"$inc": {"stock": int(item["quantity"])}},
        )


def _reserve_stock(db: Database, items: List[dict]) -> None:
    """Decrement stock line by line; on a lost race undo what was taken."""
    reserved: List[dict] = []
    for item in items:
        result = db["product"].update_one(
            {"_id": ObjectId(item["product_id"]), "stock": {"$gte": int(item["quantity"])}},
            {"$inc": {"stock": -int(item["quantity"])}},
        )
        if result.modified_count == 0:
            _restore_stock(db, reserved)
            logger.warning("Stock reservation lost for product %s", item["product_id"])
            raise StockConflict(
                f"{item['name']} just went out of stock, please review your cart",
                product_id=item["product_id"],
            )
        reserved.append(item)


def _snapshot_items(db: Database, cart: dict) -> List[dict]:
    items = cart.get("items", [])
    if not items:
        raise CartError("Cart is empty")
    products = products_by_id(db, [it["product_id"] for it in items])
    requested: Dict[str, int] = {}
    for item in items:
        requested[item["product_id"]] = requested.get(item["product_id"], 0) + int(item["quantity"])
    snapshot = []
    for item in items:
        product = products.get(item["product_id"])
        if not product or not product.get("is_active", True):
            raise CartError("A product in your cart is no longer available", product_id=item["product_id"])
        if product.get("stock", 0) < requested[item["product_id"]]:
            raise InsufficientStock(
                f"Insufficient stock for {product['name']}",
                product_id=item["product_id"],
                available=product.get("stock", 0),
                requested=requested[item["product_id"]],
            )
        snapshot.append(
            OrderItem(
                product_id=item["product_id"],
                name=product["name"],
                brand=product.get("brand", ""),
                category=product.get("category", ""),
                price=float(product["price"]),
                quantity=item["quantity"],
                size=item.get("size", ""),
                color=item.get("color", ""),
                image=primary_image_url(product) or None,
            ).model_dump()
        )
    return snapshot


def _cart_discount(db: Database, cart: dict, items: List[dict], now: datetime) -> Tuple[Optional[str], float]:
    code = cart.get("coupon_code")
    if not code:
        return None, 0.0
    coupon = db["coupon"].find_one({"code": code})
    subtotal = calculate_subtotal(items)
    reason = coupon_rejection(coupon, subtotal, now)
    if reason:
        raise CartError(reason, coupon_code=code)
    return code, calculate_discount(coupon, subtotal)


def _record_sales(db: Database, items: List[dict], now: datetime) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": ObjectId(item["product_id"])},
            {
                "$inc": {
                    "sales.total_sold": int(item["quantity"]),
                    "sales.total_revenue": money(float(item["price"]) * int(item["quantity"])),
                },
                "$set": {"sales.last_sold": now},
            },
        )


def create_order_from_cart(
    db: Database,
    user: dict,
    cart: dict,
    billing_address: dict,
    shipping_address: Optional[dict],
    payment_method: str,
    notes: Optional[str] = None,
    source: str = "website",
) -> dict:
    now = utcnow()
    items = _snapshot_items(db, cart)
    coupon_code, discount = _cart_discount(db, cart, items, now)
    totals = compute_totals(items, discount)

    consent = (user.get("gdpr") or {})
    doc = Order(
        order_number=generate_order_number(db, now),
        user_id=str(user["_id"]),
        items=items,
        coupon_code=coupon_code,
        billing_address=billing_address,
        shipping_address=shipping_address or billing_address,
        payment_method=payment_method,
        notes=notes,
        source=source,
        status_history=[{"from_status": None, "to_status": "pending", "at": now, "note": "Order placed"}],
        gdpr={
            "data_processing_consent": consent.get("data_processing_consent", False),
            "marketing_consent": consent.get("marketing_consent", False),
            "data_retention_until": now + timedelta(days=config.ORDER_RETENTION_DAYS),
        },
        **totals,
    ).model_dump()
    doc.update(created_at=now, updated_at=now)

    _reserve_stock(db, items)
    try:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                doc["_id"] = db["order"].insert_one(dict(doc)).inserted_id
                break
            except DuplicateKeyError:
                if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                    raise
                doc["order_number"] = generate_order_number(db, now)
    except Exception:
        _restore_stock(db, items)
        raise

    _record_sales(db, items, now)
    clear_cart(db, cart)
    logger.info("Order %s placed by user %s, total %.2f", doc["order_number"], doc["user_id"], doc["total"])
    email_service.send_order_confirmation(user, doc)
    email_service.send_admin_notification(
        f"New order {doc['order_number']}",
        f"{user.get('email')} placed an order of {len(items)} line(s) for {doc['total']:.2f} {config.CURRENCY.upper()}",
    )
    return doc


def update_status(
    db: Database,
    order: dict,
    new_status: str,
    note: Optional[str] = None,
    extra: Optional[dict] = None,
) -> dict:
    current = order.get("status", "pending")
    if not can_transition(current, new_status):
        raise InvalidTransition(
            f"Cannot change order status from {current} to {new_status}",
            current_status=current,
            allowed=list(TRANSITIONS.get(current, ())),
        )

    now = utcnow()
    fields = dict(extra or {})
    fields.update(status=new_status, updated_at=now)
    date_field = STATUS_DATE_FIELDS.get(new_status)
    if date_field:
        fields[date_field] = now
    if new_status == "paid":
        fields["payment_status"] = "paid"

    result = db["order"].update_one(
        {"_id": order["_id"], "status": current},
        {
            "$set": fields,
            "$push": {"status_history": {"from_status": current, "to_status": new_status, "at": now, "note": note}},
        },
    )
    if result.matched_count == 0:
        raise InvalidTransition("Order was modified concurrently, please retry", current_status=current)

    if new_status == "cancelled":
        _restore_stock(db, order.get("items", []))
    logger.info("Order %s: %s -> %s", order.get("order_number"), current, new_status)
    return db["order"].find_one({"_id": order["_id"]})


def cancel_order(db: Database, order: dict, note: Optional[str] = None, by_customer: bool = False) -> dict:
    if by_customer and order.get("status") not in CUSTOMER_CANCELLABLE:
        raise InvalidTransition("This order can no longer be cancelled", current_status=order.get("status"))
    return update_status(db, order, "cancelled", note=note or "Cancelled")


def add_tracking(
    db: Database,
    order: dict,
    tracking_number: str,
    carrier: Optional[str] = None,
    tracking_url: Optional[str] = None,
) -> dict:
    tracking = {"tracking_number": tracking_number, "carrier": carrier, "tracking_url": tracking_url}
    if order.get("status") == "shipped":
        db["order"].update_one({"_id": order["_id"]}, {"$set": {**tracking, "updated_at": utcnow()}})
        return db["order"].find_one({"_id": order["_id"]})
    return update_status(db, order, "shipped", note=f"Tracking {tracking_number}", extra=tracking)


def adjust_fees(db: Database, order: dict, **fees: float) -> dict:
    """Override shipping, tax or discount on an unpaid order and recompute its totals."""
    if order.get("status") != "pending" or order.get("payment_status") != "pending":
        raise InvalidTransition("Fees can only be adjusted before payment", current_status=order.get("status"))
    adjusted = recalculate_order_totals({**order, **{k: money(v) for k, v in fees.items()}})
    if adjusted.get("discount", 0) > adjusted["subtotal"]:
        raise ShopError("Discount cannot exceed the subtotal", subtotal=adjusted["subtotal"])

    fields = {k: adjusted[k] for k in ("subtotal", "shipping_cost", "tax", "discount", "total")}
    fields["updated_at"] = utcnow()
    result = db["order"].update_one({"_id": order["_id"], "status": "pending"}, {"$set": fields})
    if result.matched_count == 0:
        raise InvalidTransition("Order was modified concurrently, please retry", current_status=order.get("status"))
    logger.info("Order %s fees adjusted, total %.2f", order.get("order_number"), fields["total"])
    return db["order"].find_one({"_id": order["_id"]})


def mark_paid(db: Database, order: dict, reference: Optional[dict] = None, note: str = "Payment received") -> dict:
    """Record a successful payment. Repeated notifications are no-ops."""
    if order.get("payment_status") == "paid":
        return order
    if order.get("status") == "pending":
        return update_status(db, order, "paid", note=note, extra=reference)
    logger.warning("Payment received for order %s in status %s", order.get("order_number"), order.get("status"))
    now = utcnow()
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {**(reference or {}), "payment_status": "paid", "paid_at": now, "updated_at": now}},
    )
    return db["order"].find_one({"_id": order["_id"]})


def mark_payment_failed(db: Database, order: dict, reason: Optional[str] = None) -> dict:
    if order.get("payment_status") == "paid":
        return order
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_status": "failed", "payment_error": reason, "updated_at": utcnow()}},
    )
    logger.info("Payment failed for order %s: %s", order.get("order_number"), reason)
    return db["order"].find_one({"_id": order["_id"]})


def _settle_refund(db: Database, order: dict, update: dict) -> dict:
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {**update, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    refunded = money(float(updated.get("refunded_amount", 0)))
    if refunded >= money(float(updated["total"])):
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": "refunded"}})
    else:
        # never downgrade an order another refund already settled
        db["order"].update_one(
            {"_id": order["_id"], "payment_status": {"$ne": "refunded"}},
            {"$set": {"payment_status": "partially_refunded"}},
        )
    logger.info("Order %s refunded %.2f in total", updated.get("order_number"), refunded)
    return db["order"].find_one({"_id": order["_id"]})


def mark_refunded(db: Database, order: dict, amount: Optional[float] = None) -> dict:
    """Add a refund to the order; without an amount the remaining balance is refunded."""
    if amount is None:
        amount = float(order["total"]) - float(order.get("refunded_amount", 0))
    return _settle_refund(db, order, {"$inc": {"refunded_amount": money(amount)}})


def sync_refunded_total(db: Database, order: dict, refunded_total: float) -> dict:
    """Raise the stored refund total to what the gateway reports, never lower it."""
    return _settle_refund(db, order, {"$max": {"refunded_amount": money(refunded_total)}})


def find_by_payment_reference(db: Database, **reference) -> Optional[dict]:
    return db["order"].find_one(reference)


def _anonymized_fields(order: dict, now: datetime) -> dict:
    return {
        "billing_address": {**ANONYMIZED_ADDRESS, "country": (order.get("billing_address") or {}).get("country", "")},
        "shipping_address": {**ANONYMIZED_ADDRESS, "country": (order.get("shipping_address") or {}).get("country", "")},
        "notes": None,
        "tracking_number": None,
        "tracking_url": None,
        "gdpr.anonymized_at": now,
        "updated_at": now,
    }


def anonymize_order(db: Database, order: dict) -> dict:
    db["order"].update_one({"_id": order["_id"]}, {"$set": _anonymized_fields(order, utcnow())})
    return db["order"].find_one({"_id": order["_id"]})


def anonymize_expired_orders(db: Database, now: Optional[datetime] = None) -> int:
    """Strip personal data from orders past their retention date. Country is kept for reporting."""
    now = now or utcnow()
    expired = db["order"].find({
        "gdpr.data_retention_until": {"$lt": now},
        "gdpr.anonymized_at": {"$exists": False},
    })
    count = 0
    for order in expired:
        db["order"].update_one({"_id": order["_id"]}, {"$set": _anonymized_fields(order, now)})
        count += 1
    logger.info("Anonymized %d expired orders", count)
    return count


def order_stats(db: Database, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
    match: dict = {}
    if start or end:
        match["created_at"] = {}
        if start:
            match["created_at"]["$gte"] = start
        if end:
            match["created_at"]["$lte"] = end

    by_status = {status: {"count": 0, "total": 0.0} for status in TRANSITIONS}
    for row in db["order"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total": {"$sum": "$total"}}},
    ]):
        by_status[row["_id"]] = {"count": row["count"], "total": money(row["total"])}

    total_orders = sum(s["count"] for s in by_status.values())
    paid_orders = sum(by_status[s]["count"] for s in REVENUE_STATUSES)
    revenue = money(sum(by_status[s]["total"] for s in REVENUE_STATUSES))
    return {
        "total_orders": total_orders,
        "paid_orders": paid_orders,
        "total_revenue": revenue,
        "average_order_value": money(revenue / paid_orders) if paid_orders else 0.0,
        "by_status": by_status,
    }
