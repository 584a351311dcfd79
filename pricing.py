"""Cart and order money arithmetic. Every amount is rounded to cents."""

from datetime import datetime
from typing import Iterable, Mapping, Optional

import config
from database import ensure_utc


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def money(amount: float) -> float:
    return round(amount + 0.0, 2)


def line_total(line: Mapping) -> float:
    return money(float(line["price"]) * int(line["quantity"]))


def calculate_subtotal(lines: Iterable[Mapping]) -> float:
    return money(sum(float(line["price"]) * int(line["quantity"]) for line in lines))


def calculate_shipping(subtotal: float) -> float:
    if subtotal <= 0 or subtotal >= config.FREE_SHIPPING_THRESHOLD:
        return 0.0
    return config.SHIPPING_COST


def calculate_tax(subtotal: float) -> float:
    return money(subtotal * config.TAX_RATE)


def coupon_rejection(coupon: Optional[Mapping], subtotal: float, now: datetime) -> Optional[str]:
    """Reason the coupon cannot be used, or None when it applies."""
    if not coupon or not coupon.get("active", False):
        return "Invalid coupon code"
    expires_at = ensure_utc(coupon.get("expires_at"))
    if expires_at is not None and expires_at < now:
        return "Coupon has expired"
    if subtotal < float(coupon.get("min_order", 0)):
        return f"Minimum order of {coupon['min_order']:.2f} required for this coupon"
    return None


def calculate_discount(coupon: Optional[Mapping], subtotal: float) -> float:
    if not coupon or subtotal <= 0:
        return 0.0
    if coupon["type"] == "percent":
        discount = subtotal * float(coupon["value"]) / 100
    else:
        discount = float(coupon["value"])
    return money(min(discount, subtotal))


def compute_totals(lines: Iterable[Mapping], discount: float = 0.0) -> dict:
    subtotal = calculate_subtotal(lines)
    shipping_cost = calculate_shipping(subtotal)
    tax = calculate_tax(subtotal)
    discount = money(min(max(discount, 0.0), subtotal))
    return {
        "subtotal": subtotal,
        "shipping_cost": shipping_cost,
        "tax": tax,
        "discount": discount,
        "total": money(subtotal + shipping_cost + tax - discount),
    }


def recalculate_order_totals(order: dict) -> dict:
    """Refresh subtotal and total after items or fee fields changed.

    Shipping and tax are kept as stored; they are fee fields an admin may
    have overridden.
    """
    order["subtotal"] = calculate_subtotal(order.get("items", []))
    order["total"] = money(
        order["subtotal"]
        + float(order.get("shipping_cost", 0))
        + float(order.get("tax", 0))
        - float(order.get("discount", 0))
    )
    return order
