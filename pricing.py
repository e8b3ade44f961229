"""
Storefront business rules: coupon checks, discount arithmetic, cart and
order totals, and the order status lifecycle.

Everything here works on plain documents (dicts as stored in Mongo) and does
no I/O, so routes fetch what they need and hand it over.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from config import TAX_RATE
from database import as_utc, utcnow

FINAL_STATUSES = ("Delivered", "Cancelled")


class CouponError(ValueError):
    """A coupon cannot be applied; the message is shown to the shopper."""


def round2(amount: float) -> float:
    return round(amount + 0.0, 2)


def _amount(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


# ---------- Coupons ----------

def is_currently_valid(coupon: Dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    limit = coupon.get("usage_limit")
    return (
        coupon.get("is_active", True)
        and as_utc(coupon["valid_from"]) <= now <= as_utc(coupon["valid_until"])
        and (limit is None or coupon.get("used_count", 0) < limit)
    )


def compute_discount(coupon: Dict, cart_total: float) -> float:
    """Percentage or fixed discount, capped by max_discount_amount and by the cart total."""
    if coupon["discount_type"] == "percentage":
        discount = coupon["discount_value"] / 100 * cart_total
    else:
        discount = coupon["discount_value"]

    cap = coupon.get("max_discount_amount")
    if cap and discount > cap:
        discount = cap

    if discount > cart_total:
        discount = cart_total
    return discount


def check_coupon(coupon: Optional[Dict], cart_total: float, cart_lines: Iterable[Dict],
                 now: Optional[datetime] = None) -> Dict:
    """
    Run every eligibility check against a cart and price the discount.

    `cart_lines` are dicts with at least `product_id` and `category`.
    Raises CouponError with the first failing check.
    """
    if coupon is None:
        raise CouponError("Invalid coupon code")
    if not coupon.get("is_active", True):
        raise CouponError("This coupon is currently inactive")

    now = now or utcnow()
    valid_from = as_utc(coupon["valid_from"])
    if now < valid_from:
        raise CouponError(f"Coupon valid from {valid_from.strftime('%d/%m/%Y')}")
    if now > as_utc(coupon["valid_until"]):
        raise CouponError("This coupon has expired")

    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("used_count", 0) >= limit:
        raise CouponError("Coupon usage limit reached")

    if cart_total < coupon.get("min_purchase_amount", 0):
        raise CouponError(f"Minimum purchase of ₹{_amount(coupon['min_purchase_amount'])} required")

    lines = list(cart_lines)
    categories = coupon.get("applicable_categories") or []
    if categories:
        if not any(line.get("category") in categories for line in lines):
            raise CouponError(f"Coupon only applicable to: {', '.join(categories)}")

    product_ids = {str(p) for p in coupon.get("applicable_products") or []}
    if product_ids:
        if not any(str(line.get("product_id")) in product_ids for line in lines):
            raise CouponError("Coupon not applicable to items in cart")

    discount = compute_discount(coupon, cart_total)
    return {
        "code": coupon["code"],
        "description": coupon.get("description", ""),
        "discount_amount": round2(discount),
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "final_amount": round2(cart_total - discount),
    }


# ---------- Cart ----------

def cart_totals(items: List[Dict]) -> Dict:
    """Totals over populated cart lines (`{"product": {...}, "quantity": n}`)."""
    total = sum(item["product"]["price"] * item["quantity"] for item in items)
    return {
        "cart_total": round2(total),
        "total_items": sum(item["quantity"] for item in items),
    }


# ---------- Orders ----------

def order_totals(subtotal: float, discount: float = 0.0, tax_rate: float = TAX_RATE) -> Dict:
    """Tax is charged on the subtotal after the coupon discount."""
    taxable = max(subtotal - discount, 0.0)
    tax = taxable * tax_rate
    return {
        "subtotal": round2(subtotal),
        "discount": round2(discount),
        "tax": round2(tax),
        "total_amount": round2(taxable + tax),
    }


def item_count(order: Dict) -> int:
    return sum(item["quantity"] for item in order.get("order_items", []))


def check_status_change(current: str) -> None:
    """Delivered and Cancelled orders are closed, even to the same status."""
    if current in FINAL_STATUSES:
        raise ValueError(f"Order is already {current} and cannot be changed")
